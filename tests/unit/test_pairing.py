"""Unit tests for device pairing and first-run bootstrap approval."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from trustgate.audit import SecurityAuditEvent, SecurityAuditEventType
from trustgate.auth.challenge import (
    AuthResult,
    ChallengeAuthenticator,
    ChallengeResponse,
    sign_challenge,
)
from trustgate.auth.identity import (
    DeviceIdentity,
    generate_identity,
    normalize_device_public_key,
)
from trustgate.auth.pairing import (
    BootstrapPolicy,
    PairingOutcome,
    PairingRateLimiter,
    PairingRegistry,
    is_loopback_address,
)
from trustgate.policy import ConnectionPolicy
from trustgate.vault.manager import VaultManager

DEVICE_A = "a" * 64
DEVICE_B = "b" * 64


@pytest.fixture
def registry(vault_manager: VaultManager) -> PairingRegistry:
    """Registry over the test vault."""
    return PairingRegistry(vault_manager)


# =========================================================================
# Helpers
# =========================================================================


class TestIsLoopbackAddress:
    """Tests for is_loopback_address()."""

    @pytest.mark.parametrize(
        "address",
        ["127.0.0.1", "127.8.9.10", "::1", "[::1]", "::ffff:127.0.0.1", " 127.0.0.1 "],
    )
    def test_loopback(self, address: str) -> None:
        """IPv4, IPv6 and mapped loopback addresses are recognised."""
        assert is_loopback_address(address)

    @pytest.mark.parametrize(
        "address",
        [None, "", "10.0.0.5", "192.168.1.2", "::ffff:10.0.0.1", "localhost", "not-an-ip"],
    )
    def test_not_loopback(self, address: str | None) -> None:
        """Everything else, hostnames included, is remote."""
        assert not is_loopback_address(address)


class TestPairingRateLimiter:
    """Tests for the sliding window."""

    def test_limit_and_window(self) -> None:
        """Requests over the limit fail until the window slides."""
        now = [0.0]
        limiter = PairingRateLimiter(max_requests=2, window_seconds=60, clock=lambda: now[0])

        assert limiter.check(DEVICE_A)
        assert limiter.check(DEVICE_A)
        assert not limiter.check(DEVICE_A)
        assert limiter.check(DEVICE_B)

        now[0] = 61.0
        assert limiter.check(DEVICE_A)

    def test_reset(self) -> None:
        """Reset clears one device or all of them."""
        limiter = PairingRateLimiter(max_requests=1)
        limiter.check(DEVICE_A)
        limiter.check(DEVICE_B)

        limiter.reset(DEVICE_A)
        assert limiter.check(DEVICE_A)
        assert not limiter.check(DEVICE_B)
        limiter.reset()
        assert limiter.check(DEVICE_B)


# =========================================================================
# Registry
# =========================================================================


class TestPairingRegistry:
    """Tests for PairingRegistry."""

    @pytest.mark.asyncio
    async def test_pair_get_unpair(self, registry: PairingRegistry) -> None:
        """Paired devices are stored in the vault and removable."""
        assert await registry.is_empty()
        device = await registry.pair(DEVICE_A, approved_by="admin", label="laptop")

        assert await registry.is_paired(DEVICE_A)
        assert await registry.get(DEVICE_A) == device
        assert await registry.list_devices() == [DEVICE_A]
        assert not await registry.is_empty()

        assert await registry.unpair(DEVICE_A)
        assert not await registry.unpair(DEVICE_A)
        assert await registry.get(DEVICE_A) is None


# =========================================================================
# Bootstrap policy
# =========================================================================


def _authenticated(device: DeviceIdentity) -> AuthResult:
    """Run a real challenge round trip for *device*."""
    authenticator = ChallengeAuthenticator("server-fingerprint")
    challenge = authenticator.generate_challenge()
    response = ChallengeResponse(
        challenge=challenge,
        device_signature=sign_challenge(challenge, device.private_key_pem),
        device_public_key=device.public_key_pem,
    )
    result = authenticator.verify_challenge(response, challenge)
    assert result.ok
    return result


@pytest.fixture
def owner() -> DeviceIdentity:
    """The first device on a fresh install."""
    return generate_identity()


class TestBootstrapPolicy:
    """Tests for BootstrapPolicy.evaluate()."""

    @pytest.mark.asyncio
    async def test_first_loopback_device_is_approved(
        self,
        registry: PairingRegistry,
        owner: DeviceIdentity,
        audit_events: list[SecurityAuditEvent],
    ) -> None:
        """A loopback request on an empty registry pairs itself with its key."""
        decision = await BootstrapPolicy(registry).evaluate(_authenticated(owner), "127.0.0.1")

        assert decision.approved
        assert decision.reason == "local_first_run"
        assert decision.device is not None
        assert decision.device.device_id == owner.device_id
        assert decision.device.approved_by == "local_bootstrap"
        assert decision.device.public_key == normalize_device_public_key(owner.public_key_pem)
        assert await registry.is_paired(owner.device_id)

        event = audit_events[-1]
        assert event.event_type == SecurityAuditEventType.PAIRING_ATTEMPT
        assert event.details["approved"] is True
        assert event.details["device_id"] == owner.device_id[:16]

    @pytest.mark.asyncio
    async def test_second_loopback_device_needs_approval(
        self, registry: PairingRegistry, owner: DeviceIdentity
    ) -> None:
        """Once anything is paired, loopback no longer self-approves."""
        policy = BootstrapPolicy(registry)
        await policy.evaluate(_authenticated(owner), "127.0.0.1")

        second = generate_identity()
        decision = await policy.evaluate(_authenticated(second), "::1")
        assert decision.outcome == PairingOutcome.NEEDS_APPROVAL
        assert decision.reason == "devices_already_paired"
        assert not await registry.is_paired(second.device_id)

    @pytest.mark.asyncio
    async def test_remote_needs_approval(
        self, registry: PairingRegistry, owner: DeviceIdentity
    ) -> None:
        """Non-loopback requests always wait for an operator."""
        decision = await BootstrapPolicy(registry).evaluate(_authenticated(owner), "203.0.113.7")
        assert decision.outcome == PairingOutcome.NEEDS_APPROVAL
        assert decision.reason == "not_loopback"

    @pytest.mark.asyncio
    async def test_auto_approve_disabled(
        self, registry: PairingRegistry, owner: DeviceIdentity
    ) -> None:
        """The policy switch turns bootstrap approval off."""
        policy = BootstrapPolicy(registry, ConnectionPolicy(allow_local_auto_approve=False))
        decision = await policy.evaluate(_authenticated(owner), "127.0.0.1")
        assert decision.outcome == PairingOutcome.NEEDS_APPROVAL
        assert decision.reason == "auto_approve_disabled"

    @pytest.mark.asyncio
    async def test_already_paired(self, registry: PairingRegistry, owner: DeviceIdentity) -> None:
        """A known device presenting its own key is approved from any address."""
        await registry.pair(
            owner.device_id, approved_by="admin", public_key=owner.public_key_pem
        )
        decision = await BootstrapPolicy(registry).evaluate(_authenticated(owner), "198.51.100.1")
        assert decision.approved
        assert decision.reason == "already_paired"
        assert decision.device.approved_by == "admin"

    @pytest.mark.asyncio
    async def test_claimed_device_id_with_other_key_is_not_approved(
        self,
        registry: PairingRegistry,
        owner: DeviceIdentity,
        audit_events: list[SecurityAuditEvent],
    ) -> None:
        """Naming a paired device id while signing with another key gets nothing."""
        await registry.pair(
            owner.device_id, approved_by="admin", public_key=owner.public_key_pem
        )
        attacker = _authenticated(generate_identity())
        forged = replace(attacker, device_id=owner.device_id)

        decision = await BootstrapPolicy(registry).evaluate(forged, "203.0.113.9")

        assert not decision.approved
        assert decision.outcome == PairingOutcome.REJECTED
        assert decision.reason == "unauthenticated"
        assert audit_events[-1].details["approved"] is False

    @pytest.mark.asyncio
    async def test_stored_key_must_match(
        self, registry: PairingRegistry, owner: DeviceIdentity
    ) -> None:
        """A registry record bound to another key is not honoured."""
        other = generate_identity()
        await registry.pair(
            owner.device_id, approved_by="admin", public_key=other.public_key_pem
        )

        decision = await BootstrapPolicy(registry).evaluate(_authenticated(owner), "127.0.0.1")

        assert decision.outcome == PairingOutcome.REJECTED
        assert decision.reason == "public_key_mismatch"

    @pytest.mark.asyncio
    async def test_failed_challenge_is_rejected(
        self, registry: PairingRegistry, owner: DeviceIdentity
    ) -> None:
        """Without a verified challenge nothing is paired, even on loopback."""
        failed = AuthResult(ok=False, reason="invalid_signature")
        decision = await BootstrapPolicy(registry).evaluate(failed, "127.0.0.1")

        assert decision.outcome == PairingOutcome.REJECTED
        assert decision.reason == "unauthenticated"
        assert await registry.is_empty()

    @pytest.mark.asyncio
    async def test_rate_limit_checked_first(
        self,
        registry: PairingRegistry,
        owner: DeviceIdentity,
        audit_events: list[SecurityAuditEvent],
    ) -> None:
        """Too many requests are rejected even for paired devices."""
        await registry.pair(owner.device_id, approved_by="admin")
        policy = BootstrapPolicy(registry, ConnectionPolicy(max_pairing_requests_per_hour=2))
        auth = _authenticated(owner)

        await policy.evaluate(auth, "127.0.0.1")
        await policy.evaluate(auth, "127.0.0.1")
        decision = await policy.evaluate(auth, "127.0.0.1")

        assert decision.outcome == PairingOutcome.REJECTED
        assert decision.reason == "rate_limited"
        assert audit_events[-1].details["approved"] is False

    @pytest.mark.asyncio
    async def test_concurrent_loopback_requests_pair_one_device(
        self, registry: PairingRegistry
    ) -> None:
        """Racing first-run requests approve exactly one device."""
        policy = BootstrapPolicy(registry)
        results = [_authenticated(generate_identity()) for _ in range(5)]

        decisions = await asyncio.gather(*(policy.evaluate(r, "127.0.0.1") for r in results))

        assert sum(decision.approved for decision in decisions) == 1
        assert len(await registry.list_devices()) == 1
