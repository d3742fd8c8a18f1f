"""Device pairing registry and bootstrap approval.

A loopback client may pair itself without manual approval only on a fresh
install: the registry must be empty at the moment of the request and the
connection policy must allow it. The emptiness check is made here, under a
lock, never taken from anything the client sends.

The device id is never taken from the request: it is derived from the public
key that signed the connection challenge, and a paired device must keep
presenting the key it was paired with.
"""

from __future__ import annotations

import asyncio
import ipaddress
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from trustgate.audit import log_pairing_attempt
from trustgate.auth.challenge import AuthResult
from trustgate.auth.identity import derive_device_id, normalize_device_public_key
from trustgate.logging import get_logger
from trustgate.policy import ConnectionPolicy
from trustgate.vault.manager import VaultKeyPrefix, VaultManager

log = get_logger("trustgate.auth.pairing")

PAIRING_WINDOW_SECONDS = 3600.0


def is_loopback_address(address: str | None) -> bool:
    """True for 127.0.0.0/8, ``::1`` and IPv4-mapped loopback addresses."""
    if not address:
        return False
    host = address.strip().strip("[]")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped.is_loopback
    return ip.is_loopback


@dataclass
class PairedDevice:
    device_id: str
    paired_at_ms: int
    approved_by: str
    public_key: str | None = None
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "pairedAtMs": self.paired_at_ms,
            "approvedBy": self.approved_by,
            "publicKey": self.public_key,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PairedDevice:
        return cls(
            device_id=data["deviceId"],
            paired_at_ms=int(data.get("pairedAtMs") or 0),
            approved_by=data.get("approvedBy", "unknown"),
            public_key=data.get("publicKey"),
            label=data.get("label"),
        )


class PairingRegistry:
    """Paired devices stored under ``pairing:<device_id>``."""

    def __init__(self, manager: VaultManager) -> None:
        self._manager = manager

    async def pair(
        self,
        device_id: str,
        *,
        approved_by: str,
        public_key: str | None = None,
        label: str | None = None,
    ) -> PairedDevice:
        device = PairedDevice(
            device_id=device_id,
            paired_at_ms=int(time.time() * 1000),
            approved_by=approved_by,
            public_key=public_key,
            label=label,
        )
        await self._manager.store_credential(VaultKeyPrefix.PAIRING, device_id, device.to_dict())
        log.info("device_paired", device_id=device_id[:16], approved_by=approved_by)
        return device

    async def unpair(self, device_id: str) -> bool:
        removed = await self._manager.delete_credential(VaultKeyPrefix.PAIRING, device_id)
        if removed:
            log.info("device_unpaired", device_id=device_id[:16])
        return removed

    async def get(self, device_id: str) -> PairedDevice | None:
        data = await self._manager.retrieve_credential(VaultKeyPrefix.PAIRING, device_id)
        if not isinstance(data, dict) or "deviceId" not in data:
            return None
        return PairedDevice.from_dict(data)

    async def is_paired(self, device_id: str) -> bool:
        return await self._manager.has_credential(VaultKeyPrefix.PAIRING, device_id)

    async def list_devices(self) -> list[str]:
        return await self._manager.list_credentials(VaultKeyPrefix.PAIRING)

    async def is_empty(self) -> bool:
        return not await self.list_devices()


class PairingRateLimiter:
    """Sliding-window limit on pairing requests per device."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = PAIRING_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = defaultdict(list)

    def check(self, device_id: str) -> bool:
        """Record a request and return whether it is within the limit."""
        now = self._clock()
        recent = [ts for ts in self._requests[device_id] if now - ts < self._window_seconds]
        if len(recent) >= self._max_requests:
            self._requests[device_id] = recent
            return False
        recent.append(now)
        self._requests[device_id] = recent
        return True

    def reset(self, device_id: str | None = None) -> None:
        if device_id is None:
            self._requests.clear()
        else:
            self._requests.pop(device_id, None)


class PairingOutcome(StrEnum):
    APPROVED = "approved"
    NEEDS_APPROVAL = "needs_approval"
    REJECTED = "rejected"


@dataclass
class PairingDecision:
    outcome: PairingOutcome
    reason: str
    device: PairedDevice | None = field(default=None)

    @property
    def approved(self) -> bool:
        return self.outcome == PairingOutcome.APPROVED


class BootstrapPolicy:
    """Decides whether a pairing request is approved, queued or rejected.

    Args:
        registry: Paired device registry, read fresh on every call.
        policy: Connection rules (auto-approve switch and request rate).
        rate_limiter: Defaults to ``policy.max_pairing_requests_per_hour``.
    """

    def __init__(
        self,
        registry: PairingRegistry,
        policy: ConnectionPolicy | None = None,
        rate_limiter: PairingRateLimiter | None = None,
    ) -> None:
        self._registry = registry
        self._policy = policy or ConnectionPolicy()
        self._rate_limiter = rate_limiter or PairingRateLimiter(
            max_requests=self._policy.max_pairing_requests_per_hour
        )
        self._lock = asyncio.Lock()

    async def evaluate(self, auth: AuthResult, remote_address: str | None) -> PairingDecision:
        """Decide on a pairing request from a device that answered a challenge.

        Args:
            auth: Result of :meth:`ChallengeAuthenticator.verify_challenge`.
                The device id is re-derived from its verified public key.
            remote_address: Peer address of the connection.

        An auto-approved device is recorded in the registry before the lock
        is released, so a second loopback client sees a non-empty registry.
        """
        identity = _verified_identity(auth)
        if identity is None:
            decision = PairingDecision(PairingOutcome.REJECTED, "unauthenticated")
            device_id = "unknown"
        else:
            device_id, public_key = identity
            async with self._lock:
                decision = await self._decide(device_id, public_key, remote_address)

        log_pairing_attempt(
            device_id=device_id,
            approved=decision.approved,
            reason=decision.reason,
            remote_address=remote_address,
        )
        log.info(
            "pairing_evaluated",
            device_id=device_id[:16],
            outcome=decision.outcome.value,
            reason=decision.reason,
        )
        return decision

    async def _decide(
        self, device_id: str, public_key: str, remote_address: str | None
    ) -> PairingDecision:
        if not self._rate_limiter.check(device_id):
            return PairingDecision(PairingOutcome.REJECTED, "rate_limited")

        existing = await self._registry.get(device_id)
        if existing is not None:
            if (
                existing.public_key is not None
                and normalize_device_public_key(existing.public_key) != public_key
            ):
                log.warning("pairing_public_key_mismatch", device_id=device_id[:16])
                return PairingDecision(PairingOutcome.REJECTED, "public_key_mismatch")
            return PairingDecision(PairingOutcome.APPROVED, "already_paired", existing)

        if not self._policy.allow_local_auto_approve:
            return PairingDecision(PairingOutcome.NEEDS_APPROVAL, "auto_approve_disabled")
        if not is_loopback_address(remote_address):
            return PairingDecision(PairingOutcome.NEEDS_APPROVAL, "not_loopback")
        if not await self._registry.is_empty():
            return PairingDecision(PairingOutcome.NEEDS_APPROVAL, "devices_already_paired")

        device = await self._registry.pair(
            device_id, approved_by="local_bootstrap", public_key=public_key
        )
        return PairingDecision(PairingOutcome.APPROVED, "local_first_run", device)


def _verified_identity(auth: AuthResult) -> tuple[str, str] | None:
    """Device id and canonical key from a successful challenge, else ``None``."""
    if not auth.ok or not auth.public_key:
        return None
    public_key = normalize_device_public_key(auth.public_key)
    if public_key is None:
        return None
    device_id = derive_device_id(public_key)
    if auth.device_id is not None and auth.device_id != device_id:
        return None
    return device_id, public_key
