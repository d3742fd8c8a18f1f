"""Unit tests for challenge-response device authentication."""

from __future__ import annotations

from dataclasses import replace

import pytest

from trustgate.auth.challenge import (
    CHALLENGE_VALIDITY_MS,
    ChallengeAuthenticator,
    ChallengePayload,
    ChallengeResponse,
    build_challenge_message,
    sign_challenge,
)
from trustgate.auth.identity import (
    DeviceIdentity,
    generate_identity,
    normalize_device_public_key,
)

NOW_MS = 1_760_000_000_000
MINUTE_MS = 60_000


@pytest.fixture
def device() -> DeviceIdentity:
    """A freshly generated device."""
    return generate_identity()


def _authenticator(now: int = NOW_MS) -> ChallengeAuthenticator:
    return ChallengeAuthenticator("server-fingerprint", clock=lambda: now)


def _at(offset_ms: int) -> ChallengePayload:
    return ChallengePayload(
        nonce="n", timestamp=NOW_MS + offset_ms, server_identity="server-fingerprint"
    )


def _respond(challenge: ChallengePayload, device: DeviceIdentity) -> ChallengeResponse:
    return ChallengeResponse(
        challenge=challenge,
        device_signature=sign_challenge(challenge, device.private_key_pem),
        device_public_key=device.public_key_pem,
    )


class TestChallengeMessage:
    """Tests for the signed message format."""

    def test_format(self) -> None:
        """Version, nonce, timestamp and server are pipe-joined."""
        challenge = ChallengePayload(nonce="abc", timestamp=42, server_identity="srv")
        assert build_challenge_message(challenge) == "v2|abc|42|srv"

    def test_generated_challenges_are_unique(self) -> None:
        """Each challenge has a fresh nonce and the current time."""
        auth = _authenticator()
        first, second = auth.generate_challenge(), auth.generate_challenge()
        assert first.nonce != second.nonce
        assert first.timestamp == NOW_MS
        assert first.server_identity == "server-fingerprint"


class TestVerifyChallenge:
    """Tests for verify_challenge()."""

    def test_valid_response(self, device: DeviceIdentity) -> None:
        """A correctly signed fresh challenge authenticates the device."""
        auth = _authenticator()
        challenge = auth.generate_challenge()

        result = auth.verify_challenge(_respond(challenge, device), challenge)

        assert result.ok
        assert result.reason is None
        assert result.device_id == device.device_id
        assert result.public_key == normalize_device_public_key(device.public_key_pem)

    def test_nonce_mismatch(self, device: DeviceIdentity) -> None:
        """A response to another challenge is rejected first."""
        auth = _authenticator()
        sent = auth.generate_challenge()
        other = auth.generate_challenge()

        result = auth.verify_challenge(_respond(other, device), sent)
        assert not result.ok
        assert result.reason == "nonce_mismatch"

    @pytest.mark.parametrize(
        ("offset_minutes", "reason"),
        [
            (-6, "challenge_expired"),
            (11, "challenge_from_future"),
        ],
    )
    def test_freshness_rejections(
        self, device: DeviceIdentity, offset_minutes: int, reason: str
    ) -> None:
        """Old challenges and those too far ahead fail."""
        challenge = _at(offset_minutes * MINUTE_MS)
        result = _authenticator().verify_challenge(_respond(challenge, device), challenge)
        assert result.reason == reason

    @pytest.mark.parametrize("offset_minutes", [-4, 0, 5, 9])
    def test_freshness_window(self, device: DeviceIdentity, offset_minutes: int) -> None:
        """Slightly old and moderately skewed timestamps pass."""
        challenge = _at(offset_minutes * MINUTE_MS)
        assert _authenticator().verify_challenge(_respond(challenge, device), challenge).ok

    def test_server_identity_mismatch(self, device: DeviceIdentity) -> None:
        """A challenge bound to another server is rejected."""
        auth = _authenticator()
        expected = auth.generate_challenge()
        forwarded = replace(expected, server_identity="other-server")

        result = auth.verify_challenge(_respond(forwarded, device), expected)
        assert result.reason == "server_identity_mismatch"

    def test_invalid_signature(self, device: DeviceIdentity) -> None:
        """A signature from a different key fails."""
        auth = _authenticator()
        challenge = auth.generate_challenge()
        impostor = generate_identity()
        response = ChallengeResponse(
            challenge=challenge,
            device_signature=sign_challenge(challenge, impostor.private_key_pem),
            device_public_key=device.public_key_pem,
        )

        assert auth.verify_challenge(response, challenge).reason == "invalid_signature"

    def test_malformed_public_key(self, device: DeviceIdentity) -> None:
        """Unparseable keys report a verification error."""
        auth = _authenticator()
        challenge = auth.generate_challenge()
        response = replace(_respond(challenge, device), device_public_key="bad")

        result = auth.verify_challenge(response, challenge)
        assert not result.ok
        assert result.reason is not None
        assert result.reason.startswith("verification_error:")


class TestIsChallengeValid:
    """Tests for the time-window check alone."""

    def test_window(self) -> None:
        """Validity covers the configured age and future skew."""
        auth = _authenticator()
        assert auth.is_challenge_valid(_at(0))
        assert auth.is_challenge_valid(_at(-CHALLENGE_VALIDITY_MS))
        assert not auth.is_challenge_valid(_at(-CHALLENGE_VALIDITY_MS - 1))
        assert not auth.is_challenge_valid(_at(11 * MINUTE_MS))
