"""Challenge-response device authentication.

Every connection, loopback included, must sign a fresh server challenge
with its device key. The signed message is ``v2|<nonce>|<timestamp>|<server>``.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature

from trustgate.auth.identity import (
    b64url_decode,
    b64url_encode,
    derive_device_id,
    load_private_key,
    load_public_key,
    public_key_raw_base64url,
)
from trustgate.logging import get_logger

log = get_logger("trustgate.auth.challenge")

CHALLENGE_VERSION = "v2"
CHALLENGE_VALIDITY_MS = 5 * 60 * 1000
CLOCK_SKEW_MS = 10 * 60 * 1000
NONCE_BYTES = 32


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ChallengePayload:
    nonce: str
    timestamp: int  # milliseconds since the epoch
    server_identity: str


@dataclass(frozen=True)
class ChallengeResponse:
    challenge: ChallengePayload
    device_signature: str  # base64url
    device_public_key: str  # base64url raw, base64url SPKI or PEM


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    reason: str | None = None
    device_id: str | None = None
    # Canonical base64url raw key the signature was verified against
    public_key: str | None = None


def build_challenge_message(challenge: ChallengePayload) -> str:
    return "|".join(
        (CHALLENGE_VERSION, challenge.nonce, str(challenge.timestamp), challenge.server_identity)
    )


def sign_challenge(challenge: ChallengePayload, private_key_pem: str) -> str:
    """Client side: sign *challenge* with a PEM Ed25519 key, base64url output."""
    message = build_challenge_message(challenge).encode("utf-8")
    return b64url_encode(load_private_key(private_key_pem).sign(message))


class ChallengeAuthenticator:
    """Issues and verifies challenges for one server identity.

    Args:
        server_identity: Server public key fingerprint bound into each challenge.
        validity_ms: Maximum challenge age.
        clock_skew_ms: How far in the future a timestamp may be.
        clock: Millisecond clock, replaceable in tests.
    """

    def __init__(
        self,
        server_identity: str,
        validity_ms: int = CHALLENGE_VALIDITY_MS,
        clock_skew_ms: int = CLOCK_SKEW_MS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.server_identity = server_identity
        self.validity_ms = validity_ms
        self.clock_skew_ms = clock_skew_ms
        self._clock = clock

    def generate_challenge(self) -> ChallengePayload:
        return ChallengePayload(
            nonce=secrets.token_urlsafe(NONCE_BYTES),
            timestamp=self._clock(),
            server_identity=self.server_identity,
        )

    def is_challenge_valid(self, challenge: ChallengePayload) -> bool:
        age = self._clock() - challenge.timestamp
        return -self.clock_skew_ms <= age <= self.validity_ms

    def verify_challenge(
        self, response: ChallengeResponse, expected: ChallengePayload
    ) -> AuthResult:
        """Check a device's signed response against the challenge that was sent.

        Checks run in order: nonce, age, future skew, server identity,
        signature. The first failure decides the reason.
        """
        result = self._verify(response, expected)
        if result.ok:
            log.debug("challenge_verified", device_id=(result.device_id or "")[:16])
        else:
            log.warning("challenge_rejected", reason=result.reason)
        return result

    def _verify(self, response: ChallengeResponse, expected: ChallengePayload) -> AuthResult:
        challenge = response.challenge
        if not secrets.compare_digest(challenge.nonce.encode(), expected.nonce.encode()):
            return AuthResult(ok=False, reason="nonce_mismatch")

        age = self._clock() - challenge.timestamp
        if age > self.validity_ms:
            return AuthResult(ok=False, reason="challenge_expired")
        if age < -self.clock_skew_ms:
            return AuthResult(ok=False, reason="challenge_from_future")

        if challenge.server_identity != expected.server_identity:
            return AuthResult(ok=False, reason="server_identity_mismatch")

        try:
            public_key = load_public_key(response.device_public_key)
            signature = b64url_decode(response.device_signature)
            message = build_challenge_message(challenge).encode("utf-8")
            try:
                public_key.verify(signature, message)
            except InvalidSignature:
                return AuthResult(ok=False, reason="invalid_signature")
            public_key_b64 = public_key_raw_base64url(response.device_public_key)
            device_id = derive_device_id(public_key_b64)
        except (ValueError, TypeError) as e:
            return AuthResult(ok=False, reason=f"verification_error:{e}")

        return AuthResult(ok=True, device_id=device_id, public_key=public_key_b64)
