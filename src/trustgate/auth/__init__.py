"""Device identity, challenge-response authentication and pairing."""

from trustgate.auth.challenge import (
    AuthResult,
    ChallengeAuthenticator,
    ChallengePayload,
    ChallengeResponse,
    build_challenge_message,
    sign_challenge,
)
from trustgate.auth.device_auth import DeviceAuthEntry, DeviceAuthStore
from trustgate.auth.identity import (
    DeviceIdentity,
    DeviceIdentityStore,
    derive_device_id,
    sign_device_payload,
    verify_device_signature,
)
from trustgate.auth.pairing import BootstrapPolicy, PairingDecision, PairingRegistry

__all__ = [
    "AuthResult",
    "BootstrapPolicy",
    "ChallengeAuthenticator",
    "ChallengePayload",
    "ChallengeResponse",
    "DeviceAuthEntry",
    "DeviceAuthStore",
    "DeviceIdentity",
    "DeviceIdentityStore",
    "PairingDecision",
    "PairingRegistry",
    "build_challenge_message",
    "derive_device_id",
    "sign_challenge",
    "sign_device_payload",
    "verify_device_signature",
]
