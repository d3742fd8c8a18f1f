"""Exception hierarchy for Trustgate."""


class TrustgateError(Exception):
    """Base class for all Trustgate errors."""


class VaultError(TrustgateError):
    """The vault could not be read, written or initialised."""


class VaultDecryptionError(VaultError):
    """An entry failed authenticated decryption (wrong key or tampered data)."""


class VaultNotInitializedError(VaultError):
    """A vault operation ran before the key was derived."""


class ProviderError(TrustgateError):
    """A model provider call failed (transport, timeout or empty reply)."""


class PolicyViolationError(TrustgateError):
    """A configuration tried to weaken a hardened security setting."""
