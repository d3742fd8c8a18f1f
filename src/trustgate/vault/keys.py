"""Key derivation and salt management for the vault.

Uses PBKDF2-HMAC-SHA256 to derive a 256-bit key. The passphrase comes from
the caller, then ``TRUSTGATE_VAULT_PASSWORD``, then a deterministic machine
fingerprint. The salt is generated once and persisted beside the vault so
the key is stable across restarts.
"""

from __future__ import annotations

import hashlib
import os
import platform
import socket
import sys
from pathlib import Path

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from trustgate.logging import get_logger
from trustgate.vault.encryption import KEY_SIZE

log = get_logger("trustgate.vault.keys")

# PBKDF2 parameters (OWASP 2023 guidance for PBKDF2-HMAC-SHA256)
DEFAULT_ITERATIONS = 310_000
MIN_ITERATIONS = 300_000
SALT_SIZE = 32  # 256-bit salt
SALT_FILE_NAME = "vault.salt"

VAULT_PASSWORD_ENV = "TRUSTGATE_VAULT_PASSWORD"


def machine_fingerprint() -> str:
    """Deterministic per-machine passphrase.

    Values encrypted under it do not decrypt on another host or home
    directory.
    """
    data = (
        f"trustgate:vault:{socket.gethostname()}:{Path.home()}:"
        f"{sys.platform}:{platform.machine()}"
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def resolve_passphrase(explicit: str | None = None) -> str:
    """Pick the vault passphrase: explicit, environment, machine fingerprint."""
    if explicit:
        return explicit
    env_password = os.environ.get(VAULT_PASSWORD_ENV)
    if env_password:
        return env_password
    log.debug("vault_passphrase_machine_derived")
    return machine_fingerprint()


class VaultKeyManager:
    """Derives the vault key from a passphrase and a persisted salt.

    Args:
        salt_path: Path to the salt file. Created if it doesn't exist.
        passphrase: Explicit passphrase; see :func:`resolve_passphrase`.
        iterations: PBKDF2 iterations, at least 300,000.

    Raises:
        ValueError: If *iterations* is below the minimum.
    """

    def __init__(
        self,
        salt_path: str | Path,
        passphrase: str | None = None,
        iterations: int = DEFAULT_ITERATIONS,
    ) -> None:
        if iterations < MIN_ITERATIONS:
            raise ValueError(f"PBKDF2 iterations must be at least {MIN_ITERATIONS}")
        self._salt_path = Path(salt_path)
        self._passphrase = passphrase
        self._iterations = iterations

    @property
    def salt_path(self) -> Path:
        return self._salt_path

    @property
    def iterations(self) -> int:
        return self._iterations

    def load_or_create_salt(self) -> bytes:
        """Load the salt, creating it on first use."""
        if self._salt_path.exists():
            salt = self._salt_path.read_bytes()
            if len(salt) == SALT_SIZE:
                log.debug("salt_loaded", path=str(self._salt_path))
                return salt
            log.warning("salt_size_mismatch", expected=SALT_SIZE, actual=len(salt))
        return self.create_salt()

    def create_salt(self) -> bytes:
        """Generate and persist a new random salt with mode 0600."""
        salt = self.generate_salt()
        self.persist_salt(salt)
        return salt

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(SALT_SIZE)

    def persist_salt(self, salt: bytes) -> None:
        """Atomically replace the salt file with *salt* (temp file, then rename)."""
        self._salt_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp_path = self._salt_path.with_name(self._salt_path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(salt)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._salt_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        os.chmod(self._salt_path, 0o600)
        log.info("salt_written", path=str(self._salt_path))

    def derive_key(self, salt: bytes) -> bytearray:
        """Derive the 256-bit key for *salt*.

        Returns a mutable buffer so the caller can zero it when done.
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self._iterations,
        )
        passphrase = resolve_passphrase(self._passphrase)
        return bytearray(kdf.derive(passphrase.encode("utf-8")))
