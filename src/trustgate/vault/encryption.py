"""AES-256-GCM encryption for vault entries.

Each entry carries its own random 96-bit IV. The 128-bit authentication
tag is stored separately from the ciphertext, and all three parts are
base64-encoded for the JSON vault file.
"""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from trustgate.exceptions import VaultDecryptionError

# AES-256-GCM parameters
IV_SIZE = 12  # 96-bit IV (recommended for GCM)
TAG_SIZE = 16  # 128-bit authentication tag
KEY_SIZE = 32  # 256-bit key


@dataclass(frozen=True)
class EncryptedEntry:
    """One encrypted vault value, base64 fields."""

    iv: str
    ciphertext: str
    auth_tag: str

    def to_dict(self) -> dict[str, str]:
        return {"iv": self.iv, "ciphertext": self.ciphertext, "authTag": self.auth_tag}

    @classmethod
    def from_dict(cls, data: Any) -> EncryptedEntry:  # noqa: ANN401
        """Parse a stored entry.

        Raises:
            VaultDecryptionError: If the entry is not a well-formed record.
        """
        if not isinstance(data, dict):
            raise VaultDecryptionError("Vault entry is not an object")
        try:
            return cls(iv=data["iv"], ciphertext=data["ciphertext"], auth_tag=data["authTag"])
        except KeyError as e:
            raise VaultDecryptionError(f"Vault entry is missing field {e}") from e


class VaultCipher:
    """Encrypts and decrypts vault values with a fixed key.

    ``AESGCM`` keeps its own immutable copy of the key, so zeroing the
    caller's buffer does not clear it. Drop every reference to a retired
    cipher so that copy can be released.

    Raises:
        ValueError: If the key is not exactly 32 bytes.
    """

    def __init__(self, key: bytes | bytearray) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"Key must be exactly {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(bytes(key))

    def encrypt(self, value: bytes) -> EncryptedEntry:
        """Encrypt *value* under a fresh IV."""
        iv = os.urandom(IV_SIZE)
        sealed = self._aesgcm.encrypt(iv, value, None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return EncryptedEntry(
            iv=base64.b64encode(iv).decode("ascii"),
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            auth_tag=base64.b64encode(tag).decode("ascii"),
        )

    def decrypt(self, entry: EncryptedEntry) -> bytes:
        """Decrypt and authenticate *entry*.

        Raises:
            VaultDecryptionError: Wrong key, tampered data or malformed fields.
        """
        try:
            iv = base64.b64decode(entry.iv, validate=True)
            ciphertext = base64.b64decode(entry.ciphertext, validate=True)
            tag = base64.b64decode(entry.auth_tag, validate=True)
            if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
                raise ValueError("IV or tag has the wrong length")
            return self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError, TypeError) as e:
            raise VaultDecryptionError(f"Decryption failed: {type(e).__name__}") from e


def zeroize(buffer: bytearray) -> None:
    """Overwrite *buffer* in place with zeros."""
    buffer[:] = bytes(len(buffer))
