"""Encrypted credential vault.

A single JSON file of AES-256-GCM encrypted entries keyed by namespaced
strings. The key is derived lazily on first use. Writers in this process
serialise on an :class:`asyncio.Lock` around the read-modify-write cycle and
every write replaces the file atomically. There is no cross-process lock.

File format::

    {"version": 1, "entries": {"<key>": {"iv": ..., "ciphertext": ..., "authTag": ...}}}
"""

from __future__ import annotations

import asyncio
import base64
import json
import os
import time
from pathlib import Path
from typing import Any

from trustgate.audit import log_vault_access
from trustgate.exceptions import VaultDecryptionError, VaultError, VaultNotInitializedError
from trustgate.logging import get_logger
from trustgate.vault.encryption import EncryptedEntry, VaultCipher, zeroize
from trustgate.vault.keys import DEFAULT_ITERATIONS, SALT_FILE_NAME, VaultKeyManager

log = get_logger("trustgate.vault.store")

VAULT_VERSION = 1
DEFAULT_VAULT_PATH = Path.home() / ".trustgate" / "vault" / "vault.enc"


def _empty_vault() -> dict[str, Any]:
    return {"version": VAULT_VERSION, "entries": {}}


def _is_valid_vault(data: Any) -> bool:  # noqa: ANN401
    return isinstance(data, dict) and isinstance(data.get("entries"), dict)


class SecureVault:
    """AES-256-GCM file vault.

    Args:
        vault_path: Vault file; the salt lives beside it as ``vault.salt``.
        passphrase: Explicit passphrase. Falls back to
            ``TRUSTGATE_VAULT_PASSWORD``, then the machine fingerprint.
        iterations: PBKDF2 iterations (at least 300,000).
    """

    backend = "aes-file"

    def __init__(
        self,
        vault_path: str | Path | None = None,
        passphrase: str | None = None,
        iterations: int = DEFAULT_ITERATIONS,
    ) -> None:
        self._path = Path(vault_path).expanduser() if vault_path else DEFAULT_VAULT_PATH
        self._keys = VaultKeyManager(self._path.parent / SALT_FILE_NAME, passphrase, iterations)
        self._key: bytearray | None = None
        self._cipher: VaultCipher | None = None
        self._init_lock = asyncio.Lock()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def initialized(self) -> bool:
        return self._cipher is not None

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def _ensure_initialized(self) -> VaultCipher:
        if self._cipher is None:
            async with self._init_lock:
                if self._cipher is None:
                    await asyncio.to_thread(self._initialize)
        if self._cipher is None:
            raise VaultNotInitializedError("Vault key derivation did not complete")
        return self._cipher

    def _initialize(self) -> None:
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.chmod(directory, 0o700)

        salt = self._keys.load_or_create_salt()
        self._key = self._keys.derive_key(salt)
        self._cipher = VaultCipher(self._key)
        log.info(
            "vault_initialized",
            path=str(self._path),
            iterations=self._keys.iterations,
        )

    # ------------------------------------------------------------------
    # File I/O (run in a worker thread)
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return _empty_vault()

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            data = None
        if not _is_valid_vault(data):
            return self._reset_corrupted()
        return data

    def _reset_corrupted(self) -> dict[str, Any]:
        backup = self._path.with_name(f"{self._path.name}.corrupted.{int(time.time() * 1000)}")
        os.replace(self._path, backup)
        log.error("vault_file_corrupted", path=str(self._path), backup=str(backup))
        data = _empty_vault()
        self._save(data)
        return data

    def _save(self, data: dict[str, Any]) -> None:
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError:
            log.exception("vault_write_failed", path=str(self._path))
            tmp_path.unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def store(self, key: str, value: bytes) -> None:
        """Encrypt and persist *value* under *key*, replacing any previous value."""
        cipher = await self._ensure_initialized()
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data["entries"][key] = cipher.encrypt(bytes(value)).to_dict()
            await asyncio.to_thread(self._save, data)
        log_vault_access(operation="store", key=key, success=True)

    async def retrieve(self, key: str) -> bytes | None:
        """Return the decrypted value, or ``None`` when absent or undecryptable."""
        cipher = await self._ensure_initialized()
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        raw_entry = data["entries"].get(key)
        if raw_entry is None:
            return None

        try:
            value = cipher.decrypt(EncryptedEntry.from_dict(raw_entry))
        except VaultDecryptionError as e:
            log.error("vault_decrypt_failed", key_prefix=key.split(":", 1)[0], error=str(e))
            log_vault_access(operation="retrieve", key=key, success=False)
            return None

        log_vault_access(operation="retrieve", key=key, success=True)
        return value

    async def delete(self, key: str) -> bool:
        """Remove *key*. Returns False when it was not present."""
        await self._ensure_initialized()
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            entries = data["entries"]
            if key not in entries:
                return False

            entry = entries[key]
            if isinstance(entry, dict) and isinstance(entry.get("ciphertext"), str):
                try:
                    size = len(base64.b64decode(entry["ciphertext"]))
                except ValueError:
                    size = 0
                entry["ciphertext"] = base64.b64encode(bytes(size)).decode("ascii")
            del entries[key]
            await asyncio.to_thread(self._save, data)

        log_vault_access(operation="delete", key=key, success=True)
        return True

    async def exists(self, key: str) -> bool:
        await self._ensure_initialized()
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        return key in data["entries"]

    async def list(self) -> list[str]:
        """Return every stored key."""
        await self._ensure_initialized()
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        return [*data["entries"]]

    async def rotate_keys(self) -> None:
        """Re-encrypt every entry under a new salt and key.

        Entries that no longer decrypt are dropped. The re-encrypted vault is
        written before the new salt; if the salt cannot be written the old
        vault file is restored, so disk never pairs a salt with ciphertext
        from another key.

        Raises:
            VaultError: If either file could not be written. The vault keeps
                working under the old key.
        """
        cipher = await self._ensure_initialized()
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            decrypted: dict[str, bytes] = {}
            for key, raw_entry in data["entries"].items():
                try:
                    decrypted[key] = cipher.decrypt(EncryptedEntry.from_dict(raw_entry))
                except VaultDecryptionError:
                    log.warning(
                        "vault_rotation_skipped_entry", key_prefix=key.split(":", 1)[0]
                    )

            new_salt = self._keys.generate_salt()
            new_key = await asyncio.to_thread(self._keys.derive_key, new_salt)
            new_cipher = VaultCipher(new_key)
            rotated = _empty_vault()
            for key, value in decrypted.items():
                rotated["entries"][key] = new_cipher.encrypt(value).to_dict()

            try:
                await asyncio.to_thread(self._save, rotated)
            except OSError as e:
                zeroize(new_key)
                raise VaultError(f"Key rotation failed while writing the vault: {e}") from e

            try:
                await asyncio.to_thread(self._keys.persist_salt, new_salt)
            except OSError as e:
                log.error("vault_rotation_salt_write_failed", error=str(e))
                await asyncio.to_thread(self._save, data)
                zeroize(new_key)
                raise VaultError(f"Key rotation failed while writing the salt: {e}") from e

            old_key = self._key
            self._key = new_key
            # The retired cipher holds its own copy of the old key
            self._cipher = new_cipher
            if old_key is not None:
                zeroize(old_key)

        log.warning("vault_keys_rotated", entries=len(decrypted), path=str(self._path))
        log_vault_access(operation="rotate", key="vault:*", success=True)


def _secure_delete(path: Path) -> None:
    try:
        size = path.stat().st_size
        with path.open("r+b") as f:
            f.write(bytes(size))
            f.flush()
            os.fsync(f.fileno())
        path.unlink()
    except FileNotFoundError:
        return


async def secure_delete(path: str | Path) -> None:
    """Zero-fill *path*, sync it to disk, then unlink it. Missing files are ignored."""
    await asyncio.to_thread(_secure_delete, Path(path))
