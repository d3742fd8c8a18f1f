"""Ed25519 device identities.

A device is identified by the SHA-256 of its raw 32-byte public key. The
public half lives in a small JSON metadata file; the private key is kept
in the vault under ``device-identity:<device_id>``. Older metadata files
that still carry the private key are migrated on load.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from trustgate.logging import get_logger
from trustgate.vault.manager import VaultKeyPrefix, VaultManager

log = get_logger("trustgate.auth.identity")

IDENTITY_VERSION = 1
ED25519_RAW_SIZE = 32
# DER SubjectPublicKeyInfo header for an Ed25519 key
ED25519_SPKI_PREFIX = bytes.fromhex("302a300506032b6570032100")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def public_key_raw(public_key: str) -> bytes:
    """Return the raw 32-byte key for a PEM, base64url raw or base64url SPKI key.

    Raises:
        ValueError: If the input is not an Ed25519 public key.
    """
    if "BEGIN" in public_key:
        key = serialization.load_pem_public_key(public_key.encode("utf-8"))
        if not isinstance(key, Ed25519PublicKey):
            raise ValueError("Not an Ed25519 public key")
        return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)

    raw = b64url_decode(public_key.strip())
    if len(raw) == len(ED25519_SPKI_PREFIX) + ED25519_RAW_SIZE and raw.startswith(
        ED25519_SPKI_PREFIX
    ):
        raw = raw[len(ED25519_SPKI_PREFIX) :]
    if len(raw) != ED25519_RAW_SIZE:
        raise ValueError(f"Ed25519 public key must be {ED25519_RAW_SIZE} bytes, got {len(raw)}")
    return raw


def derive_device_id(public_key: str) -> str:
    """SHA-256 hex digest of the raw public key.

    Raises:
        ValueError: If the key cannot be parsed.
    """
    return hashlib.sha256(public_key_raw(public_key)).hexdigest()


def public_key_raw_base64url(public_key_pem: str) -> str:
    return b64url_encode(public_key_raw(public_key_pem))


def normalize_device_public_key(public_key: str) -> str | None:
    """Canonical base64url raw form, or ``None`` if *public_key* does not parse."""
    try:
        return b64url_encode(public_key_raw(public_key))
    except ValueError:
        return None


def load_public_key(public_key: str) -> Ed25519PublicKey:
    return Ed25519PublicKey.from_public_bytes(public_key_raw(public_key))


def load_private_key(private_key_pem: str) -> Ed25519PrivateKey:
    key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("Not an Ed25519 private key")
    return key


def sign_device_payload(private_key_pem: str, payload: str) -> str:
    """Sign *payload* and return the base64url signature."""
    signature = load_private_key(private_key_pem).sign(payload.encode("utf-8"))
    return b64url_encode(signature)


def verify_device_signature(public_key: str, payload: str, signature: str) -> bool:
    """Check a base64url (or standard base64) signature. Never raises."""
    try:
        key = load_public_key(public_key)
        try:
            sig = b64url_decode(signature)
        except ValueError:
            sig = base64.b64decode(signature)
        key.verify(sig, payload.encode("utf-8"))
    except (InvalidSignature, ValueError, TypeError):
        return False
    return True


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    public_key_pem: str
    private_key_pem: str


def generate_identity() -> DeviceIdentity:
    private_key = Ed25519PrivateKey.generate()
    public_key_pem = (
        private_key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("ascii")
    )
    private_key_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return DeviceIdentity(
        device_id=derive_device_id(public_key_pem),
        public_key_pem=public_key_pem,
        private_key_pem=private_key_pem,
    )


def _write_private_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(json.dumps(data, indent=2) + "\n")
    os.chmod(path, 0o600)


def _read_metadata(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        log.warning("device_identity_unreadable", path=str(path), error=str(e))
        return None
    if (
        isinstance(data, dict)
        and data.get("version") == IDENTITY_VERSION
        and isinstance(data.get("deviceId"), str)
        and isinstance(data.get("publicKeyPem"), str)
    ):
        return data
    return None


class DeviceIdentityStore:
    """Loads or creates this host's device identity.

    Args:
        manager: Vault manager holding the private key.
        path: Public metadata file (``<state_dir>/identity/device.json``).
    """

    def __init__(self, manager: VaultManager, path: str | Path) -> None:
        self._manager = manager
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def _public_metadata(self, identity: DeviceIdentity, created_at_ms: int) -> dict[str, Any]:
        return {
            "version": IDENTITY_VERSION,
            "deviceId": identity.device_id,
            "publicKeyPem": identity.public_key_pem,
            "createdAtMs": created_at_ms,
        }

    async def load_or_create(self) -> DeviceIdentity:
        """Return the stored identity, generating and persisting one if needed."""
        meta = await asyncio.to_thread(_read_metadata, self._path)
        if meta is not None:
            try:
                device_id = derive_device_id(meta["publicKeyPem"])
            except ValueError as e:
                log.warning("device_identity_bad_public_key", error=str(e))
            else:
                identity = await self._load_existing(meta, device_id)
                if identity is not None:
                    return identity

        identity = await asyncio.to_thread(generate_identity)
        await self._manager.store_device_identity(
            identity.device_id, {"privateKeyPem": identity.private_key_pem}
        )
        await asyncio.to_thread(
            _write_private_json,
            self._path,
            self._public_metadata(identity, int(time.time() * 1000)),
        )
        log.info("device_identity_created", device_id=identity.device_id[:16])
        return identity

    async def _load_existing(
        self, meta: dict[str, Any], device_id: str
    ) -> DeviceIdentity | None:
        stored = await self._manager.retrieve_device_identity(meta["deviceId"])
        if isinstance(stored, dict) and stored.get("privateKeyPem"):
            return DeviceIdentity(device_id, meta["publicKeyPem"], stored["privateKeyPem"])

        legacy_private = meta.get("privateKeyPem")
        if isinstance(legacy_private, str) and legacy_private:
            identity = DeviceIdentity(device_id, meta["publicKeyPem"], legacy_private)
            await self._move_private_key(meta, identity)
            return identity

        log.warning("device_identity_private_key_missing", device_id=device_id[:16])
        return None

    async def _move_private_key(self, meta: dict[str, Any], identity: DeviceIdentity) -> None:
        await self._manager.store_device_identity(
            meta["deviceId"], {"privateKeyPem": identity.private_key_pem}
        )
        created = meta.get("createdAtMs") or int(time.time() * 1000)
        public_meta = self._public_metadata(identity, created)
        public_meta["deviceId"] = meta["deviceId"]
        await asyncio.to_thread(_write_private_json, self._path, public_meta)
        log.info("device_identity_migrated_to_vault", device_id=identity.device_id[:16])

    async def migrate_to_vault(self) -> bool:
        """Move a legacy private key out of the metadata file.

        Returns:
            True when the file held a private key and now no longer does.
        """
        meta = await asyncio.to_thread(_read_metadata, self._path)
        if meta is None or not meta.get("privateKeyPem"):
            return False

        identity = DeviceIdentity(
            device_id=meta["deviceId"],
            public_key_pem=meta["publicKeyPem"],
            private_key_pem=meta["privateKeyPem"],
        )
        if await self.has_vault_identity(meta["deviceId"]):
            created = meta.get("createdAtMs") or int(time.time() * 1000)
            await asyncio.to_thread(
                _write_private_json, self._path, self._public_metadata(identity, created)
            )
            return True

        await self._move_private_key(meta, identity)
        return True

    async def has_vault_identity(self, device_id: str) -> bool:
        return await self._manager.has_credential(VaultKeyPrefix.DEVICE_IDENTITY, device_id)
