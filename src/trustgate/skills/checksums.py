"""Known-good skill checksums and signatures.

The store is a JSON file mapping skill keys to their expected SHA-256 and
optional detached signature, plus the list of trusted signer keys.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from trustgate.logging import get_logger

if TYPE_CHECKING:
    from trustgate.policy import SkillPolicy

log = get_logger("trustgate.skills.checksums")

STORE_VERSION = 1


class ChecksumFailureReason(StrEnum):
    CHECKSUM_MISMATCH = "checksum_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    KEY_UNTRUSTED = "key_untrusted"
    NOT_FOUND = "not_found"
    FILE_READ_ERROR = "file_read_error"


@dataclass
class SkillChecksum:
    """Expected digest for one skill."""

    skill_key: str
    sha256: str
    signature: str | None = None
    signed_by: str | None = None
    verified_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "skillKey": self.skill_key,
            "sha256": self.sha256,
            "signature": self.signature,
            "signedBy": self.signed_by,
            "verifiedAt": self.verified_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SkillChecksum:
        return cls(
            skill_key=data["skillKey"],
            sha256=data["sha256"],
            signature=data.get("signature"),
            signed_by=data.get("signedBy"),
            verified_at=data.get("verifiedAt"),
        )


@dataclass
class ChecksumVerificationResult:
    valid: bool
    reason: ChecksumFailureReason | None = None
    expected: str | None = None
    actual: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ChecksumStoreMetadata:
    skill_count: int
    trusted_signer_count: int
    last_updated: str


@runtime_checkable
class SignatureVerifier(Protocol):
    """Checks a detached signature over skill content."""

    def verify(self, content: bytes, signature: str, signer: str) -> bool:
        """Return True when *signature* over *content* was made by *signer*."""
        ...


class Ed25519SignatureVerifier:
    """Signatures are base64 Ed25519; signers are base64url raw public keys."""

    def verify(self, content: bytes, signature: str, signer: str) -> bool:
        try:
            public_key = Ed25519PublicKey.from_public_bytes(_b64url_decode(signer))
            public_key.verify(base64.b64decode(signature), content)
        except (InvalidSignature, ValueError) as e:
            log.warning("skill_signature_rejected", signer=signer[:16], error=str(e))
            return False
        return True


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def compute_checksum(content: bytes | str) -> str:
    """Hex SHA-256 of *content*."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def _empty_store() -> dict[str, Any]:
    return {
        "version": STORE_VERSION,
        "skills": {},
        "trustedSigners": [],
        "lastUpdated": datetime.now(UTC).isoformat(),
    }


class ChecksumStore:
    """JSON-backed checksum database with an in-memory cache."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return _empty_store()
        data.setdefault("skills", {})
        data.setdefault("trustedSigners", [])
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._path)

    async def load(self) -> dict[str, Any]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read)
        return self._data

    async def _save(self, data: dict[str, Any]) -> None:
        data["lastUpdated"] = datetime.now(UTC).isoformat()
        await asyncio.to_thread(self._write, data)
        self._data = data

    def clear_cache(self) -> None:
        """Forget the cached copy; the next call re-reads the file."""
        self._data = None

    async def get(self, skill_key: str) -> SkillChecksum | None:
        data = await self.load()
        entry = data["skills"].get(skill_key)
        return SkillChecksum.from_dict(entry) if entry else None

    async def set(self, checksum: SkillChecksum) -> None:
        async with self._lock:
            data = await self.load()
            data["skills"][checksum.skill_key] = checksum.to_dict()
            await self._save(data)

    async def bulk_update(self, checksums: list[SkillChecksum]) -> None:
        async with self._lock:
            data = await self.load()
            for checksum in checksums:
                data["skills"][checksum.skill_key] = checksum.to_dict()
            await self._save(data)

    async def remove(self, skill_key: str) -> bool:
        async with self._lock:
            data = await self.load()
            if skill_key not in data["skills"]:
                return False
            del data["skills"][skill_key]
            await self._save(data)
            return True

    async def list_skills(self) -> list[str]:
        data = await self.load()
        return list(data["skills"])

    async def add_trusted_signer(self, signer: str) -> None:
        async with self._lock:
            data = await self.load()
            if signer not in data["trustedSigners"]:
                data["trustedSigners"].append(signer)
                await self._save(data)

    async def remove_trusted_signer(self, signer: str) -> bool:
        async with self._lock:
            data = await self.load()
            if signer not in data["trustedSigners"]:
                return False
            data["trustedSigners"].remove(signer)
            await self._save(data)
            return True

    async def get_trusted_signers(self) -> list[str]:
        data = await self.load()
        return list(data["trustedSigners"])

    async def metadata(self) -> ChecksumStoreMetadata:
        data = await self.load()
        return ChecksumStoreMetadata(
            skill_count=len(data["skills"]),
            trusted_signer_count=len(data["trustedSigners"]),
            last_updated=data.get("lastUpdated", ""),
        )


async def verify_skill_checksum(
    skill_key: str,
    content: bytes | str,
    store: ChecksumStore,
    config: SkillPolicy,
    signature_verifier: SignatureVerifier | None = None,
) -> ChecksumVerificationResult:
    """Compare *content* with the recorded checksum and signature.

    Args:
        skill_key: Skill identifier in the store.
        content: Current skill content.
        store: Checksum database.
        config: Skill policy (``require_checksum``, ``require_signature``,
            ``trusted_signers``).
        signature_verifier: Required when signatures are required.

    Returns:
        A :class:`ChecksumVerificationResult`.
    """
    raw = content.encode("utf-8") if isinstance(content, str) else content
    actual = compute_checksum(raw)
    entry = await store.get(skill_key)

    if entry is None:
        if config.require_checksum or config.require_signature:
            return ChecksumVerificationResult(
                valid=False, reason=ChecksumFailureReason.NOT_FOUND, actual=actual
            )
        return ChecksumVerificationResult(
            valid=True, actual=actual, warnings=[f"No checksum recorded for {skill_key}"]
        )

    if entry.sha256.lower() != actual:
        log.warning("skill_checksum_mismatch", skill_key=skill_key)
        return ChecksumVerificationResult(
            valid=False,
            reason=ChecksumFailureReason.CHECKSUM_MISMATCH,
            expected=entry.sha256,
            actual=actual,
        )

    if not config.require_signature:
        return ChecksumVerificationResult(valid=True, expected=entry.sha256, actual=actual)

    invalid = ChecksumVerificationResult(
        valid=False,
        reason=ChecksumFailureReason.SIGNATURE_INVALID,
        expected=entry.sha256,
        actual=actual,
    )
    if not entry.signature or not entry.signed_by:
        return invalid

    trusted = {*config.trusted_signers, *(await store.get_trusted_signers())}
    if entry.signed_by not in trusted:
        return ChecksumVerificationResult(
            valid=False,
            reason=ChecksumFailureReason.KEY_UNTRUSTED,
            expected=entry.sha256,
            actual=actual,
        )

    if signature_verifier is None:
        log.warning("skill_signature_verifier_missing", skill_key=skill_key)
        return invalid
    if not signature_verifier.verify(raw, entry.signature, entry.signed_by):
        return invalid

    return ChecksumVerificationResult(valid=True, expected=entry.sha256, actual=actual)


async def verify_skill_file(
    skill_key: str,
    path: str | Path,
    store: ChecksumStore,
    config: SkillPolicy,
    signature_verifier: SignatureVerifier | None = None,
) -> ChecksumVerificationResult:
    """Read *path* and run :func:`verify_skill_checksum` on its bytes."""
    try:
        content = await asyncio.to_thread(Path(path).read_bytes)
    except OSError as e:
        log.warning("skill_file_read_failed", skill_key=skill_key, error=str(e))
        return ChecksumVerificationResult(
            valid=False, reason=ChecksumFailureReason.FILE_READ_ERROR
        )
    return await verify_skill_checksum(skill_key, content, store, config, signature_verifier)

