"""Unit tests for skill checksums and signatures."""

from __future__ import annotations

import base64
import json
import os
import stat
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from trustgate.policy import SkillPolicy
from trustgate.skills.checksums import (
    ChecksumFailureReason,
    ChecksumStore,
    Ed25519SignatureVerifier,
    SkillChecksum,
    compute_checksum,
    verify_skill_checksum,
    verify_skill_file,
)

CONTENT = b"# Weather skill\nLook up forecasts."


def _signer() -> tuple[Ed25519PrivateKey, str]:
    key = Ed25519PrivateKey.generate()
    raw = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return key, base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


@pytest.fixture
def store(tmp_path: Path) -> ChecksumStore:
    """Checksum store in a temporary directory."""
    return ChecksumStore(tmp_path / "skills" / "checksums.json")


class TestChecksumStore:
    """Tests for the JSON-backed store."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, store: ChecksumStore) -> None:
        """Entries survive a fresh store instance."""
        await store.set(SkillChecksum(skill_key="weather", sha256=compute_checksum(CONTENT)))

        reopened = ChecksumStore(store.path)
        entry = await reopened.get("weather")
        assert entry is not None
        assert entry.sha256 == compute_checksum(CONTENT)
        assert await reopened.list_skills() == ["weather"]

    @pytest.mark.asyncio
    async def test_file_format_and_permissions(self, store: ChecksumStore) -> None:
        """The file is camelCase JSON readable only by the owner."""
        await store.set(SkillChecksum(skill_key="weather", sha256="abc", signed_by="k"))

        data = json.loads(store.path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert data["skills"]["weather"]["signedBy"] == "k"
        assert "lastUpdated" in data
        assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, store: ChecksumStore) -> None:
        """A missing store reads as empty."""
        assert await store.get("nothing") is None
        meta = await store.metadata()
        assert meta.skill_count == 0
        assert meta.trusted_signer_count == 0

    @pytest.mark.asyncio
    async def test_remove_and_bulk_update(self, store: ChecksumStore) -> None:
        """Bulk updates add entries; remove reports whether anything was removed."""
        await store.bulk_update(
            [SkillChecksum(skill_key="a", sha256="1"), SkillChecksum(skill_key="b", sha256="2")]
        )
        assert sorted(await store.list_skills()) == ["a", "b"]
        assert await store.remove("a")
        assert not await store.remove("a")
        assert await store.list_skills() == ["b"]

    @pytest.mark.asyncio
    async def test_trusted_signers(self, store: ChecksumStore) -> None:
        """Signers are deduplicated and removable."""
        await store.add_trusted_signer("key-1")
        await store.add_trusted_signer("key-1")
        assert await store.get_trusted_signers() == ["key-1"]
        assert await store.remove_trusted_signer("key-1")
        assert not await store.remove_trusted_signer("key-1")

    @pytest.mark.asyncio
    async def test_clear_cache_rereads(self, store: ChecksumStore) -> None:
        """clear_cache picks up changes made by another instance."""
        await store.list_skills()
        await ChecksumStore(store.path).set(SkillChecksum(skill_key="x", sha256="1"))
        assert await store.list_skills() == []
        store.clear_cache()
        assert await store.list_skills() == ["x"]


class TestVerifySkillChecksum:
    """Tests for verify_skill_checksum()."""

    @pytest.mark.asyncio
    async def test_unknown_skill_optional(self, store: ChecksumStore) -> None:
        """Without requirements an unknown skill passes with a warning."""
        result = await verify_skill_checksum("new", CONTENT, store, SkillPolicy())
        assert result.valid
        assert result.warnings

    @pytest.mark.asyncio
    async def test_unknown_skill_required(self, store: ChecksumStore) -> None:
        """With checksums required an unknown skill fails."""
        result = await verify_skill_checksum(
            "new", CONTENT, store, SkillPolicy(require_checksum=True)
        )
        assert not result.valid
        assert result.reason == ChecksumFailureReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_match_and_mismatch(self, store: ChecksumStore) -> None:
        """Digests are compared exactly."""
        await store.set(SkillChecksum(skill_key="weather", sha256=compute_checksum(CONTENT)))
        policy = SkillPolicy(require_checksum=True)

        assert (await verify_skill_checksum("weather", CONTENT, store, policy)).valid
        bad = await verify_skill_checksum("weather", CONTENT + b"!", store, policy)
        assert not bad.valid
        assert bad.reason == ChecksumFailureReason.CHECKSUM_MISMATCH
        assert bad.expected == compute_checksum(CONTENT)

    @pytest.mark.asyncio
    async def test_valid_signature(self, store: ChecksumStore) -> None:
        """A trusted Ed25519 signature verifies."""
        key, signer = _signer()
        signature = base64.b64encode(key.sign(CONTENT)).decode()
        await store.set(
            SkillChecksum(
                skill_key="weather",
                sha256=compute_checksum(CONTENT),
                signature=signature,
                signed_by=signer,
            )
        )
        policy = SkillPolicy(require_signature=True, trusted_signers=[signer])

        result = await verify_skill_checksum(
            "weather", CONTENT, store, policy, Ed25519SignatureVerifier()
        )
        assert result.valid

    @pytest.mark.asyncio
    async def test_untrusted_signer(self, store: ChecksumStore) -> None:
        """Signers outside both trust lists are rejected."""
        key, signer = _signer()
        await store.set(
            SkillChecksum(
                skill_key="weather",
                sha256=compute_checksum(CONTENT),
                signature=base64.b64encode(key.sign(CONTENT)).decode(),
                signed_by=signer,
            )
        )
        result = await verify_skill_checksum(
            "weather",
            CONTENT,
            store,
            SkillPolicy(require_signature=True),
            Ed25519SignatureVerifier(),
        )
        assert result.reason == ChecksumFailureReason.KEY_UNTRUSTED

    @pytest.mark.asyncio
    async def test_forged_signature(self, store: ChecksumStore) -> None:
        """A signature by a different key is invalid."""
        _, signer = _signer()
        other, _ = _signer()
        await store.set(
            SkillChecksum(
                skill_key="weather",
                sha256=compute_checksum(CONTENT),
                signature=base64.b64encode(other.sign(CONTENT)).decode(),
                signed_by=signer,
            )
        )
        await store.add_trusted_signer(signer)

        result = await verify_skill_checksum(
            "weather",
            CONTENT,
            store,
            SkillPolicy(require_signature=True),
            Ed25519SignatureVerifier(),
        )
        assert result.reason == ChecksumFailureReason.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_missing_verifier_is_invalid(self, store: ChecksumStore) -> None:
        """Required signatures cannot pass without a verifier."""
        key, signer = _signer()
        await store.set(
            SkillChecksum(
                skill_key="weather",
                sha256=compute_checksum(CONTENT),
                signature=base64.b64encode(key.sign(CONTENT)).decode(),
                signed_by=signer,
            )
        )
        policy = SkillPolicy(require_signature=True, trusted_signers=[signer])
        result = await verify_skill_checksum("weather", CONTENT, store, policy)
        assert result.reason == ChecksumFailureReason.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_verify_skill_file(self, store: ChecksumStore, tmp_path: Path) -> None:
        """Files are read as bytes; unreadable files fail."""
        path = tmp_path / "SKILL.md"
        path.write_bytes(CONTENT)
        await store.set(SkillChecksum(skill_key="weather", sha256=compute_checksum(CONTENT)))

        assert (await verify_skill_file("weather", path, store, SkillPolicy())).valid
        missing = await verify_skill_file("weather", tmp_path / "nope.md", store, SkillPolicy())
        assert missing.reason == ChecksumFailureReason.FILE_READ_ERROR


def test_compute_checksum_accepts_str_and_bytes() -> None:
    """Strings are hashed as UTF-8."""
    assert compute_checksum("é") == compute_checksum("é".encode())
