"""Migration of legacy plaintext credential files into the vault.

Each legacy item is migrated, skipped (nothing to migrate) or failed on
its own. Plaintext originals are securely deleted once stored, except the
Copilot token cache and ``.env``, which other tools still read. A marker
file records the run and makes later runs no-ops.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from trustgate.logging import get_logger
from trustgate.vault.manager import SENSITIVE_ENV_KEYS, VaultKeyPrefix, VaultManager
from trustgate.vault.store import SecureVault, secure_delete

log = get_logger("trustgate.vault.migration")

MARKER_VERSION = 1

_ENV_LINE = re.compile(r"^\s*(?:export\s+)?([A-Z_][A-Z0-9_]*)\s*=\s*(.+)$")


@dataclass
class MigrationFailure:
    key: str
    error: str


@dataclass
class VaultMigrationResult:
    migrated: list[str] = field(default_factory=list)
    failed: list[MigrationFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class MigrationStatus:
    completed: bool
    has_plaintext: bool
    details: dict[str, Any] | None = None


class VaultMigrator:
    """Moves legacy plaintext credentials under *state_dir* into *vault*."""

    def __init__(self, vault: SecureVault, state_dir: str | Path) -> None:
        self._manager = VaultManager(vault)
        self._state_dir = Path(state_dir).expanduser()
        self.marker_path = self._state_dir / "vault" / ".migrated"
        self.paths: dict[str, Path] = {
            "device-auth": self._state_dir / "identity" / "device-auth.json",
            "device-identity": self._state_dir / "identity" / "device.json",
            "auth-profiles": self._state_dir / "auth-profiles.json",
            "gateway-token": self._state_dir / "gateway-token",
            "copilot-token": self._state_dir / "credentials" / "github-copilot.token.json",
            "env-file": self._state_dir / ".env",
        }

    def is_migration_completed(self) -> bool:
        return self.marker_path.exists()

    def has_plaintext_credentials(self) -> bool:
        return any(path.exists() for path in self.paths.values())

    async def migrate(self) -> VaultMigrationResult:
        """Run every migration step once.

        Returns:
            Which items were migrated, skipped or failed. Empty when the
            marker already exists.
        """
        result = VaultMigrationResult()
        if self.is_migration_completed():
            log.info("vault_migration_already_completed")
            return result

        steps: tuple[tuple[str, Callable[[Path], Awaitable[bool]]], ...] = (
            ("device-auth", self._migrate_device_auth),
            ("device-identity", self._migrate_device_identity),
            ("auth-profiles", self._migrate_auth_profiles),
            ("gateway-token", self._migrate_gateway_token),
            ("copilot-token", self._migrate_copilot_token),
            ("env-file", self._migrate_env_file),
        )
        for name, step in steps:
            path = self.paths[name]
            try:
                migrated = await step(path)
            except FileNotFoundError:
                migrated = False
            except Exception as e:
                log.warning("vault_migration_step_failed", item=name, error=str(e))
                result.failed.append(MigrationFailure(key=name, error=str(e)))
                continue

            if migrated:
                log.info("vault_migration_step_done", item=name, path=str(path))
                result.migrated.append(name)
            else:
                result.skipped.append(name)

        if result.migrated:
            await asyncio.to_thread(self._write_marker, result)

        log.info(
            "vault_migration_complete",
            migrated=result.migrated,
            failed=[f.key for f in result.failed],
            skipped=result.skipped,
        )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    async def _read_json(path: Path) -> Any:  # noqa: ANN401
        return json.loads(await asyncio.to_thread(path.read_text, encoding="utf-8"))

    async def _migrate_device_auth(self, path: Path) -> bool:
        data = await self._read_json(path)
        await self._manager.store_device_auth(str(data.get("deviceId") or "default"), data)
        await secure_delete(path)
        return True

    async def _migrate_device_identity(self, path: Path) -> bool:
        data = await self._read_json(path)
        await self._manager.store_device_identity(str(data.get("deviceId") or "default"), data)
        await secure_delete(path)
        return True

    async def _migrate_auth_profiles(self, path: Path) -> bool:
        data = await self._read_json(path)
        await self._manager.store_auth_profiles("default", data)
        await secure_delete(path)
        return True

    async def _migrate_gateway_token(self, path: Path) -> bool:
        token = (await asyncio.to_thread(path.read_text, encoding="utf-8")).strip()
        if not token:
            return False
        await self._manager.store_gateway_token(token)
        await secure_delete(path)
        return True

    async def _migrate_copilot_token(self, path: Path) -> bool:
        data = await self._read_json(path)
        if not isinstance(data, dict) or not data.get("token"):
            return False
        # The file stays as a cache; the vault copy is authoritative
        await self._manager.store_credential(VaultKeyPrefix.COPILOT_TOKEN, "default", data)
        return True

    async def _migrate_env_file(self, path: Path) -> bool:
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        migrated = False
        for line in content.splitlines():
            match = _ENV_LINE.match(line)
            if not match or match.group(1) not in SENSITIVE_ENV_KEYS:
                continue
            value = match.group(2).strip().strip("\"'")
            if not value:
                continue
            await self._manager.store_env_secret(match.group(1), value)
            migrated = True
        return migrated

    # ------------------------------------------------------------------
    # Marker
    # ------------------------------------------------------------------

    def _write_marker(self, result: VaultMigrationResult) -> None:
        marker = {
            "version": MARKER_VERSION,
            "migratedAt": datetime.now(UTC).isoformat(),
            "migrated": result.migrated,
            "failed": [f.key for f in result.failed],
            "skipped": result.skipped,
        }
        self.marker_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(self.marker_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(marker, f, indent=2)

    def reset_migration(self) -> None:
        """Remove the marker. Plaintext files already deleted are not restored."""
        self.marker_path.unlink(missing_ok=True)
        log.info("vault_migration_marker_removed")

    def get_migration_status(self) -> MigrationStatus:
        completed = self.is_migration_completed()
        status = MigrationStatus(
            completed=completed, has_plaintext=self.has_plaintext_credentials()
        )
        if completed:
            try:
                status.details = json.loads(self.marker_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                log.warning("vault_migration_marker_unreadable", error=str(e))
        return status
