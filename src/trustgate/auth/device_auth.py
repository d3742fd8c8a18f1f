"""Role-scoped device tokens kept in the vault under ``device-auth:<device_id>``.

Stored record::

    {"version": 1, "deviceId": "...",
     "tokens": {"<role>": {"token", "role", "scopes", "updatedAtMs"}}}
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from trustgate.logging import get_logger
from trustgate.vault.manager import VaultKeyPrefix, VaultManager

log = get_logger("trustgate.auth.device_auth")

DEVICE_AUTH_VERSION = 1


@dataclass
class DeviceAuthEntry:
    token: str
    role: str
    scopes: list[str] = field(default_factory=list)
    updated_at_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "role": self.role,
            "scopes": self.scopes,
            "updatedAtMs": self.updated_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceAuthEntry:
        return cls(
            token=data["token"],
            role=data.get("role", ""),
            scopes=list(data.get("scopes") or []),
            updated_at_ms=int(data.get("updatedAtMs") or 0),
        )


def normalize_scopes(scopes: list[str] | None) -> list[str]:
    """Trimmed, de-duplicated and sorted."""
    return sorted({s.strip() for s in scopes or [] if s.strip()})


class DeviceAuthStore:
    """Per-device token sets, one token per role."""

    def __init__(self, manager: VaultManager) -> None:
        self._manager = manager

    async def _load(self, device_id: str) -> dict[str, Any] | None:
        data = await self._manager.retrieve_device_auth(device_id)
        if (
            not isinstance(data, dict)
            or data.get("deviceId") != device_id
            or not isinstance(data.get("tokens"), dict)
        ):
            return None
        return data

    async def load_token(self, device_id: str, role: str) -> DeviceAuthEntry | None:
        data = await self._load(device_id)
        if data is None:
            return None
        entry = data["tokens"].get(role.strip())
        if not isinstance(entry, dict) or not isinstance(entry.get("token"), str):
            return None
        return DeviceAuthEntry.from_dict(entry)

    async def store_token(
        self, device_id: str, role: str, token: str, scopes: list[str] | None = None
    ) -> DeviceAuthEntry:
        """Store *token* for *role*, keeping the device's other roles."""
        existing = await self._load(device_id)
        tokens = dict(existing["tokens"]) if existing else {}
        entry = DeviceAuthEntry(
            token=token,
            role=role.strip(),
            scopes=normalize_scopes(scopes),
            updated_at_ms=int(time.time() * 1000),
        )
        tokens[entry.role] = entry.to_dict()
        await self._manager.store_device_auth(
            device_id, {"version": DEVICE_AUTH_VERSION, "deviceId": device_id, "tokens": tokens}
        )
        log.info("device_token_stored", device_id=device_id[:16], role=entry.role)
        return entry

    async def clear_token(self, device_id: str, role: str) -> bool:
        """Remove the token for *role*. Returns False if none was stored."""
        existing = await self._load(device_id)
        role = role.strip()
        if existing is None or role not in existing["tokens"]:
            return False
        tokens = {k: v for k, v in existing["tokens"].items() if k != role}
        await self._manager.store_device_auth(
            device_id, {"version": DEVICE_AUTH_VERSION, "deviceId": device_id, "tokens": tokens}
        )
        log.info("device_token_cleared", device_id=device_id[:16], role=role)
        return True

    async def has_device_auth(self, device_id: str) -> bool:
        return await self._manager.has_credential(VaultKeyPrefix.DEVICE_AUTH, device_id)
