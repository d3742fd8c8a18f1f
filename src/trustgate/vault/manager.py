"""Typed credential helpers on top of :class:`SecureVault`.

One :class:`VaultManager` is built at process start and handed to every
component that stores credentials. Values are JSON-serialised and stored
under namespaced keys (``<prefix><id>``).

Typical lifecycle::

    manager = VaultManager.from_settings(get_settings())
    await manager.store_telegram_token("default", "123:abc")
    token = await manager.retrieve_telegram_token("default")
"""

from __future__ import annotations

import json
import os
import time
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import SecretStr

from trustgate.logging import get_logger
from trustgate.vault.store import SecureVault

if TYPE_CHECKING:
    from trustgate.config import Settings

log = get_logger("trustgate.vault.manager")


class VaultKeyPrefix(StrEnum):
    """Key namespaces. The value is the literal key prefix."""

    DEVICE_AUTH = "device-auth:"
    DEVICE_IDENTITY = "device-identity:"
    AUTH_PROFILE = "auth-profile:"
    PAIRING = "pairing:"
    GATEWAY = "gateway:"
    TELEGRAM_TOKEN = "telegram-token:"
    DISCORD_TOKEN = "discord-token:"
    SLACK_TOKEN = "slack-token:"
    WHATSAPP_CREDS = "whatsapp-creds:"
    CHANNEL_CREDS = "channel-creds:"
    COPILOT_TOKEN = "copilot-token:"
    ENV_SECRET = "env-secret:"


# Environment variables mirrored into the vault
SENSITIVE_ENV_KEYS: tuple[str, ...] = (  # nosec B105 - variable names, not values
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
)

# Secret name -> Settings attribute used as the fallback source
_SETTINGS_FIELD_MAP: dict[str, str] = {  # nosec B105 - field name mapping, not passwords
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "OPENAI_API_KEY": "openai_api_key",
}


def build_vault_key(prefix: VaultKeyPrefix, identifier: str) -> str:
    return f"{prefix.value}{identifier}"


def parse_vault_key(key: str) -> tuple[VaultKeyPrefix, str] | None:
    """Split *key* into its namespace and identifier; ``None`` if unknown."""
    for prefix in VaultKeyPrefix:
        if key.startswith(prefix.value):
            return prefix, key[len(prefix.value) :]
    return None


def _now_ms() -> int:
    return int(time.time() * 1000)


class VaultManager:
    """JSON credential store with per-namespace helpers."""

    def __init__(self, vault: SecureVault) -> None:
        self._vault = vault

    @classmethod
    def from_settings(cls, settings: Settings) -> VaultManager:
        """Build the manager from environment settings."""
        passphrase = (
            settings.vault_password.get_secret_value() if settings.vault_password else None
        )
        return cls(
            SecureVault(
                settings.resolved_vault_path,
                passphrase=passphrase,
                iterations=settings.vault_pbkdf2_iterations,
            )
        )

    @property
    def vault(self) -> SecureVault:
        return self._vault

    @property
    def backend(self) -> str:
        return self._vault.backend

    # ------------------------------------------------------------------
    # Generic credentials
    # ------------------------------------------------------------------

    async def store_credential(
        self, prefix: VaultKeyPrefix, identifier: str, data: Any  # noqa: ANN401
    ) -> None:
        payload = json.dumps(data).encode("utf-8")
        await self._vault.store(build_vault_key(prefix, identifier), payload)

    async def retrieve_credential(
        self, prefix: VaultKeyPrefix, identifier: str
    ) -> Any:  # noqa: ANN401
        """Return the stored JSON value, or ``None`` if absent or unparseable."""
        key = build_vault_key(prefix, identifier)
        raw = await self._vault.retrieve(key)
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.error("vault_credential_unparseable", key_prefix=prefix.value)
            return None

    async def delete_credential(self, prefix: VaultKeyPrefix, identifier: str) -> bool:
        return await self._vault.delete(build_vault_key(prefix, identifier))

    async def has_credential(self, prefix: VaultKeyPrefix, identifier: str) -> bool:
        return await self._vault.exists(build_vault_key(prefix, identifier))

    async def list_credentials(self, prefix: VaultKeyPrefix) -> list[str]:
        """Return the identifiers stored under *prefix* (prefix stripped)."""
        keys = await self._vault.list()
        return [key[len(prefix.value) :] for key in keys if key.startswith(prefix.value)]

    async def list_all_credentials(self) -> list[str]:
        return await self._vault.list()

    # ------------------------------------------------------------------
    # Auth profiles, device identity and device auth
    # ------------------------------------------------------------------

    async def store_auth_profiles(self, agent_id: str, profiles: Any) -> None:  # noqa: ANN401
        await self.store_credential(VaultKeyPrefix.AUTH_PROFILE, agent_id, profiles)

    async def retrieve_auth_profiles(self, agent_id: str) -> Any:  # noqa: ANN401
        return await self.retrieve_credential(VaultKeyPrefix.AUTH_PROFILE, agent_id)

    async def store_device_identity(self, device_id: str, identity: dict[str, Any]) -> None:
        await self.store_credential(VaultKeyPrefix.DEVICE_IDENTITY, device_id, identity)

    async def retrieve_device_identity(self, device_id: str) -> dict[str, Any] | None:
        return await self.retrieve_credential(VaultKeyPrefix.DEVICE_IDENTITY, device_id)

    async def store_device_auth(self, device_id: str, auth: dict[str, Any]) -> None:
        await self.store_credential(VaultKeyPrefix.DEVICE_AUTH, device_id, auth)

    async def retrieve_device_auth(self, device_id: str) -> dict[str, Any] | None:
        return await self.retrieve_credential(VaultKeyPrefix.DEVICE_AUTH, device_id)

    async def store_gateway_token(self, token: str, name: str = "default") -> None:
        await self.store_credential(
            VaultKeyPrefix.GATEWAY, name, {"token": token, "storedAt": _now_ms()}
        )

    async def retrieve_gateway_token(self, name: str = "default") -> str | None:
        data = await self.retrieve_credential(VaultKeyPrefix.GATEWAY, name)
        return data.get("token") if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # Messaging channel credentials
    # ------------------------------------------------------------------

    async def _store_token(self, prefix: VaultKeyPrefix, account_id: str, token: str) -> None:
        await self.store_credential(prefix, account_id, {"token": token, "storedAt": _now_ms()})

    async def _retrieve_token(self, prefix: VaultKeyPrefix, account_id: str) -> str | None:
        data = await self.retrieve_credential(prefix, account_id)
        return data.get("token") if isinstance(data, dict) else None

    async def store_telegram_token(self, account_id: str, token: str) -> None:
        await self._store_token(VaultKeyPrefix.TELEGRAM_TOKEN, account_id, token)

    async def retrieve_telegram_token(self, account_id: str) -> str | None:
        return await self._retrieve_token(VaultKeyPrefix.TELEGRAM_TOKEN, account_id)

    async def delete_telegram_token(self, account_id: str) -> bool:
        return await self.delete_credential(VaultKeyPrefix.TELEGRAM_TOKEN, account_id)

    async def store_discord_token(self, account_id: str, token: str) -> None:
        await self._store_token(VaultKeyPrefix.DISCORD_TOKEN, account_id, token)

    async def retrieve_discord_token(self, account_id: str) -> str | None:
        return await self._retrieve_token(VaultKeyPrefix.DISCORD_TOKEN, account_id)

    async def delete_discord_token(self, account_id: str) -> bool:
        return await self.delete_credential(VaultKeyPrefix.DISCORD_TOKEN, account_id)

    async def store_slack_tokens(
        self,
        account_id: str,
        *,
        bot_token: str | None = None,
        app_token: str | None = None,
        user_token: str | None = None,
        signing_secret: str | None = None,
    ) -> None:
        tokens = {
            "botToken": bot_token,
            "appToken": app_token,
            "userToken": user_token,
            "signingSecret": signing_secret,
        }
        data = {k: v for k, v in tokens.items() if v is not None}
        data["storedAt"] = _now_ms()
        await self.store_credential(VaultKeyPrefix.SLACK_TOKEN, account_id, data)

    async def retrieve_slack_tokens(self, account_id: str) -> dict[str, str] | None:
        """Return the stored Slack token set without the timestamp."""
        data = await self.retrieve_credential(VaultKeyPrefix.SLACK_TOKEN, account_id)
        if not isinstance(data, dict):
            return None
        return {k: v for k, v in data.items() if k != "storedAt"}

    async def delete_slack_tokens(self, account_id: str) -> bool:
        return await self.delete_credential(VaultKeyPrefix.SLACK_TOKEN, account_id)

    async def store_whatsapp_creds(self, account_id: str, creds: Any) -> None:  # noqa: ANN401
        await self.store_credential(
            VaultKeyPrefix.WHATSAPP_CREDS, account_id, {"creds": creds, "storedAt": _now_ms()}
        )

    async def retrieve_whatsapp_creds(self, account_id: str) -> Any:  # noqa: ANN401
        data = await self.retrieve_credential(VaultKeyPrefix.WHATSAPP_CREDS, account_id)
        return data.get("creds") if isinstance(data, dict) else None

    async def delete_whatsapp_creds(self, account_id: str) -> bool:
        return await self.delete_credential(VaultKeyPrefix.WHATSAPP_CREDS, account_id)

    async def store_channel_creds(
        self, channel: str, account_id: str, credentials: dict[str, Any]
    ) -> None:
        """Store credentials for a channel without a dedicated helper."""
        await self.store_credential(
            VaultKeyPrefix.CHANNEL_CREDS,
            f"{channel}:{account_id}",
            {
                "channel": channel,
                "accountId": account_id,
                "credentials": credentials,
                "storedAt": _now_ms(),
            },
        )

    async def retrieve_channel_creds(
        self, channel: str, account_id: str
    ) -> dict[str, Any] | None:
        data = await self.retrieve_credential(
            VaultKeyPrefix.CHANNEL_CREDS, f"{channel}:{account_id}"
        )
        return data.get("credentials") if isinstance(data, dict) else None

    async def delete_channel_creds(self, channel: str, account_id: str) -> bool:
        return await self.delete_credential(
            VaultKeyPrefix.CHANNEL_CREDS, f"{channel}:{account_id}"
        )

    # ------------------------------------------------------------------
    # Environment secrets
    # ------------------------------------------------------------------

    async def store_env_secret(self, name: str, value: str) -> None:
        await self.store_credential(VaultKeyPrefix.ENV_SECRET, name, {"value": value})

    async def load_env_secret(self, name: str) -> str | None:
        """Vault first, then the process environment."""
        try:
            data = await self.retrieve_credential(VaultKeyPrefix.ENV_SECRET, name)
        except Exception as e:
            log.warning("env_secret_vault_read_failed", name=name, error=str(e))
            data = None
        if isinstance(data, dict) and data.get("value"):
            return str(data["value"])
        return os.environ.get(name)

    async def inject_env_secrets(self, names: tuple[str, ...] = SENSITIVE_ENV_KEYS) -> list[str]:
        """Copy vault secrets into ``os.environ`` for variables not already set.

        Returns:
            The names that were injected.
        """
        injected: list[str] = []
        for name in names:
            if os.environ.get(name):
                continue
            value = await self.load_env_secret(name)
            if value:
                os.environ[name] = value
                injected.append(name)
        if injected:
            log.info("env_secrets_injected", names=injected)
        return injected

    async def resolve_secret(
        self, name: str, settings: Settings | None = None, default: str | None = None
    ) -> str | None:
        """Cascade lookup: vault -> Settings (``.env`` / environment) -> default."""
        data = await self.retrieve_credential(VaultKeyPrefix.ENV_SECRET, name)
        if isinstance(data, dict) and data.get("value"):
            return str(data["value"])

        if settings is not None:
            field_name = _SETTINGS_FIELD_MAP.get(name)
            value = getattr(settings, field_name, None) if field_name else None
            if isinstance(value, SecretStr):
                return value.get_secret_value()
            if value is not None:
                return str(value)

        return default
