"""Pytest fixtures for Trustgate tests."""

import os
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from trustgate.audit import (
    SecurityAuditEvent,
    clear_security_audit_listeners,
    on_security_audit_event,
)
from trustgate.vault.keys import MIN_ITERATIONS
from trustgate.vault.manager import VaultManager
from trustgate.vault.store import SecureVault

TEST_VAULT_PASSPHRASE = "test-vault-passphrase-for-unit-tests"


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any imports.

    Keeps Settings away from the developer's real state directory and
    provider keys.
    """
    os.environ.setdefault("TRUSTGATE_ENVIRONMENT", "test")
    os.environ.setdefault("TRUSTGATE_VAULT_PASSWORD", TEST_VAULT_PASSPHRASE)

    from trustgate.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_audit_listeners():
    """Each test starts without audit listeners."""
    clear_security_audit_listeners()
    yield
    clear_security_audit_listeners()


@pytest.fixture
def audit_events() -> list[SecurityAuditEvent]:
    """Collect every audit event emitted during the test."""
    events: list[SecurityAuditEvent] = []
    on_security_audit_event(events.append)
    return events


@pytest.fixture
def vault_path(tmp_path: Path) -> Path:
    """Vault file location inside the test's temporary directory."""
    return tmp_path / "vault" / "vault.enc"


@pytest.fixture
def make_vault(vault_path: Path):
    """Factory for vault instances over the same file."""

    def _make(passphrase: str = TEST_VAULT_PASSPHRASE) -> SecureVault:
        return SecureVault(vault_path, passphrase=passphrase, iterations=MIN_ITERATIONS)

    return _make


@pytest.fixture
def vault(make_vault) -> SecureVault:
    """A vault with the cheapest allowed key derivation."""
    return make_vault()


@pytest.fixture
def vault_manager(vault: SecureVault) -> VaultManager:
    """Credential manager over the test vault."""
    return VaultManager(vault)


@pytest.fixture
def mock_provider() -> AsyncMock:
    """Security model provider whose ``complete`` returns a safe verdict."""
    provider = AsyncMock()
    provider.complete = AsyncMock(
        return_value=(
            '{"safe": true, "riskLevel": "none", "intent": "legitimate", '
            '"category": null, "explanation": "Ordinary request."}'
        )
    )
    return provider
