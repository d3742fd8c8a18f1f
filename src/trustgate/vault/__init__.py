"""Encrypted credential vault.

Public API
----------
- :class:`SecureVault`: AES-256-GCM file store with lazy key derivation
- :class:`VaultManager`: JSON credential helpers per key namespace
- :class:`VaultMigrator`: move legacy plaintext files into the vault
"""

from trustgate.vault.manager import VaultKeyPrefix, VaultManager, build_vault_key, parse_vault_key
from trustgate.vault.migration import VaultMigrationResult, VaultMigrator
from trustgate.vault.store import SecureVault, secure_delete

__all__ = [
    "SecureVault",
    "VaultKeyPrefix",
    "VaultManager",
    "VaultMigrationResult",
    "VaultMigrator",
    "build_vault_key",
    "parse_vault_key",
    "secure_delete",
]
