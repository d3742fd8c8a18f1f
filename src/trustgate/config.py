"""Configuration management for Trustgate."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_VALID_INJECTION_MODES = ("warn", "sanitize", "block")
_VALID_RISK_LEVELS = ("none", "low", "medium", "high", "critical")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TRUSTGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
        populate_by_name=True,
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=10485760,  # 10MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=5, description="Number of rotated log files to keep"
    )

    # State and vault
    state_dir: str = Field(
        default=str(Path.home() / ".trustgate"),
        description="Directory holding the vault, identity files and legacy credentials",
    )
    vault_path: str | None = Field(
        default=None, description="Vault file path (defaults to <state_dir>/vault/vault.enc)"
    )
    vault_password: SecretStr | None = Field(
        default=None, description="Vault passphrase (machine fingerprint when unset)"
    )
    vault_pbkdf2_iterations: int = Field(
        default=310_000, description="PBKDF2-HMAC-SHA256 iterations for the vault key"
    )

    # Model providers for semantic analysis
    anthropic_api_key: SecretStr | None = Field(
        default=None, validation_alias="ANTHROPIC_API_KEY", description="Anthropic API key"
    )
    openai_api_key: SecretStr | None = Field(
        default=None, validation_alias="OPENAI_API_KEY", description="OpenAI API key"
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1", description="OpenAI-compatible base URL"
    )
    security_provider: str | None = Field(
        default=None,
        description="Security analysis provider name (claude-cli, anthropic, openai, ollama)",
    )
    security_model: str | None = Field(
        default=None, description="Model override for security analysis"
    )
    ollama_url: str = Field(default="http://localhost:11434", description="Ollama base URL")
    ollama_model: str = Field(default="llama3.2:3b", description="Ollama model for analysis")
    security_analysis_timeout: float = Field(
        default=30.0, description="Timeout in seconds for one semantic analysis call"
    )

    # Injection protection
    injection_enabled: bool = Field(default=True, description="Enable injection protection")
    injection_mode: str = Field(default="sanitize", description="warn, sanitize or block")
    injection_warn_threshold: int = Field(default=20, description="Score that triggers a warning")
    injection_sanitize_threshold: int = Field(
        default=50, description="Score that triggers sanitization"
    )
    injection_block_threshold: int = Field(default=80, description="Score that triggers a block")
    llm_analysis_enabled: bool = Field(
        default=True, description="Escalate low-trust or flagged content to a model"
    )
    llm_block_threshold: str = Field(default="high", description="Risk level that blocks")
    llm_warn_threshold: str = Field(default="medium", description="Risk level that warns")

    # Skills
    skills_require_verification: bool = Field(
        default=True, description="Inspect skills before installation"
    )
    skills_trust_bundled: bool = Field(default=True, description="Trust bundled skills")
    skills_quick_check_only: bool = Field(
        default=False, description="Skip model inspection of skills"
    )

    # Connections
    require_challenge_for_local: bool = Field(
        default=True, description="Require challenge-response even for loopback clients"
    )
    allow_local_auto_approve: bool = Field(
        default=True, description="Auto-approve the first loopback pairing on a fresh install"
    )
    max_pairing_requests_per_hour: int = Field(
        default=10, description="Pairing requests allowed per device per hour"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/trustgate.log"

    @property
    def resolved_vault_path(self) -> Path:
        """Get the vault file path, defaulting into the state directory."""
        if self.vault_path:
            return Path(self.vault_path).expanduser()
        return Path(self.state_dir).expanduser() / "vault" / "vault.enc"

    @field_validator("injection_mode")
    @classmethod
    def validate_injection_mode(cls, v: str) -> str:
        """Validate injection filter mode."""
        v = v.lower()
        if v not in _VALID_INJECTION_MODES:
            raise ValueError(f"injection_mode must be one of {_VALID_INJECTION_MODES}, got: {v}")
        return v

    @field_validator(
        "injection_warn_threshold",
        "injection_sanitize_threshold",
        "injection_block_threshold",
    )
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        """Validate score thresholds are between 0 and 100."""
        if not 0 <= v <= 100:
            raise ValueError(f"Threshold must be between 0 and 100, got: {v}")
        return v

    @field_validator("llm_block_threshold", "llm_warn_threshold")
    @classmethod
    def validate_risk_level(cls, v: str) -> str:
        """Validate risk level names."""
        v = v.lower()
        if v not in _VALID_RISK_LEVELS:
            raise ValueError(f"risk level must be one of {_VALID_RISK_LEVELS}, got: {v}")
        return v

    @field_validator("vault_pbkdf2_iterations")
    @classmethod
    def validate_iterations(cls, v: int) -> int:
        """Refuse key derivation weaker than 300,000 iterations."""
        if v < 300_000:
            raise ValueError(f"vault_pbkdf2_iterations must be at least 300000, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_threshold_order(self) -> Self:
        """Ensure warn <= sanitize <= block."""
        if not (
            self.injection_warn_threshold
            <= self.injection_sanitize_threshold
            <= self.injection_block_threshold
        ):
            raise ValueError(
                "injection thresholds must satisfy warn <= sanitize <= block, got "
                f"{self.injection_warn_threshold}/{self.injection_sanitize_threshold}/"
                f"{self.injection_block_threshold}"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
