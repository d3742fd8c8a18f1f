"""Security policy: hardened defaults, merging and enforcement.

The policy is a tree of dataclasses. User overrides are merged on top of
the defaults, then the hardened values are reapplied so that they cannot
be weakened by configuration.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any

from trustgate.audit import log_policy_violation
from trustgate.exceptions import PolicyViolationError
from trustgate.logging import get_logger
from trustgate.models import InjectionSeverity

if TYPE_CHECKING:
    from trustgate.config import Settings

log = get_logger("trustgate.policy")

MIN_RECOMMENDED_ITERATIONS = 100_000
HARDENED_MIN_ITERATIONS = 310_000


@dataclass
class ConnectionPolicy:
    """Device connection rules."""

    require_challenge_for_local: bool = True
    # First run only: a loopback client may self-approve while nothing is paired
    allow_local_auto_approve: bool = True
    max_pairing_requests_per_hour: int = 10


@dataclass
class CredentialPolicy:
    """Credential storage rules."""

    allow_plaintext_fallback: bool = False
    key_derivation_iterations: int = 310_000


@dataclass
class SkillPolicy:
    """Skill installation rules."""

    inspect_before_install: bool = True
    trust_bundled_skills: bool = True
    trusted_skills: list[str] = field(default_factory=list)
    quick_check_only: bool = False
    require_checksum: bool = False
    require_signature: bool = False
    trusted_signers: list[str] = field(default_factory=list)


@dataclass
class FilterThresholds:
    """Score thresholds for the heuristic pre-filter."""

    warn: int = 20
    sanitize: int = 50
    block: int = 80


@dataclass
class InjectionFilterConfig:
    """Inbound injection protection settings."""

    enabled: bool = True
    mode: str = "sanitize"  # warn | sanitize | block
    thresholds: FilterThresholds = field(default_factory=FilterThresholds)
    custom_patterns: list[re.Pattern[str]] = field(default_factory=list)
    # Session keys or sender ids exempt from the heuristic filter
    whitelist: list[str] = field(default_factory=list)
    log_attempts: bool = True
    llm_analysis_enabled: bool = True
    llm_block_threshold: InjectionSeverity = InjectionSeverity.HIGH
    llm_warn_threshold: InjectionSeverity = InjectionSeverity.MEDIUM
    block_on_critical_patterns: bool = True


@dataclass
class OutputFilterConfig:
    """Outbound redaction settings."""

    enabled: bool = True
    system_prompt_leaks: bool = True
    config_leaks: bool = True
    token_leaks: bool = True


@dataclass
class SecurityPolicyConfig:
    """Complete security policy."""

    connections: ConnectionPolicy = field(default_factory=ConnectionPolicy)
    credentials: CredentialPolicy = field(default_factory=CredentialPolicy)
    skills: SkillPolicy = field(default_factory=SkillPolicy)
    injection: InjectionFilterConfig = field(default_factory=InjectionFilterConfig)
    output: OutputFilterConfig = field(default_factory=OutputFilterConfig)


# Values reapplied after user overrides.
_HARDENED: dict[str, dict[str, Any]] = {
    "connections": {
        "require_challenge_for_local": True,
        "max_pairing_requests_per_hour": 10,
    },
    "credentials": {
        "allow_plaintext_fallback": False,
    },
}

# Dotted config paths that may never be set.
BLOCKED_CONFIG_PATHS: tuple[str, ...] = (
    "gateway.controlUi.dangerouslyDisableDeviceAuth",
    "gateway.controlUi.allowInsecureAuth",
    "gateway.auth.autoApproveLocal",
)


def get_default_security_policy() -> SecurityPolicyConfig:
    """Return a fresh copy of the default policy."""
    return SecurityPolicyConfig()


def get_hardened_defaults() -> dict[str, dict[str, Any]]:
    """Return the values that user configuration cannot override."""
    return copy.deepcopy(_HARDENED)


def _apply_section(
    section: Any, overrides: Mapping[str, Any], section_name: str  # noqa: ANN401
) -> Any:  # noqa: ANN401
    known = {f.name for f in fields(section)}
    valid: dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            log.warning("unknown_policy_key", section=section_name, key=key)
            continue
        if key == "thresholds" and isinstance(value, Mapping):
            value = replace(section.thresholds, **dict(value))
        valid[key] = value
    return replace(section, **valid)


def get_security_policy_config(
    user_config: Mapping[str, Mapping[str, Any]] | None = None,
) -> SecurityPolicyConfig:
    """Merge user configuration with the defaults and hardened values.

    Priority, highest first: hardened values, user config, defaults.

    Args:
        user_config: Section name to field overrides, e.g.
            ``{"injection": {"mode": "block"}}``.

    Returns:
        The effective :class:`SecurityPolicyConfig`.
    """
    policy = get_default_security_policy()

    for section_name, overrides in (user_config or {}).items():
        if not hasattr(policy, section_name):
            log.warning("unknown_policy_section", section=section_name)
            continue
        section = getattr(policy, section_name)
        setattr(policy, section_name, _apply_section(section, overrides, section_name))

    for section_name, hardened in _HARDENED.items():
        section = getattr(policy, section_name)
        for key, value in hardened.items():
            if getattr(section, key) != value:
                log.warning(
                    "hardened_policy_reapplied",
                    section=section_name,
                    key=key,
                    attempted=getattr(section, key),
                )
        setattr(policy, section_name, replace(section, **hardened))

    # Iterations may be raised but never lowered below the hardened floor
    if policy.credentials.key_derivation_iterations < HARDENED_MIN_ITERATIONS:
        log.warning(
            "hardened_policy_reapplied",
            section="credentials",
            key="key_derivation_iterations",
            attempted=policy.credentials.key_derivation_iterations,
        )
        policy.credentials = replace(
            policy.credentials, key_derivation_iterations=HARDENED_MIN_ITERATIONS
        )

    return policy


def policy_from_settings(settings: Settings) -> SecurityPolicyConfig:
    """Build the effective policy from environment settings."""
    return get_security_policy_config(
        {
            "connections": {
                "require_challenge_for_local": settings.require_challenge_for_local,
                "allow_local_auto_approve": settings.allow_local_auto_approve,
                "max_pairing_requests_per_hour": settings.max_pairing_requests_per_hour,
            },
            "credentials": {
                "key_derivation_iterations": settings.vault_pbkdf2_iterations,
            },
            "skills": {
                "inspect_before_install": settings.skills_require_verification,
                "trust_bundled_skills": settings.skills_trust_bundled,
                "quick_check_only": settings.skills_quick_check_only,
            },
            "injection": {
                "enabled": settings.injection_enabled,
                "mode": settings.injection_mode,
                "thresholds": {
                    "warn": settings.injection_warn_threshold,
                    "sanitize": settings.injection_sanitize_threshold,
                    "block": settings.injection_block_threshold,
                },
                "llm_analysis_enabled": settings.llm_analysis_enabled,
                "llm_block_threshold": InjectionSeverity(settings.llm_block_threshold),
                "llm_warn_threshold": InjectionSeverity(settings.llm_warn_threshold),
            },
        }
    )


# ---------------------------------------------------------------------------
# Host configuration enforcement
# ---------------------------------------------------------------------------


def _deep_get(obj: Mapping[str, Any], path: str) -> Any:  # noqa: ANN401
    current: Any = obj
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _deep_delete(obj: dict[str, Any], path: str) -> bool:
    *parents, last = path.split(".")
    current: Any = obj
    for part in parents:
        if not isinstance(current, dict):
            return False
        current = current.get(part)
    if isinstance(current, dict) and last in current:
        del current[last]
        return True
    return False


def enforce_security_policy(config: Mapping[str, Any], *, strict: bool = False) -> dict[str, Any]:
    """Strip dangerous options from a host configuration.

    The input is not modified. Each removed option is reported as a
    ``policy_violation`` audit event.

    Args:
        config: The host's nested configuration mapping.
        strict: Raise instead of stripping.

    Returns:
        A deep copy of *config* with blocked options removed.

    Raises:
        PolicyViolationError: In strict mode, when a blocked option is set.
    """
    enforced: dict[str, Any] = copy.deepcopy(dict(config))

    for path in BLOCKED_CONFIG_PATHS:
        value = _deep_get(enforced, path)
        if value is None:
            continue
        reason = f"Blocked attempt to set dangerous option (value: {value!r})"
        log_policy_violation(policy=path, reason=reason)
        if strict:
            raise PolicyViolationError(f"{path}: {reason}")
        _deep_delete(enforced, path)

    channels = enforced.get("channels")
    if isinstance(channels, Mapping):
        for channel_name, channel_config in channels.items():
            dm = channel_config.get("dm") if isinstance(channel_config, Mapping) else None
            if not isinstance(dm, Mapping) or dm.get("policy") != "open":
                continue
            if "*" not in (dm.get("allowFrom") or []):
                log_policy_violation(
                    policy=f"channels.{channel_name}.dm.policy",
                    reason='Open DM policy requires explicit allowFrom: ["*"] acknowledgment',
                    severity=InjectionSeverity.MEDIUM,
                )

    return enforced


@dataclass
class PolicyValidation:
    """Outcome of :func:`validate_security_config`."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_security_config(policy: SecurityPolicyConfig) -> PolicyValidation:
    """Check a policy against minimum requirements."""
    errors: list[str] = []
    warnings: list[str] = []

    if policy.credentials.allow_plaintext_fallback:
        errors.append("credentials.allow_plaintext_fallback cannot be enabled")

    iterations = policy.credentials.key_derivation_iterations
    if iterations < MIN_RECOMMENDED_ITERATIONS:
        warnings.append(
            f"credentials.key_derivation_iterations ({iterations}) is below the "
            f"recommended minimum of {MIN_RECOMMENDED_ITERATIONS}"
        )

    if not policy.connections.require_challenge_for_local:
        errors.append("connections.require_challenge_for_local cannot be disabled")

    if not policy.injection.enabled:
        warnings.append("Injection protection is disabled - this reduces security")

    if not policy.output.enabled:
        warnings.append("Output filtering is disabled - secrets may leak in responses")

    return PolicyValidation(valid=not errors, errors=errors, warnings=warnings)
