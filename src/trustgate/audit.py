"""Security audit bus.

Every blocking or warning decision is published here as a
:class:`SecurityAuditEvent`. Events are fanned out synchronously to the
registered listeners and mirrored to the structured log. Events carry a
SHA-256 hash of the offending content, never the content itself.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from trustgate.logging import get_logger
from trustgate.models import InjectionSeverity

log = get_logger("trustgate.audit")


class SecurityAuditEventType(StrEnum):
    """Kinds of audit events."""

    INJECTION_DETECTED = "injection_detected"
    INJECTION_BLOCKED = "injection_blocked"
    INJECTION_SANITIZED = "injection_sanitized"
    OUTPUT_FILTERED = "output_filtered"
    SKILL_VERIFICATION_FAILED = "skill_verification_failed"
    POLICY_VIOLATION = "policy_violation"
    VAULT_ACCESS = "vault_access"
    PAIRING_ATTEMPT = "pairing_attempt"


@dataclass(frozen=True)
class SecurityAuditEvent:
    """Immutable audit record."""

    event_type: SecurityAuditEventType
    severity: InjectionSeverity
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    session_key: str | None = None
    sender_id: str | None = None
    channel: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    content_hash: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))


SecurityAuditListener = Callable[[SecurityAuditEvent], None]

_listeners: list[SecurityAuditListener] = []


def hash_content(content: str) -> str:
    """Return the hex SHA-256 of *content*."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def on_security_audit_event(listener: SecurityAuditListener) -> Callable[[], None]:
    """Register *listener* for every future audit event.

    Returns:
        A callable that unregisters the listener.
    """
    _listeners.append(listener)

    def _unsubscribe() -> None:
        if listener in _listeners:
            _listeners.remove(listener)

    return _unsubscribe


def clear_security_audit_listeners() -> None:
    """Drop every registered listener."""
    _listeners.clear()


def emit_security_audit_event(event: SecurityAuditEvent) -> None:
    """Log *event* and deliver it to every listener in registration order.

    A failing listener is logged and skipped; it never interrupts the
    security decision that produced the event.
    """
    _log_event(event)
    for listener in list(_listeners):
        try:
            listener(event)
        except Exception as e:
            log.error(
                "audit_listener_failed",
                event_type=event.event_type.value,
                error=str(e),
            )


def _log_event(event: SecurityAuditEvent) -> None:
    fields = {
        "event_type": event.event_type.value,
        "severity": event.severity.value,
        "audit_timestamp": event.timestamp,
        "session_key": event.session_key,
        "sender_id": event.sender_id,
        "channel": event.channel,
        "content_hash": event.content_hash,
        "details": dict(event.details),
    }
    if event.severity >= InjectionSeverity.CRITICAL:
        log.error("security_audit", **fields)
    elif event.severity >= InjectionSeverity.MEDIUM:
        log.warning("security_audit", **fields)
    else:
        log.info("security_audit", **fields)


# ---------------------------------------------------------------------------
# Convenience emitters
# ---------------------------------------------------------------------------


def log_injection_attempt(
    *,
    content: str,
    patterns: list[str],
    severity: InjectionSeverity,
    blocked: bool,
    sanitized: bool = False,
    session_key: str | None = None,
    sender_id: str | None = None,
    channel: str | None = None,
    source: str | None = None,
    details: Mapping[str, Any] | None = None,
) -> None:
    """Record a detected, sanitized or blocked injection attempt."""
    if blocked:
        event_type = SecurityAuditEventType.INJECTION_BLOCKED
    elif sanitized:
        event_type = SecurityAuditEventType.INJECTION_SANITIZED
    else:
        event_type = SecurityAuditEventType.INJECTION_DETECTED

    emit_security_audit_event(
        SecurityAuditEvent(
            event_type=event_type,
            severity=severity,
            session_key=session_key,
            sender_id=sender_id,
            channel=channel,
            content_hash=hash_content(content),
            details={
                "patterns": list(patterns),
                "content_length": len(content),
                "source": source,
                **(details or {}),
            },
        )
    )


def log_output_filtered(
    *,
    original: str,
    redacted_patterns: list[str],
    session_key: str | None = None,
    channel: str | None = None,
) -> None:
    """Record that agent output was redacted before leaving the process."""
    emit_security_audit_event(
        SecurityAuditEvent(
            event_type=SecurityAuditEventType.OUTPUT_FILTERED,
            severity=InjectionSeverity.MEDIUM,
            session_key=session_key,
            channel=channel,
            content_hash=hash_content(original),
            details={
                "redacted_patterns": list(redacted_patterns),
                "redaction_count": len(redacted_patterns),
            },
        )
    )


def log_skill_verification_failed(
    *,
    skill_name: str,
    risk_level: InjectionSeverity,
    findings: list[str],
    content: str | None = None,
    bypassed: bool = False,
) -> None:
    """Record a skill that failed inspection."""
    emit_security_audit_event(
        SecurityAuditEvent(
            event_type=SecurityAuditEventType.SKILL_VERIFICATION_FAILED,
            severity=risk_level,
            content_hash=hash_content(content) if content is not None else None,
            details={
                "skill_name": skill_name,
                "findings": list(findings),
                "bypassed": bypassed,
            },
        )
    )


def log_policy_violation(
    *,
    policy: str,
    reason: str,
    session_key: str | None = None,
    severity: InjectionSeverity = InjectionSeverity.HIGH,
) -> None:
    """Record an attempt to weaken a hardened policy."""
    emit_security_audit_event(
        SecurityAuditEvent(
            event_type=SecurityAuditEventType.POLICY_VIOLATION,
            severity=severity,
            session_key=session_key,
            details={"policy": policy, "reason": reason},
        )
    )


def log_vault_access(*, operation: str, key: str, success: bool) -> None:
    """Record a vault operation. Only the key namespace is recorded."""
    prefix = key.split(":", 1)[0] if ":" in key else "unknown"
    emit_security_audit_event(
        SecurityAuditEvent(
            event_type=SecurityAuditEventType.VAULT_ACCESS,
            severity=InjectionSeverity.LOW if success else InjectionSeverity.MEDIUM,
            details={"operation": operation, "key_prefix": prefix, "success": success},
        )
    )


def log_pairing_attempt(
    *,
    device_id: str,
    approved: bool,
    reason: str,
    remote_address: str | None = None,
) -> None:
    """Record a device pairing attempt. The device id is truncated."""
    emit_security_audit_event(
        SecurityAuditEvent(
            event_type=SecurityAuditEventType.PAIRING_ATTEMPT,
            severity=InjectionSeverity.LOW if approved else InjectionSeverity.MEDIUM,
            details={
                "device_id": device_id[:16],
                "approved": approved,
                "reason": reason,
                "remote_address": remote_address,
            },
        )
    )
