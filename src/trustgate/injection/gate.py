"""Security gate: the dispatch-facing entry point.

Wraps the content-security orchestrator with a block-and-alert contract.
A blocked message produces a user-visible alert and is never handed to the
agent.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from trustgate.injection.content_security import (
    ContentSecurityConfig,
    ContentSecurityContext,
    ContentSecurityPipeline,
    should_block_immediately,
)
from trustgate.injection.prefilter import scan_critical_patterns
from trustgate.logging import get_logger
from trustgate.models import AnalysisResult, ContentSource, InjectionSeverity, TrustLevel
from trustgate.providers import resolve_security_provider

if TYPE_CHECKING:
    from trustgate.providers import SecurityLLMProvider

log = get_logger("trustgate.injection.gate")

T = TypeVar("T")


@dataclass
class ApiKeys:
    """Provider credentials available to the gate."""

    anthropic: str | None = None
    openai: str | None = None
    openai_base_url: str | None = None


@dataclass
class GateOptions:
    """Per-message gate options.

    Attributes:
        provider: Configured provider name, e.g. ``"claude-code"`` or ``"anthropic"``.
        session_key: Session or connection identifier used for classification.
        sender_id: Sender shown in the alert.
        channel: Channel name for auditing.
        api_keys: Credentials for API-backed providers.
        model: Model override for the analysis call.
        enable_llm_analysis: Set False to run the pre-filters only.
        llm_provider: Explicit provider; skips resolution when given.
        timeout: Analysis timeout in seconds.
    """

    session_key: str
    provider: str | None = None
    sender_id: str | None = None
    channel: str | None = None
    api_keys: ApiKeys = field(default_factory=ApiKeys)
    model: str | None = None
    enable_llm_analysis: bool = True
    llm_provider: SecurityLLMProvider | None = None
    timeout: float = 30.0


@dataclass
class SecurityGateResult:
    """Gate verdict."""

    allowed: bool
    blocked: bool
    source: ContentSource
    trust_level: TrustLevel
    quick_filter_patterns: list[str] = field(default_factory=list)
    block_reason: str | None = None
    alert_message: str | None = None
    llm_analysis: AnalysisResult | None = None
    processed_content: str = ""
    warnings: list[str] = field(default_factory=list)


def format_blocked_alert(result: SecurityGateResult, sender_id: str | None = None) -> str:
    """Build the alert shown to the user in place of a blocked message."""
    lines = ["⚠️ **Security Alert: Prompt Injection Blocked**", ""]

    analysis = result.llm_analysis
    if analysis is not None and analysis.should_block:
        lines.append(f"Risk Level: {analysis.risk_level.value.upper()}")
        lines.append(f"Intent: {analysis.intent.value}")
        if analysis.category is not None:
            lines.append(f"Category: {analysis.category.value}")
        lines.extend(["", analysis.explanation])
    elif result.quick_filter_patterns:
        lines.append("Risk Level: CRITICAL" if result.block_reason else "Risk Level: HIGH")
        lines.append(f"Detected patterns: {', '.join(result.quick_filter_patterns)}")
        if result.block_reason:
            lines.extend(["", result.block_reason])

    lines.extend(["", "The message was blocked and not processed by the agent."])
    if sender_id:
        lines.extend(["", f"Source: {sender_id}"])
    return "\n".join(lines)


def _resolve_provider(options: GateOptions) -> SecurityLLMProvider | None:
    if options.llm_provider is not None:
        return options.llm_provider
    return resolve_security_provider(
        options.provider,
        anthropic_api_key=options.api_keys.anthropic,
        openai_api_key=options.api_keys.openai,
        openai_base_url=options.api_keys.openai_base_url,
        model=options.model,
        timeout=options.timeout,
    )


async def run_security_gate(
    content: str,
    options: GateOptions,
    config: ContentSecurityConfig | None = None,
    *,
    cancel_event: asyncio.Event | None = None,
) -> SecurityGateResult:
    """Decide whether *content* may reach the agent.

    The gate blocks on critical literals and on a ``high`` or ``critical``
    semantic verdict.

    Args:
        content: Inbound message text.
        options: Session, sender and provider options.
        config: Orchestrator configuration; gate thresholds are applied on top.
        cancel_event: Set to abandon the semantic analysis call.

    Returns:
        A :class:`SecurityGateResult` carrying an alert when blocked.
    """
    base = config or ContentSecurityConfig()
    gate_config = ContentSecurityConfig(
        **{
            **base.__dict__,
            "block_threshold": InjectionSeverity.HIGH,
            "warn_threshold": InjectionSeverity.MEDIUM,
            "llm_analysis_enabled": base.llm_analysis_enabled and options.enable_llm_analysis,
            "analysis_timeout": options.timeout,
        }
    )

    provider = _resolve_provider(options) if gate_config.llm_analysis_enabled else None
    if gate_config.llm_analysis_enabled and provider is None:
        log.warning(
            "security_gate_no_provider",
            provider=options.provider,
            session_key=options.session_key,
        )

    pipeline = ContentSecurityPipeline(provider, gate_config)
    verdict = await pipeline.process(
        content,
        ContentSecurityContext(
            session_key=options.session_key,
            sender_id=options.sender_id,
            channel=options.channel,
        ),
        cancel_event=cancel_event,
    )

    result = SecurityGateResult(
        allowed=verdict.allowed,
        blocked=verdict.blocked,
        source=verdict.source,
        trust_level=verdict.trust_level,
        quick_filter_patterns=verdict.quick_filter_findings,
        block_reason=verdict.block_reason,
        llm_analysis=verdict.llm_analysis,
        processed_content=verdict.processed_content,
        warnings=verdict.warnings,
    )

    if result.blocked:
        result.alert_message = format_blocked_alert(result, options.sender_id)
        log.warning(
            "security_gate_blocked",
            reason=result.block_reason,
            session_key=options.session_key,
            source=result.source.value,
        )
    elif verdict.has_warnings:
        log.warning(
            "security_gate_warning",
            warnings=verdict.warnings,
            session_key=options.session_key,
        )

    return result


def should_block_quickly(content: str) -> tuple[bool, str | None, list[str]]:
    """Critical-literal fast path: ``(block, reason, patterns)``."""
    block, reason = should_block_immediately(content)
    if not block:
        return False, None, []
    return True, reason, scan_critical_patterns(content).patterns


async def dispatch_with_gate(
    content: str,
    options: GateOptions,
    *,
    deliver_reply: Callable[[str], Awaitable[None]],
    dispatch_to_agent: Callable[[str], Awaitable[T]],
    config: ContentSecurityConfig | None = None,
) -> T | None:
    """Run the gate, then either alert the sender or hand content to the agent.

    Args:
        content: Inbound message text.
        options: Gate options.
        deliver_reply: Sends text back through the reply channel.
        dispatch_to_agent: Receives the processed content when allowed.
        config: Orchestrator configuration.

    Returns:
        The agent's result, or ``None`` when the message was blocked.
    """
    result = await run_security_gate(content, options, config)

    if result.blocked:
        if result.alert_message:
            try:
                await deliver_reply(result.alert_message)
            except Exception as e:
                log.warning("security_alert_delivery_failed", error=str(e))
        return None

    return await dispatch_to_agent(result.processed_content)
