"""Content-security orchestrator.

Composes classification, both pre-filters, semantic escalation and
external-content wrapping into a single verdict:

1. classify the source
2. run both pre-filters (always)
3. a critical literal blocks immediately
4. otherwise escalate to the semantic analyzer when the source is low
   trust or the pre-filter flagged medium/high severity
5. apply the analyzer's block/warn verdict
6. wrap non-user-direct content in external-content markers
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from trustgate.audit import log_injection_attempt
from trustgate.injection.analyzer import AnalysisConfig, analyze_for_injection, can_skip_analysis
from trustgate.injection.classifier import (
    classify_source,
    get_trust_level,
    requires_llm_analysis,
    requires_wrapping,
)
from trustgate.injection.prefilter import (
    escape_for_prompt,
    scan_critical_patterns,
    scan_for_injection,
    strip_dangerous_unicode,
)
from trustgate.logging import get_logger
from trustgate.models import (
    AnalysisResult,
    ContentSource,
    InjectionSeverity,
    PatternCategory,
    ScanResult,
    TrustLevel,
    max_severity,
)
from trustgate.policy import InjectionFilterConfig

if TYPE_CHECKING:
    from trustgate.providers import SecurityLLMProvider

log = get_logger("trustgate.injection.content_security")

# Chat-template control tokens neutralised during sanitization
_TEMPLATE_TOKENS = re.compile(r"<\|(im_start|im_end|system|endoftext)\|>", re.IGNORECASE)
_MARKER_SHAPES = re.compile(r"<<<\s*(/?[A-Z_]+)")


@dataclass
class ContentSecurityContext:
    """Where a piece of content came from."""

    session_key: str
    sender_id: str | None = None
    channel: str | None = None
    metadata: Mapping[str, Any] | None = None


@dataclass
class ContentSecurityConfig:
    """Orchestrator switches and thresholds."""

    enabled: bool = True
    quick_filter_enabled: bool = True
    llm_analysis_enabled: bool = True
    block_on_critical_patterns: bool = True
    block_threshold: InjectionSeverity = InjectionSeverity.CRITICAL
    warn_threshold: InjectionSeverity = InjectionSeverity.MEDIUM
    wrap_external_content: bool = True
    strip_unicode: bool = True
    log_events: bool = True
    analysis_timeout: float = 30.0
    max_content_length: int = 50_000
    injection: InjectionFilterConfig = field(default_factory=InjectionFilterConfig)

    @classmethod
    def from_policy(
        cls, injection: InjectionFilterConfig, **overrides: Any  # noqa: ANN401
    ) -> ContentSecurityConfig:
        """Derive orchestrator settings from the injection policy section."""
        values: dict[str, Any] = {
            "enabled": injection.enabled,
            "llm_analysis_enabled": injection.llm_analysis_enabled,
            "block_on_critical_patterns": injection.block_on_critical_patterns,
            "block_threshold": injection.llm_block_threshold,
            "warn_threshold": injection.llm_warn_threshold,
            "log_events": injection.log_attempts,
            "injection": injection,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class ContentSecurityResult:
    """Verdict for one piece of inbound content."""

    allowed: bool = True
    blocked: bool = False
    block_reason: str | None = None
    has_warnings: bool = False
    warnings: list[str] = field(default_factory=list)
    processed_content: str = ""
    wrapped: bool = False
    sanitized: bool = False
    source: ContentSource = ContentSource.UNKNOWN
    trust_level: TrustLevel = TrustLevel.LOW
    quick_filter_findings: list[str] = field(default_factory=list)
    critical_scan: ScanResult | None = None
    heuristic_scan: ScanResult | None = None
    llm_analysis: AnalysisResult | None = None

    def warn(self, message: str) -> None:
        self.has_warnings = True
        self.warnings.append(message)

    def block(self, reason: str) -> None:
        self.allowed = False
        self.blocked = True
        self.block_reason = reason


def sanitize_content(content: str) -> str:
    """Neutralise invisible Unicode, chat-template tokens and marker shapes."""
    sanitized = strip_dangerous_unicode(content)
    sanitized = _TEMPLATE_TOKENS.sub(r"[\1]", sanitized)
    return _MARKER_SHAPES.sub(r"< < <\1", sanitized)


class ContentSecurityPipeline:
    """Full decision pipeline for inbound content."""

    def __init__(
        self,
        provider: SecurityLLMProvider | None = None,
        config: ContentSecurityConfig | None = None,
    ) -> None:
        self._provider = provider
        self._config = config or ContentSecurityConfig()

    @property
    def config(self) -> ContentSecurityConfig:
        return self._config

    async def process(
        self,
        content: str,
        context: ContentSecurityContext,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ContentSecurityResult:
        """Run *content* through the pipeline.

        Args:
            content: Inbound text.
            context: Session key, sender, channel and classification hints.
            cancel_event: Set to abandon the semantic analysis call.

        Returns:
            A :class:`ContentSecurityResult`. When ``blocked`` is set,
            ``processed_content`` must not be handed to the agent.
        """
        cfg = self._config
        source = classify_source(context.session_key, context.metadata)
        result = ContentSecurityResult(
            processed_content=content,
            source=source,
            trust_level=get_trust_level(source),
        )

        if not cfg.enabled:
            return result

        flagged_severity = InjectionSeverity.NONE
        if cfg.quick_filter_enabled:
            flagged_severity = self._run_prefilters(content, context, result)
            if result.blocked:
                return result

        if self._should_escalate(content, result, flagged_severity):
            await self._run_analysis(context, result, cancel_event)
            if result.blocked:
                return result

        if cfg.wrap_external_content and requires_wrapping(source):
            result.processed_content = escape_for_prompt(result.processed_content, source.value)
            result.wrapped = True

        log.debug(
            "content_security_processed",
            source=source.value,
            trust_level=result.trust_level.value,
            findings=result.quick_filter_findings,
            analysed=result.llm_analysis is not None,
            wrapped=result.wrapped,
        )
        return result

    def _run_prefilters(
        self,
        content: str,
        context: ContentSecurityContext,
        result: ContentSecurityResult,
    ) -> InjectionSeverity:
        cfg = self._config
        critical = scan_critical_patterns(content)
        heuristic = scan_for_injection(
            content,
            cfg.injection,
            session_key=context.session_key,
            sender_id=context.sender_id,
        )
        result.critical_scan = critical
        result.heuristic_scan = heuristic
        result.quick_filter_findings = [*critical.patterns, *heuristic.patterns]

        if not (critical.detected or heuristic.detected):
            return InjectionSeverity.NONE

        severity = max_severity(critical.severity, heuristic.severity)
        result.warn(
            f"Quick filter detected: {', '.join(result.quick_filter_findings)} "
            f"(severity: {severity.value})"
        )

        if cfg.block_on_critical_patterns and critical.severity >= InjectionSeverity.CRITICAL:
            result.block(f"Critical security pattern detected: {', '.join(critical.patterns)}")
            self._audit(content, context, result, severity, blocked=True)
            return severity

        if heuristic.should_block:
            result.block(
                f"Injection score {heuristic.score} reached the block threshold: "
                f"{', '.join(heuristic.patterns)}"
            )
            self._audit(content, context, result, severity, blocked=True)
            return severity

        unicode_hit = any(
            f.category == PatternCategory.INVISIBLE_UNICODE for f in critical.findings
        )
        if heuristic.should_sanitize:
            result.processed_content = sanitize_content(result.processed_content)
            result.sanitized = True
        elif cfg.strip_unicode and unicode_hit:
            result.processed_content = strip_dangerous_unicode(result.processed_content)
            result.sanitized = True

        self._audit(content, context, result, severity, blocked=False)
        return severity

    def _should_escalate(
        self,
        content: str,
        result: ContentSecurityResult,
        flagged_severity: InjectionSeverity,
    ) -> bool:
        if not self._config.llm_analysis_enabled or self._provider is None:
            return False
        flagged = flagged_severity >= InjectionSeverity.MEDIUM
        low_trust = result.trust_level == TrustLevel.LOW and requires_llm_analysis(result.source)
        if not (low_trust or flagged):
            return False
        # Skipping is a cost optimisation only; flagged content is always analysed
        return flagged or not can_skip_analysis(content)

    async def _run_analysis(
        self,
        context: ContentSecurityContext,
        result: ContentSecurityResult,
        cancel_event: asyncio.Event | None,
    ) -> None:
        cfg = self._config
        assert self._provider is not None  # nosec B101
        analysis = await analyze_for_injection(
            result.processed_content,
            result.source,
            self._provider,
            AnalysisConfig(
                block_threshold=cfg.block_threshold,
                warn_threshold=cfg.warn_threshold,
                max_content_length=cfg.max_content_length,
                timeout=cfg.analysis_timeout,
            ),
            cancel_event=cancel_event,
        )
        result.llm_analysis = analysis

        if analysis.aborted:
            result.warn("LLM security analysis was cancelled")
            return

        if analysis.should_block:
            result.block(analysis.explanation)
            if cfg.log_events:
                log_injection_attempt(
                    content=result.processed_content,
                    patterns=result.quick_filter_findings,
                    severity=analysis.risk_level,
                    blocked=True,
                    session_key=context.session_key,
                    sender_id=context.sender_id,
                    channel=context.channel,
                    source=result.source.value,
                    details={
                        "intent": analysis.intent.value,
                        "category": analysis.category.value if analysis.category else None,
                        "explanation": analysis.explanation,
                    },
                )
            return

        if analysis.should_warn:
            result.warn(f"LLM analysis warning: {analysis.explanation}")

    def _audit(
        self,
        content: str,
        context: ContentSecurityContext,
        result: ContentSecurityResult,
        severity: InjectionSeverity,
        *,
        blocked: bool,
    ) -> None:
        if not self._config.log_events:
            return
        log_injection_attempt(
            content=content,
            patterns=result.quick_filter_findings,
            severity=severity,
            blocked=blocked,
            sanitized=result.sanitized,
            session_key=context.session_key,
            sender_id=context.sender_id,
            channel=context.channel,
            source=result.source.value,
            details={"reason": result.block_reason} if blocked else None,
        )


async def process_content_security(
    content: str,
    context: ContentSecurityContext,
    provider: SecurityLLMProvider | None = None,
    config: ContentSecurityConfig | None = None,
    *,
    cancel_event: asyncio.Event | None = None,
) -> ContentSecurityResult:
    """Functional entry point for :class:`ContentSecurityPipeline`."""
    pipeline = ContentSecurityPipeline(provider, config)
    return await pipeline.process(content, context, cancel_event=cancel_event)


def should_block_immediately(content: str) -> tuple[bool, str | None]:
    """Return ``(block, reason)`` using only the critical-literal scan."""
    scan = scan_critical_patterns(content)
    if scan.severity >= InjectionSeverity.CRITICAL:
        return True, f"Critical security pattern: {', '.join(scan.patterns)}"
    return False, None
