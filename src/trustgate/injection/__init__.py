"""Inbound and outbound content screening.

Public API
----------
- :func:`classify_source`: map a session key to a content source and trust level
- :func:`scan_for_injection`: regex pre-filter with encoded payload checks
- :func:`analyze_for_injection`: model-backed semantic analysis
- :class:`ContentSecurityPipeline`: classify, pre-filter, analyze and wrap
- :func:`run_security_gate`: pre-dispatch gate with user-facing alerts
- :func:`filter_output`: redact prompt, config and credential leaks
"""

from trustgate.injection.analyzer import analyze_for_injection, can_skip_analysis
from trustgate.injection.classifier import classify_source, get_source_classification
from trustgate.injection.content_security import (
    ContentSecurityConfig,
    ContentSecurityContext,
    ContentSecurityPipeline,
    ContentSecurityResult,
    process_content_security,
    should_block_immediately,
)
from trustgate.injection.gate import (
    GateOptions,
    SecurityGateResult,
    dispatch_with_gate,
    run_security_gate,
)
from trustgate.injection.output_filter import OutputFilterResult, filter_output
from trustgate.injection.prefilter import (
    escape_for_prompt,
    scan_critical_patterns,
    scan_for_injection,
)

__all__ = [
    "ContentSecurityConfig",
    "ContentSecurityContext",
    "ContentSecurityPipeline",
    "ContentSecurityResult",
    "GateOptions",
    "OutputFilterResult",
    "SecurityGateResult",
    "analyze_for_injection",
    "can_skip_analysis",
    "classify_source",
    "dispatch_with_gate",
    "escape_for_prompt",
    "filter_output",
    "get_source_classification",
    "process_content_security",
    "run_security_gate",
    "scan_critical_patterns",
    "scan_for_injection",
    "should_block_immediately",
]
