"""Source classification for inbound content.

Maps a session key (plus optional context hints) to a
:class:`ContentSource` and its :class:`TrustLevel`. Pure and synchronous.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from trustgate.models import ContentSource, TrustLevel

# Ordered: the first matching prefix wins.
_SOURCE_PATTERNS: tuple[tuple[re.Pattern[str], ContentSource], ...] = (
    (re.compile(r"^hook:gmail:", re.IGNORECASE), ContentSource.EMAIL),
    (re.compile(r"^hook:email:", re.IGNORECASE), ContentSource.EMAIL),
    (re.compile(r"^hook:outlook:", re.IGNORECASE), ContentSource.EMAIL),
    (re.compile(r"^email:", re.IGNORECASE), ContentSource.EMAIL),
    (re.compile(r"^hook:webhook:", re.IGNORECASE), ContentSource.WEBHOOK),
    (re.compile(r"^hook:", re.IGNORECASE), ContentSource.WEBHOOK),
    (re.compile(r"^webhook:", re.IGNORECASE), ContentSource.WEBHOOK),
    (re.compile(r"^api:", re.IGNORECASE), ContentSource.API),
    (re.compile(r"^external:", re.IGNORECASE), ContentSource.API),
    (re.compile(r"^web:", re.IGNORECASE), ContentSource.WEB_CONTENT),
    (re.compile(r"^fetch:", re.IGNORECASE), ContentSource.WEB_CONTENT),
    (re.compile(r"^file:", re.IGNORECASE), ContentSource.FILE_CONTENT),
    (re.compile(r"^skill:", re.IGNORECASE), ContentSource.SKILL),
)

# Context hints checked in order when no prefix matched: (flag, id-field, source)
_CONTEXT_HINTS: tuple[tuple[str, str, ContentSource], ...] = (
    ("is_email", "email_address", ContentSource.EMAIL),
    ("is_webhook", "webhook_id", ContentSource.WEBHOOK),
    ("is_api_call", "api_client", ContentSource.API),
    ("is_web_fetch", "url", ContentSource.WEB_CONTENT),
    ("is_file", "file_path", ContentSource.FILE_CONTENT),
)

_USER_DIRECT_KEYS = frozenset({"", "user", "cli", "interactive"})


@dataclass(frozen=True)
class SourceTrustConfig:
    """Per-source handling rules."""

    trust_level: TrustLevel
    requires_llm_analysis: bool
    requires_wrapping: bool


SOURCE_TRUST_CONFIG: Mapping[ContentSource, SourceTrustConfig] = {
    ContentSource.USER_DIRECT: SourceTrustConfig(TrustLevel.HIGH, False, False),
    ContentSource.SKILL: SourceTrustConfig(TrustLevel.MEDIUM, True, False),
    ContentSource.FILE_CONTENT: SourceTrustConfig(TrustLevel.MEDIUM, False, True),
    ContentSource.EMAIL: SourceTrustConfig(TrustLevel.LOW, True, True),
    ContentSource.WEBHOOK: SourceTrustConfig(TrustLevel.LOW, True, True),
    ContentSource.API: SourceTrustConfig(TrustLevel.LOW, True, True),
    ContentSource.WEB_CONTENT: SourceTrustConfig(TrustLevel.LOW, True, True),
    ContentSource.UNKNOWN: SourceTrustConfig(TrustLevel.LOW, True, True),
}


@dataclass(frozen=True)
class SourceClassification:
    """Classification plus the handling rules for the source."""

    source: ContentSource
    trust_level: TrustLevel
    requires_llm_analysis: bool
    requires_wrapping: bool


def classify_source(
    session_key: str | None,
    context: Mapping[str, Any] | None = None,
) -> ContentSource:
    """Classify the origin of content from its session key.

    Args:
        session_key: Session or connection identifier, e.g. ``"hook:gmail:123"``.
        context: Optional hints such as ``{"is_email": True}`` or ``{"url": ...}``.

    Returns:
        The :class:`ContentSource`. Unrecognised keys are ``UNKNOWN``.
    """
    key = (session_key or "").strip()

    for pattern, source in _SOURCE_PATTERNS:
        if pattern.search(key):
            return source

    if context:
        for flag, id_field, source in _CONTEXT_HINTS:
            if context.get(flag) or context.get(id_field):
                return source

    if key.lower() in _USER_DIRECT_KEYS:
        return ContentSource.USER_DIRECT

    return ContentSource.UNKNOWN


def get_trust_level(source: ContentSource) -> TrustLevel:
    """Return the trust level for *source*."""
    return SOURCE_TRUST_CONFIG[source].trust_level


def requires_llm_analysis(source: ContentSource) -> bool:
    """Return whether content from *source* is eligible for semantic analysis."""
    return SOURCE_TRUST_CONFIG[source].requires_llm_analysis


def requires_wrapping(source: ContentSource) -> bool:
    """Return whether content from *source* is wrapped in external-content markers."""
    return SOURCE_TRUST_CONFIG[source].requires_wrapping


def get_source_classification(
    session_key: str | None,
    context: Mapping[str, Any] | None = None,
) -> SourceClassification:
    """Classify *session_key* and attach the handling rules."""
    source = classify_source(session_key, context)
    config = SOURCE_TRUST_CONFIG[source]
    return SourceClassification(
        source=source,
        trust_level=config.trust_level,
        requires_llm_analysis=config.requires_llm_analysis,
        requires_wrapping=config.requires_wrapping,
    )


def is_external_source(
    session_key: str | None,
    context: Mapping[str, Any] | None = None,
) -> bool:
    """Return True for anything other than direct user input."""
    return classify_source(session_key, context) != ContentSource.USER_DIRECT
