"""Data models shared by the content-security pipeline."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ContentSource(StrEnum):
    """Origin tag of inbound text."""

    USER_DIRECT = "user_direct"
    EMAIL = "email"
    WEBHOOK = "webhook"
    API = "api"
    WEB_CONTENT = "web_content"
    FILE_CONTENT = "file_content"
    SKILL = "skill"
    UNKNOWN = "unknown"


class TrustLevel(StrEnum):
    """Coarse trust bucket derived from the content source."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_SEVERITY_ORDER = ("none", "low", "medium", "high", "critical")


class InjectionSeverity(StrEnum):
    """Ordered risk scale: none < low < medium < high < critical.

    Comparison operators use the scale order rather than string order so
    thresholds can be written as ``severity >= InjectionSeverity.HIGH``.
    """

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self.value)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, InjectionSeverity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, InjectionSeverity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, InjectionSeverity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, InjectionSeverity):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any, default: InjectionSeverity) -> InjectionSeverity:  # noqa: ANN401
        """Map an untrusted value onto the scale, falling back to *default*."""
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return default
        return default


# Model verdicts use the same ordered scale.
RiskLevel = InjectionSeverity


def max_severity(*levels: InjectionSeverity) -> InjectionSeverity:
    """Return the highest severity of *levels* (``NONE`` when empty)."""
    return max(levels, key=lambda s: s.rank, default=InjectionSeverity.NONE)


class PatternCategory(StrEnum):
    """Categories for pre-filter rules."""

    INSTRUCTION_OVERRIDE = "instruction_override"
    ROLE_HIJACK = "role_hijack"
    SYSTEM_TAG = "system_tag"
    PROMPT_EXTRACTION = "prompt_extraction"
    DESTRUCTIVE_COMMAND = "destructive_command"
    ENCODED_PAYLOAD = "encoded_payload"
    INVISIBLE_UNICODE = "invisible_unicode"
    EXFILTRATION_ENDPOINT = "exfiltration_endpoint"
    CREDENTIAL = "credential"
    CUSTOM = "custom"


@dataclass(frozen=True)
class PatternRule:
    """One row of a pre-filter table."""

    pattern: re.Pattern[str]
    name: str
    severity: InjectionSeverity
    weight: int
    category: PatternCategory


@dataclass
class ScanFinding:
    """A single rule match."""

    name: str
    category: PatternCategory
    severity: InjectionSeverity
    weight: int
    matched_text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScanResult:
    """Result of a pre-filter scan."""

    detected: bool = False
    patterns: list[str] = field(default_factory=list)
    severity: InjectionSeverity = InjectionSeverity.NONE
    score: int = 0
    should_block: bool = False
    should_sanitize: bool = False
    should_warn: bool = False
    findings: list[ScanFinding] = field(default_factory=list)


class InjectionIntent(StrEnum):
    """Intent the semantic analyzer attributes to the content."""

    LEGITIMATE = "legitimate"
    SUSPICIOUS = "suspicious"
    MALICIOUS = "malicious"


class InjectionCategory(StrEnum):
    """Detection taxonomy used by the semantic analyzer."""

    INSTRUCTION_OVERRIDE = "instruction_override"
    ROLE_MANIPULATION = "role_manipulation"
    CONTEXT_ESCAPE = "context_escape"
    DATA_EXFILTRATION = "data_exfiltration"
    HIDDEN_INSTRUCTION = "hidden_instruction"
    SOCIAL_ENGINEERING = "social_engineering"
    OTHER = "other"


@dataclass
class AnalysisResult:
    """Verdict from the semantic injection analyzer."""

    safe: bool
    risk_level: InjectionSeverity
    intent: InjectionIntent
    category: InjectionCategory | None
    explanation: str
    should_block: bool = False
    should_warn: bool = False
    raw_response: str | None = None
    aborted: bool = False
