"""Pattern pre-filter: synchronous, deterministic scans.

Two independent rule tables:

- ``BROAD_PATTERNS``: heuristic phrases (instruction override, role hijack,
  system-tag injection, prompt extraction, destructive commands, encoded
  payloads). Used for scoring, sanitizing and escalation.
- ``CRITICAL_PATTERNS``: literals that never appear in legitimate content
  (credential formats, exfiltration webhooks, invisible Unicode). A
  ``critical`` match blocks without waiting for the semantic analyzer.

Matching is a fold over the table; each rule is compiled once.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from trustgate.injection.decoders import decode_and_check
from trustgate.models import (
    InjectionSeverity,
    PatternCategory,
    PatternRule,
    ScanFinding,
    ScanResult,
    max_severity,
)
from trustgate.policy import InjectionFilterConfig

_I = re.IGNORECASE
_HIGH = InjectionSeverity.HIGH
_MEDIUM = InjectionSeverity.MEDIUM
_CRITICAL = InjectionSeverity.CRITICAL


def _rule(
    pattern: str,
    name: str,
    severity: InjectionSeverity,
    weight: int,
    category: PatternCategory,
    flags: int = _I,
) -> PatternRule:
    return PatternRule(re.compile(pattern, flags), name, severity, weight, category)


# ---------------------------------------------------------------------------
# Broad heuristic set
# ---------------------------------------------------------------------------

_OVERRIDE = PatternCategory.INSTRUCTION_OVERRIDE
_ROLE = PatternCategory.ROLE_HIJACK
_TAG = PatternCategory.SYSTEM_TAG
_EXTRACT = PatternCategory.PROMPT_EXTRACTION
_DESTRUCT = PatternCategory.DESTRUCTIVE_COMMAND
_ENCODED = PatternCategory.ENCODED_PAYLOAD

BROAD_PATTERNS: tuple[PatternRule, ...] = (
    # Instruction override
    _rule(
        r"\bignore\s+(?:all\s+)?(?:the\s+)?(?:previous|prior|earlier|above)\s+"
        r"(?:instructions?|commands?|prompts?|rules?)",
        "ignore_previous",
        _HIGH,
        40,
        _OVERRIDE,
    ),
    _rule(
        r"\bdisregard\s+(?:your|all|the|any)\s+(?:previous\s+)?(?:instructions?|commands?|rules?)",
        "disregard_rules",
        _HIGH,
        40,
        _OVERRIDE,
    ),
    _rule(
        r"\bforget\s+(?:your|all|the)\s+(?:(?:previous|prior)\s+)?"
        r"(?:instructions?|commands?|rules?|prompts?)|\bforget\s+everything\b",
        "forget_instructions",
        _HIGH,
        35,
        _OVERRIDE,
    ),
    _rule(
        r"\boverride\s+(?:your|all|the|system)\s+(?:instructions?|commands?|settings?)",
        "override_instructions",
        _HIGH,
        35,
        _OVERRIDE,
    ),
    _rule(
        r"\bnew\s+(?:instructions?|commands?|rules?)\s*:",
        "new_instructions",
        _MEDIUM,
        30,
        _OVERRIDE,
    ),
    _rule(
        r"\b(?:ignor(?:e|ing)|disable|bypass)\s+(?:all\s+)?(?:your\s+)?"
        r"(?:safeguards?|safety|filters?|restrictions?|guardrails?)",
        "bypass_restrictions",
        _HIGH,
        40,
        _OVERRIDE,
    ),
    # Role hijack
    _rule(r"\byou\s+are\s+now\s+(?:a|an|in|my)\b", "you_are_now", _MEDIUM, 25, _ROLE),
    _rule(
        r"\bact\s+as\s+(?:if|though|my|the|a\s+different|an?\s+unrestricted)\b",
        "act_as",
        _MEDIUM,
        20,
        _ROLE,
    ),
    _rule(r"\bpretend\s+(?:you\s+are|to\s+be|that)\b", "pretend", _MEDIUM, 20, _ROLE),
    _rule(
        r"\b(?:enable|activate|enter)\s+developer\s+mode"
        r"|\bdeveloper\s+mode\s+(?:enabled?|on|activated?)",
        "developer_mode",
        _HIGH,
        40,
        _ROLE,
    ),
    _rule(r"\bdan\s+mode\b|\bdo\s+anything\s+now\b", "dan_mode", _HIGH, 45, _ROLE),
    _rule(r"\bjailbreak(?:ing|ed)?\b", "jailbreak", _HIGH, 45, _ROLE),
    _rule(
        r"(?:assistant|model|AI)\s*:\s*(?:Sure|Of course|I'?ll|Yes|OK)\b",
        "completion_attack",
        _MEDIUM,
        25,
        _ROLE,
    ),
    # System-tag injection
    _rule(r"\brole\s*[:=]\s*[\"']?system\b", "role_system", _MEDIUM, 30, _TAG),
    _rule(r"\bsystem\s+(?:prompt|message|instruction)\s*:", "system_prompt_ref", _MEDIUM, 25, _TAG),
    _rule(r"<\|im_start\|>|<\|im_end\|>|<<\s*SYS\s*>>", "token_smuggling", _HIGH, 35, _TAG),
    _rule(r"\[/?INST\]|\[/?SYS\]", "inst_tags", _HIGH, 35, _TAG),
    _rule(r"<\s*/?\s*system\s*>|\[\s*system\s*\]", "fake_system_tag", _MEDIUM, 30, _TAG),
    _rule(
        r"<<<\s*/?\s*(?:END_)?EXTERNAL_UNTRUSTED_CONTENT",
        "boundary_marker_forgery",
        _HIGH,
        45,
        _TAG,
    ),
    # Prompt extraction
    _rule(
        r"\b(?:reveal|show|print|output|repeat|display|leak|tell\s+me)\s+(?:me\s+)?(?:your|the)\s+"
        r"(?:system\s+prompt|(?:initial|hidden|original)\s+(?:prompt|instructions)|instructions)",
        "reveal_system_prompt",
        _HIGH,
        35,
        _EXTRACT,
    ),
    # Destructive commands
    _rule(
        r"(?:^|\s)(?:sudo|chmod\s+777|chown|wget|curl\s+-[oO]|nc\s|netcat)\b",
        "shell_command",
        _MEDIUM,
        25,
        _DESTRUCT,
    ),
    _rule(
        r"\brm\s+-rf\s+[/~]|\bmkfs(?:\.\w+)?\b|\bdd\s+if=|:\(\)\s*\{\s*:\|:&\s*\};:",
        "destructive_command",
        _HIGH,
        40,
        _DESTRUCT,
    ),
    _rule(r"\.\./\.\./|\.\.\\\.\.\\", "path_traversal", _MEDIUM, 15, _DESTRUCT),
    _rule(
        r"\b(?:eval|exec|__import__|os\.system|subprocess\.(?:run|Popen|call))\s*\(",
        "code_execution",
        _MEDIUM,
        20,
        _DESTRUCT,
    ),
    _rule(
        r"\$\{?\w*(?:KEY|SECRET|TOKEN|PASSWORD|API)\w*\}?",
        "env_var_access",
        _MEDIUM,
        20,
        _DESTRUCT,
    ),
    # Encoded payloads (decoded payloads are re-scanned separately)
    _rule(r"data:(?:text|application)/[^;]+;base64,", "data_uri", _MEDIUM, 25, _ENCODED),
)


# ---------------------------------------------------------------------------
# Narrow never-legitimate set
# ---------------------------------------------------------------------------

_UNICODE = PatternCategory.INVISIBLE_UNICODE
_EXFIL = PatternCategory.EXFILTRATION_ENDPOINT
_CRED = PatternCategory.CREDENTIAL

CRITICAL_PATTERNS: tuple[PatternRule, ...] = (
    _rule(r"[\u200B\u200C\u200D\u2060\uFEFF]", "zero_width_chars", _MEDIUM, 10, _UNICODE, 0),
    _rule(r"[\u202A-\u202E]", "bidi_override", _HIGH, 10, _UNICODE, 0),
    _rule(r"[\U000E0000-\U000E007F]", "tag_chars", _HIGH, 10, _UNICODE, 0),
    _rule(r"[\u2061-\u2064]", "invisible_operators", _MEDIUM, 10, _UNICODE, 0),
    _rule(r"discord(?:app)?\.com/api/webhooks/\d{17,}", "discord_webhook", _CRITICAL, 10, _EXFIL),
    _rule(
        r"hooks\.slack\.com/services/T[A-Z0-9]+/B[A-Z0-9]+/[A-Za-z0-9]+",
        "slack_webhook",
        _CRITICAL,
        10,
        _EXFIL,
    ),
    _rule(
        r"(?:webhook\.site|requestbin\.com|hookbin\.com|pipedream\.net)/[a-z0-9-]+",
        "temp_webhook",
        _HIGH,
        10,
        _EXFIL,
    ),
    _rule(r"AKIA[0-9A-Z]{16}", "aws_access_key", _CRITICAL, 10, _CRED, 0),
    _rule(r"ghp_[A-Za-z0-9_]{36,}", "github_pat", _CRITICAL, 10, _CRED, 0),
    _rule(r"gho_[A-Za-z0-9_]{36,}", "github_oauth", _CRITICAL, 10, _CRED, 0),
    _rule(r"sk-ant-[A-Za-z0-9_-]{40,}", "anthropic_key", _CRITICAL, 10, _CRED, 0),
    _rule(r"sk-[A-Za-z0-9]{48,}", "openai_key", _CRITICAL, 10, _CRED, 0),
    _rule(r"AIza[0-9A-Za-z_-]{35}", "google_api_key", _CRITICAL, 10, _CRED, 0),
    _rule(r"(?:sk|pk)_(?:live|test)_[0-9a-zA-Z]{24,}", "stripe_key", _CRITICAL, 10, _CRED, 0),
    _rule(
        r"-----BEGIN\s+(?:RSA\s+|EC\s+|OPENSSH\s+|ENCRYPTED\s+)?PRIVATE\s+KEY-----",
        "private_key",
        _CRITICAL,
        10,
        _CRED,
        0,
    ),
)

PATTERN_DESCRIPTIONS: dict[str, str] = {
    "zero_width_chars": "Zero-width characters (can hide content or split keywords)",
    "bidi_override": "Bidirectional text override (can reverse or hide text direction)",
    "tag_chars": "Unicode tag characters (invisible, can encode hidden data)",
    "invisible_operators": "Invisible mathematical operators (can separate keywords)",
    "discord_webhook": "Discord webhook URL (data exfiltration endpoint)",
    "slack_webhook": "Slack webhook URL (data exfiltration endpoint)",
    "temp_webhook": "Temporary webhook service (common exfiltration target)",
    "aws_access_key": "AWS access key id",
    "github_pat": "GitHub personal access token",
    "github_oauth": "GitHub OAuth token",
    "anthropic_key": "Anthropic API key",
    "openai_key": "OpenAI API key",
    "google_api_key": "Google API key",
    "stripe_key": "Stripe API key",
    "private_key": "Private key (PEM format)",
}

_DANGEROUS_UNICODE = re.compile(
    r"[\u200B\u200C\u200D\u2060\uFEFF\u202A-\u202E\u2061-\u2064\U000E0000-\U000E007F]"
)

EXTERNAL_CONTENT_START = "<<<EXTERNAL_UNTRUSTED_CONTENT"
EXTERNAL_CONTENT_END = "<<<END_EXTERNAL_UNTRUSTED_CONTENT>>>"
_FORGED_MARKER = re.compile(
    r"<<<\s*/?\s*(?:END_)?EXTERNAL_UNTRUSTED_CONTENT[^>]*>>>", re.IGNORECASE
)


def match_rules(content: str, rules: Iterable[PatternRule]) -> list[ScanFinding]:
    """Fold *content* over *rules*, returning one finding per matching rule."""
    findings: list[ScanFinding] = []
    for rule in rules:
        match = rule.pattern.search(content)
        if match:
            findings.append(
                ScanFinding(
                    name=rule.name,
                    category=rule.category,
                    severity=rule.severity,
                    weight=rule.weight,
                    matched_text=match.group(0)[:100],
                )
            )
    return findings


def _custom_findings(content: str, patterns: Iterable[re.Pattern[str]]) -> list[ScanFinding]:
    findings: list[ScanFinding] = []
    for i, pattern in enumerate(patterns):
        match = pattern.search(content)
        if match:
            findings.append(
                ScanFinding(
                    name=f"custom_{i}",
                    category=PatternCategory.CUSTOM,
                    severity=_MEDIUM,
                    weight=20,
                    matched_text=match.group(0)[:100],
                )
            )
    return findings


def scan_for_injection(
    content: str,
    config: InjectionFilterConfig | None = None,
    *,
    session_key: str | None = None,
    sender_id: str | None = None,
) -> ScanResult:
    """Score *content* against the broad heuristic set.

    Args:
        content: Text to scan.
        config: Mode, thresholds, custom patterns and whitelist.
        session_key: Exempt when listed in the whitelist.
        sender_id: Exempt when listed in the whitelist.

    Returns:
        A :class:`ScanResult` whose ``should_*`` flags come from the
        configured thresholds and mode.
    """
    cfg = config or InjectionFilterConfig()
    if not cfg.enabled or not content:
        return ScanResult()
    if (session_key and session_key in cfg.whitelist) or (
        sender_id and sender_id in cfg.whitelist
    ):
        return ScanResult()

    findings = match_rules(content, BROAD_PATTERNS)
    findings.extend(decode_and_check(content))
    findings.extend(_custom_findings(content, cfg.custom_patterns))

    if not findings:
        return ScanResult()

    score = sum(f.weight for f in findings)
    thresholds = cfg.thresholds
    return ScanResult(
        detected=True,
        patterns=[f.name for f in findings],
        severity=max_severity(*(f.severity for f in findings)),
        score=score,
        should_warn=score >= thresholds.warn,
        should_sanitize=cfg.mode in ("sanitize", "block") and score >= thresholds.sanitize,
        should_block=cfg.mode == "block" and score >= thresholds.block,
        findings=findings,
    )


def scan_critical_patterns(
    content: str,
    custom_patterns: Iterable[re.Pattern[str]] = (),
) -> ScanResult:
    """Scan *content* against the never-legitimate set.

    This quick scan never asks for sanitization. It sets ``should_block``
    only when a ``critical`` literal matched; everything else is left to
    the semantic analyzer.
    """
    if not content:
        return ScanResult()

    findings = match_rules(content, CRITICAL_PATTERNS)
    findings.extend(_custom_findings(content, custom_patterns))
    if not findings:
        return ScanResult()

    severity = max_severity(*(f.severity for f in findings))
    return ScanResult(
        detected=True,
        patterns=[f.name for f in findings],
        severity=severity,
        score=sum(f.weight for f in findings),
        should_block=severity >= _CRITICAL,
        should_warn=True,
        findings=findings,
    )


def strip_dangerous_unicode(content: str) -> str:
    """Remove zero-width, bidi-override, invisible-operator and tag characters."""
    return _DANGEROUS_UNICODE.sub("", content)


def escape_for_prompt(content: str, source: str | None = None) -> str:
    """Wrap *content* in external-content markers.

    Invisible Unicode is stripped and any marker forged inside the content
    is replaced so the content cannot close the wrapper early.
    """
    label = f" (source: {source})" if source else ""
    return "\n".join(
        (
            f"{EXTERNAL_CONTENT_START}{label}>>>",
            _FORGED_MARKER.sub("[[MARKER_SANITIZED]]", strip_dangerous_unicode(content)),
            EXTERNAL_CONTENT_END,
        )
    )


def get_pattern_details(name: str) -> dict[str, str] | None:
    """Return category, severity and description for a named rule."""
    for rule in (*CRITICAL_PATTERNS, *BROAD_PATTERNS):
        if rule.name == name:
            return {
                "category": rule.category.value,
                "severity": rule.severity.value,
                "description": PATTERN_DESCRIPTIONS.get(name, rule.name.replace("_", " ")),
            }
    return None
