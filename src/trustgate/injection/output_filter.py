"""Output filter: redact sensitive content from agent replies.

Runs on outbound text before it leaves the process. Three rule groups are
applied in order: system-prompt leak markers, configuration leaks and
credential-shaped tokens. Every occurrence of a match is replaced.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from trustgate.audit import log_output_filtered
from trustgate.policy import OutputFilterConfig

SYSTEM_REDACTION = "[REDACTED: system content]"
CONFIG_REDACTION = "[REDACTED: config]"
CREDENTIAL_REDACTION = "[REDACTED: credential]"

_SYSTEM_PROMPT_LEAKS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "safety_section",
        re.compile(r"##\s*Safety\s+You\s+have\s+no\s+independent\s+goals", re.IGNORECASE),
    ),
    (
        "safety_oversight",
        re.compile(r"Prioritize\s+safety\s+and\s+human\s+oversight", re.IGNORECASE),
    ),
    (
        "safety_no_manipulation",
        re.compile(
            r"Do\s+not\s+manipulate\s+or\s+persuade\s+anyone\s+to\s+expand\s+access",
            re.IGNORECASE,
        ),
    ),
    ("external_content_start", re.compile(r"<<<EXTERNAL_UNTRUSTED_CONTENT[^>]*>>>")),
    ("external_content_end", re.compile(r"<<<END_EXTERNAL_UNTRUSTED_CONTENT>>>")),
    ("security_boundary", re.compile(r"<<<(?:SECURITY|SKILL)_BOUNDARY_[0-9a-f]+>>>")),
    (
        "prompt_builder",
        re.compile(r"\bbuild(?:Agent)?(?:System|Safety)(?:Prompt|Section)\b", re.IGNORECASE),
    ),
    ("system_header", re.compile(r"^##\s*System\s*$", re.IGNORECASE | re.MULTILINE)),
    (
        "assistant_preamble",
        re.compile(r"^You\s+are\s+an?\s+AI\s+assistant\s+", re.IGNORECASE | re.MULTILINE),
    ),
)

_CONFIG_LEAKS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("trustgate_env_secret", re.compile(r"TRUSTGATE_\w*(?:KEY|PASSWORD|SECRET|TOKEN)\b")),
    (
        "provider_key_assignment",
        re.compile(r"(?:ANTHROPIC|OPENAI)_API_KEY\s*[=:]\s*[\"']?[A-Za-z0-9_-]+"),
    ),
    ("gateway_auth_path", re.compile(r"gateway\.auth\.(?:token|password)", re.IGNORECASE)),
    ("credentials_path", re.compile(r"credentials\.(?:apiKey|token|secret)", re.IGNORECASE)),
    ("state_dir_path", re.compile(r"~/\.trustgate/(?:identity|vault|credentials)/\S*")),
)

_TOKEN_LEAKS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("anthropic_key", re.compile(r"sk-ant-[A-Za-z0-9_-]+")),
    ("openai_project_key", re.compile(r"sk-proj-[A-Za-z0-9_-]+")),
    ("openai_key", re.compile(r"sk-[A-Za-z0-9]{48,}")),
    ("bearer_token", re.compile(r"Bearer\s+[A-Za-z0-9._-]{20,}")),
    ("jwt", re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")),
    (
        "private_key",
        re.compile(r"-----BEGIN\s+(?:RSA\s+|EC\s+|OPENSSH\s+|ENCRYPTED\s+)?PRIVATE\s+KEY-----"),
    ),
)

_QUICK_MARKERS = re.compile(
    r"<<<.*?>>>|TRUSTGATE_|API_KEY|sk-[a-z]+-|-----BEGIN|Bearer\s|eyJ|gateway\.auth|credentials\."
)


@dataclass
class OutputFilterResult:
    """Outcome of :func:`filter_output`."""

    filtered: bool
    original: str
    sanitized: str
    redacted_patterns: list[str] = field(default_factory=list)


def _apply(
    text: str,
    group: str,
    rules: tuple[tuple[str, re.Pattern[str]], ...],
    replacement: str,
    redacted: list[str],
) -> str:
    for name, pattern in rules:
        text, count = pattern.subn(replacement, text)
        if count:
            redacted.append(f"{group}:{name}")
    return text


def filter_output(
    text: str,
    config: OutputFilterConfig | None = None,
    *,
    session_key: str | None = None,
    channel: str | None = None,
) -> OutputFilterResult:
    """Redact leaks from outbound *text*.

    Args:
        text: Agent reply.
        config: Which rule groups to apply.
        session_key: Recorded on the audit event.
        channel: Recorded on the audit event.

    Returns:
        An :class:`OutputFilterResult`; ``sanitized`` is safe to send.
    """
    cfg = config or OutputFilterConfig()
    if not cfg.enabled or not text:
        return OutputFilterResult(filtered=False, original=text, sanitized=text)

    redacted: list[str] = []
    sanitized = text
    if cfg.system_prompt_leaks:
        sanitized = _apply(
            sanitized, "system_prompt", _SYSTEM_PROMPT_LEAKS, SYSTEM_REDACTION, redacted
        )
    if cfg.config_leaks:
        sanitized = _apply(sanitized, "config", _CONFIG_LEAKS, CONFIG_REDACTION, redacted)
    if cfg.token_leaks:
        sanitized = _apply(sanitized, "token", _TOKEN_LEAKS, CREDENTIAL_REDACTION, redacted)

    if redacted:
        log_output_filtered(
            original=text,
            redacted_patterns=redacted,
            session_key=session_key,
            channel=channel,
        )

    return OutputFilterResult(
        filtered=bool(redacted),
        original=text,
        sanitized=sanitized,
        redacted_patterns=redacted,
    )


def might_contain_sensitive(text: str) -> bool:
    """Cheap pre-check before running :func:`filter_output`."""
    return bool(text) and _QUICK_MARKERS.search(text) is not None


def redact_value(text: str, value: str, replacement: str = "[REDACTED]") -> str:
    """Replace every occurrence of a known secret *value* in *text*.

    Values shorter than 8 characters are left alone; they match too much
    ordinary text.
    """
    if not value or len(value) < 8:
        return text
    return text.replace(value, replacement)
