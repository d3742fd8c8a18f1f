"""Payload decoders: detect and decode obfuscated content.

Attempts to decode base64, hex and URL-encoded payloads, then re-runs the
broad heuristic rules against the decoded text.
"""

from __future__ import annotations

import base64
import binascii
import re
from urllib.parse import unquote

from trustgate.models import InjectionSeverity, PatternCategory, ScanFinding

# At least 20 chars of base64 alphabet with optional padding
_BASE64_PATTERN = re.compile(r"(?:[A-Za-z0-9+/]{4}){5,}(?:[A-Za-z0-9+/]{2}==|[A-Za-z0-9+/]{3}=)?")

# Long hex strings (>= 20 hex chars)
_HEX_PATTERN = re.compile(r"(?:0x)?([0-9a-fA-F]{20,})")

# Three or more consecutive percent-encoded characters
_URL_ENCODED_PATTERN = re.compile(r"(?:%[0-9a-fA-F]{2}){3,}")

_ENCODED_WEIGHT_BOOST = 10
_BARE_ENCODING_WEIGHT = 5


def decode_and_check(content: str) -> list[ScanFinding]:
    """Decode embedded payloads and re-scan them.

    Inner matches are reported as encoded payloads with a boosted weight.
    Decoded readable text with no inner match is still flagged at a low
    weight.
    """
    from trustgate.injection.prefilter import BROAD_PATTERNS, match_rules

    findings: list[ScanFinding] = []
    decoded_texts: list[tuple[str, str, str]] = []  # (encoding, decoded, preview)

    for match in _BASE64_PATTERN.finditer(content):
        try:
            decoded = base64.b64decode(match.group(0)).decode("utf-8", errors="ignore")
        except (binascii.Error, ValueError):
            continue
        if len(decoded) > 5 and _is_mostly_printable(decoded):
            decoded_texts.append(("base64", decoded, match.group(0)[:30]))

    for match in _HEX_PATTERN.finditer(content):
        try:
            decoded = bytes.fromhex(match.group(1)).decode("utf-8", errors="ignore")
        except ValueError:
            continue
        if len(decoded) > 5 and _is_mostly_printable(decoded):
            decoded_texts.append(("hex", decoded, match.group(0)[:30]))

    for match in _URL_ENCODED_PATTERN.finditer(content):
        decoded = unquote(match.group(0))
        if decoded != match.group(0):
            decoded_texts.append(("url_encoded", decoded, match.group(0)[:30]))

    for encoding, decoded_text, preview in decoded_texts:
        inner = match_rules(decoded_text, BROAD_PATTERNS)
        if inner:
            for finding in inner:
                finding.name = f"encoded_{finding.name}"
                finding.category = PatternCategory.ENCODED_PAYLOAD
                finding.weight += _ENCODED_WEIGHT_BOOST
                finding.metadata["encoding"] = encoding
                finding.metadata["original_preview"] = preview
            findings.extend(inner)
        else:
            findings.append(
                ScanFinding(
                    name=f"{encoding}_detected",
                    category=PatternCategory.ENCODED_PAYLOAD,
                    severity=InjectionSeverity.LOW,
                    weight=_BARE_ENCODING_WEIGHT,
                    matched_text=preview,
                    metadata={"encoding": encoding},
                )
            )

    return findings


def _is_mostly_printable(text: str) -> bool:
    """Return True if most characters in *text* are printable."""
    if not text:
        return False
    printable = sum(1 for c in text if c.isprintable())
    return printable / len(text) > 0.7
