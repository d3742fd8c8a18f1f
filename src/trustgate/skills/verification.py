"""Skill verification before installation.

Decision order:

1. verification disabled -> approve
2. trusted skill name -> approve
3. bundled skill (when bundled skills are trusted) -> approve
4. recorded checksum/signature mismatch -> reject
5. cached verdict for identical content -> reuse it
6. quick red-flag scan; without a model (or in quick-check-only mode) the
   quick result is final, subject to a human decision
7. full model inspection; safe verdicts are cached, unsafe ones go to a
   human decision unless the risk is critical
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePath
from typing import TYPE_CHECKING

from trustgate.audit import log_skill_verification_failed
from trustgate.logging import get_logger
from trustgate.models import InjectionSeverity
from trustgate.skills.checksums import verify_skill_checksum
from trustgate.skills.inspector import (
    Skill,
    SkillContent,
    SkillFindingType,
    SkillInspectionResult,
    SkillSecurityFinding,
    format_inspection_results,
    inspect_skill,
    quick_security_check,
    skill_to_content,
)

if TYPE_CHECKING:
    from trustgate.policy import SkillPolicy
    from trustgate.providers import SecurityLLMProvider
    from trustgate.skills.checksums import ChecksumStore, SignatureVerifier

log = get_logger("trustgate.skills.verification")


class InstallDecision(StrEnum):
    """Answer from the human asked to approve a flagged skill."""

    INSTALL = "install"
    SKIP = "skip"
    CANCEL = "cancel"


SkillInstallDecisionFn = Callable[[str, SkillInspectionResult, str], Awaitable[InstallDecision]]


@dataclass
class SkillVerificationResult:
    """Outcome of verifying one skill.

    Attributes:
        approved: The skill may be installed.
        bypassed: Approved by a human despite warnings.
        inspection: The inspection verdict that drove the decision.
        message: Text for the user.
        decision: The human decision, when one was asked for.
    """

    approved: bool
    bypassed: bool
    inspection: SkillInspectionResult
    message: str
    decision: InstallDecision | None = None


@dataclass
class SkillVerificationConfig:
    """Verifier settings. Build from policy with :meth:`from_policy`."""

    enabled: bool = True
    provider: SecurityLLMProvider | None = None
    on_decision_needed: SkillInstallDecisionFn | None = None
    trust_bundled_skills: bool = True
    trusted_skills: list[str] = field(default_factory=list)
    quick_check_only: bool = False
    inspection_timeout: float = 60.0
    checksum_store: ChecksumStore | None = None
    signature_verifier: SignatureVerifier | None = None
    policy: SkillPolicy | None = None

    @classmethod
    def from_policy(
        cls,
        policy: SkillPolicy,
        *,
        provider: SecurityLLMProvider | None = None,
        on_decision_needed: SkillInstallDecisionFn | None = None,
        checksum_store: ChecksumStore | None = None,
        signature_verifier: SignatureVerifier | None = None,
    ) -> SkillVerificationConfig:
        return cls(
            enabled=policy.inspect_before_install,
            provider=provider,
            on_decision_needed=on_decision_needed,
            trust_bundled_skills=policy.trust_bundled_skills,
            trusted_skills=list(policy.trusted_skills),
            quick_check_only=policy.quick_check_only,
            checksum_store=checksum_store,
            signature_verifier=signature_verifier,
            policy=policy,
        )


DEFAULT_VERIFICATION_CONFIG = SkillVerificationConfig()

# Process-lifetime cache keyed by content hash
_verification_cache: dict[str, SkillVerificationResult] = {}

_BUNDLED_MARKERS = ("site-packages", "dist-packages")


def hash_skill_content(skill: SkillContent) -> str:
    """Short SHA-256 over name, prompt, description and attached code."""
    payload = json.dumps(
        {
            "name": skill.name,
            "prompt": skill.prompt,
            "description": skill.description,
            "code": [[f.path, f.content] for f in skill.code_files],
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def _scannable_text(content: SkillContent) -> str:
    return "\n".join([content.prompt, *(f.content for f in content.code_files)])


def is_skill_trusted(skill_name: str, config: SkillVerificationConfig) -> bool:
    name = skill_name.lower()
    return any(trusted.lower() == name for trusted in config.trusted_skills)


def is_bundled_skill(source_path: str | None) -> bool:
    """Skills shipped inside an installed package or ``skills/bundled``."""
    if not source_path:
        return False
    parts = PurePath(source_path.replace("\\", "/")).parts
    if any(marker in parts for marker in _BUNDLED_MARKERS):
        return True
    return any(a == "skills" and b == "bundled" for a, b in zip(parts, parts[1:], strict=False))


def _approved(summary: str, message: str) -> SkillVerificationResult:
    return SkillVerificationResult(
        approved=True,
        bypassed=False,
        inspection=SkillInspectionResult(
            safe=True, risk_level=InjectionSeverity.NONE, summary=summary
        ),
        message=message,
    )


class SkillVerifier:
    """Applies the verification order to skills about to be installed."""

    def __init__(
        self,
        config: SkillVerificationConfig | None = None,
        cache: dict[str, SkillVerificationResult] | None = None,
    ) -> None:
        self.config = config or SkillVerificationConfig()
        self._cache = _verification_cache if cache is None else cache

    async def verify(self, skill: Skill, source_path: str | None = None) -> SkillVerificationResult:
        """Decide whether *skill* may be installed."""
        cfg = self.config

        if not cfg.enabled:
            return _approved("Verification disabled.", "Skill verification is disabled.")

        if is_skill_trusted(skill.name, cfg):
            return _approved("Skill is in trusted list.", f'Skill "{skill.name}" is trusted.')

        if cfg.trust_bundled_skills and is_bundled_skill(source_path):
            return _approved(
                "Bundled skill - trusted by default.",
                f'Skill "{skill.name}" is bundled and trusted.',
            )

        content = await skill_to_content(skill, source_path)

        if cfg.checksum_store is not None and cfg.policy is not None:
            rejected = await self._check_checksum(content)
            if rejected is not None:
                return rejected

        content_hash = hash_skill_content(content)
        cached = self._cache.get(content_hash)
        if cached is not None:
            log.debug("skill_verification_cache_hit", skill=skill.name, content_hash=content_hash)
            return cached

        quick = quick_security_check(_scannable_text(content))
        if quick.has_red_flags and (cfg.provider is None or cfg.quick_check_only):
            inspection = SkillInspectionResult(
                safe=False,
                risk_level=InjectionSeverity.HIGH,
                findings=[
                    SkillSecurityFinding(
                        type=SkillFindingType.SUSPICIOUS_PATTERN,
                        severity=InjectionSeverity.HIGH,
                        description=f"Detected red flag: {flag}",
                    )
                    for flag in quick.flags
                ],
                summary=f"Quick scan found {len(quick.flags)} security red flag(s).",
                bypass_allowed=True,
            )
            return await self._resolve_unsafe(content, content_hash, inspection)

        if cfg.provider is not None and not cfg.quick_check_only:
            inspection = await inspect_skill(
                content, cfg.provider, timeout=cfg.inspection_timeout
            )
            if inspection.safe:
                result = SkillVerificationResult(
                    approved=True,
                    bypassed=False,
                    inspection=inspection,
                    message=format_inspection_results(inspection, content.name),
                )
                self._cache[content_hash] = result
                return result
            return await self._resolve_unsafe(content, content_hash, inspection)

        return SkillVerificationResult(
            approved=True,
            bypassed=False,
            inspection=SkillInspectionResult(
                safe=True,
                risk_level=InjectionSeverity.LOW,
                summary="Quick scan passed. Full LLM analysis not available.",
            ),
            message=f'Skill "{content.name}" passed quick security scan. LLM analysis unavailable.',
        )

    async def _check_checksum(self, content: SkillContent) -> SkillVerificationResult | None:
        cfg = self.config
        assert cfg.checksum_store is not None and cfg.policy is not None  # nosec B101
        check = await verify_skill_checksum(
            content.name,
            content.prompt,
            cfg.checksum_store,
            cfg.policy,
            cfg.signature_verifier,
        )
        if check.valid:
            return None

        reason = check.reason.value if check.reason else "unknown"
        inspection = SkillInspectionResult(
            safe=False,
            risk_level=InjectionSeverity.CRITICAL,
            findings=[
                SkillSecurityFinding(
                    type=SkillFindingType.OTHER,
                    severity=InjectionSeverity.CRITICAL,
                    description=f"Integrity check failed: {reason}",
                )
            ],
            summary=f"Skill integrity check failed ({reason}).",
            bypass_allowed=False,
        )
        log_skill_verification_failed(
            skill_name=content.name,
            risk_level=InjectionSeverity.CRITICAL,
            findings=[reason],
            content=content.prompt,
        )
        return SkillVerificationResult(
            approved=False,
            bypassed=False,
            inspection=inspection,
            message=format_inspection_results(inspection, content.name),
        )

    async def _resolve_unsafe(
        self,
        content: SkillContent,
        content_hash: str,
        inspection: SkillInspectionResult,
    ) -> SkillVerificationResult:
        formatted = format_inspection_results(inspection, content.name)
        findings = [f"{f.type.value}: {f.description}" for f in inspection.findings]
        decide = self.config.on_decision_needed

        if decide is None or not inspection.bypass_allowed:
            log_skill_verification_failed(
                skill_name=content.name,
                risk_level=inspection.risk_level,
                findings=findings,
                content=content.prompt,
            )
            return SkillVerificationResult(
                approved=False, bypassed=False, inspection=inspection, message=formatted
            )

        decision = InstallDecision(await decide(content.name, inspection, formatted))
        approved = decision == InstallDecision.INSTALL
        log_skill_verification_failed(
            skill_name=content.name,
            risk_level=inspection.risk_level,
            findings=findings,
            content=content.prompt,
            bypassed=approved,
        )
        result = SkillVerificationResult(
            approved=approved,
            bypassed=approved,
            inspection=inspection,
            message=formatted,
            decision=decision,
        )
        if approved:
            self._cache[content_hash] = result
        return result


async def verify_skill_for_installation(
    skill: Skill,
    source_path: str | None = None,
    config: SkillVerificationConfig = DEFAULT_VERIFICATION_CONFIG,
) -> SkillVerificationResult:
    """Verify *skill* with the shared process-wide cache."""
    return await SkillVerifier(config).verify(skill, source_path)


def clear_verification_cache() -> None:
    _verification_cache.clear()


def trust_skill(skill_name: str, config: SkillVerificationConfig) -> None:
    """Add *skill_name* to the trusted list."""
    if not is_skill_trusted(skill_name, config):
        config.trusted_skills.append(skill_name)


def untrust_skill(skill_name: str, config: SkillVerificationConfig) -> None:
    """Remove *skill_name* from the trusted list (case-insensitive)."""
    name = skill_name.lower()
    config.trusted_skills[:] = [s for s in config.trusted_skills if s.lower() != name]
