"""Skill inspection and install-time verification."""

from trustgate.skills.checksums import ChecksumStore, verify_skill_checksum
from trustgate.skills.inspector import (
    Skill,
    SkillContent,
    SkillInspectionResult,
    inspect_skill,
    quick_security_check,
)
from trustgate.skills.verification import (
    InstallDecision,
    SkillVerificationConfig,
    SkillVerificationResult,
    SkillVerifier,
    verify_skill_for_installation,
)

__all__ = [
    "ChecksumStore",
    "InstallDecision",
    "Skill",
    "SkillContent",
    "SkillInspectionResult",
    "SkillVerificationConfig",
    "SkillVerificationResult",
    "SkillVerifier",
    "inspect_skill",
    "quick_security_check",
    "verify_skill_checksum",
    "verify_skill_for_installation",
]
