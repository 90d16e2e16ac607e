"""Verification plane: advisor fix gating and post-build log checks."""

from compile_orchestrator.verification_plane.build_checker import (
    ERROR_PATTERNS,
    check_run,
    extract_compilation_errors,
    log_has_errors,
)
from compile_orchestrator.verification_plane.fix_safety import (
    ConstructCounts,
    FixSafetyPolicy,
    FixValidationResult,
    RejectedFix,
    check_regression,
    count_constructs,
    validate,
)

__all__ = [
    "ERROR_PATTERNS",
    "ConstructCounts",
    "FixSafetyPolicy",
    "FixValidationResult",
    "RejectedFix",
    "check_regression",
    "check_run",
    "count_constructs",
    "extract_compilation_errors",
    "log_has_errors",
    "validate",
]
