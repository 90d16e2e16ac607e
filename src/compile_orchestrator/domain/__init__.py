"""
compile-orchestrator — domain layer

File: src/compile_orchestrator/domain/__init__.py
Last updated: 2026-10-17

Purpose
- Domain types shared across planes: BuildJob, PhaseRecord, FixProposal,
  FixAttemptRecord, Artifact, SecretRecord, build events and the error taxonomy.

Functional requirements
- Domain objects are serializable and validated at construction.
- The domain layer performs no IO.
"""

from compile_orchestrator.domain.errors import (
    AdvisorError,
    BuildError,
    CompilationError,
    ExhaustedRetries,
    SafetyRejection,
    SandboxError,
    SandboxTimeoutError,
    SandboxUnavailableError,
    ValidationError,
)
from compile_orchestrator.domain.events import BuildEvent, BuildEventType, redact_sensitive
from compile_orchestrator.domain.models import (
    Artifact,
    ArtifactCategory,
    BuildJob,
    BuildStatus,
    FixAction,
    FixAttemptRecord,
    FixProposal,
    InvalidTransitionError,
    Phase,
    PhaseOutcome,
    PhaseRecord,
    SecretRecord,
)

__all__ = [
    "AdvisorError",
    "Artifact",
    "ArtifactCategory",
    "BuildError",
    "BuildEvent",
    "BuildEventType",
    "BuildJob",
    "BuildStatus",
    "CompilationError",
    "ExhaustedRetries",
    "FixAction",
    "FixAttemptRecord",
    "FixProposal",
    "InvalidTransitionError",
    "Phase",
    "PhaseOutcome",
    "PhaseRecord",
    "SafetyRejection",
    "SandboxError",
    "SandboxTimeoutError",
    "SandboxUnavailableError",
    "SecretRecord",
    "ValidationError",
    "redact_sensitive",
]
