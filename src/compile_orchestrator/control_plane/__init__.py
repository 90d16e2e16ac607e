"""Control-plane public API."""

from compile_orchestrator.control_plane.concurrency_guard import (
    AdmissionToken,
    BuildConflict,
    BuildConflictError,
    ConcurrencyGuard,
)
from compile_orchestrator.control_plane.orchestrator import (
    EXHAUSTED_MESSAGE,
    AdvisorProtocol,
    BuildOrchestrator,
    OrchestratorSettings,
)
from compile_orchestrator.control_plane.registry import BuildRegistry
from compile_orchestrator.control_plane.service import BuildService

__all__ = [
    "EXHAUSTED_MESSAGE",
    "AdmissionToken",
    "AdvisorProtocol",
    "BuildConflict",
    "BuildConflictError",
    "BuildOrchestrator",
    "BuildRegistry",
    "BuildService",
    "ConcurrencyGuard",
    "OrchestratorSettings",
]
