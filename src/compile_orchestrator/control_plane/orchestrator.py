"""
compile-orchestrator — build orchestrator

File: src/compile_orchestrator/control_plane/orchestrator.py
Last updated: 2026-10-17

Purpose
- Drive one BuildJob through analysis, structure verification, sandbox builds, and the
  bounded advisor repair loop.

Functional requirements
- Iteration 0 analyzes the tree (best-effort) and applies config-only structure fixes.
- Iterations >= 1 ask the advisor for a fix given the previous failure. A failed advisor
  call skips that iteration's rebuild; a "cannot fix" verdict ends the job at once.
- Every sandbox run is post-checked for binaries and error lines even on exit code 0.
- All per-iteration errors are captured into PhaseRecords; the job always finishes in a
  terminal status.

Non-functional requirements
- A PhaseRecord is appended before the next phase starts; an internal error closes the
  interrupted phase with a FAILED record.
- Progress events are published without awaiting consumers.
- Decision points are logged through ``structlog``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from compile_orchestrator.constants import COMPILED_SOURCE_EXTENSIONS, TARGET_DIR
from compile_orchestrator.domain.errors import AdvisorError, BuildError, ExhaustedRetries
from compile_orchestrator.domain.events import BuildEventType, truncate_for_event
from compile_orchestrator.domain.models import (
    BuildJob,
    BuildStatus,
    FixAttemptRecord,
    Phase,
    PhaseOutcome,
    PhaseRecord,
)
from compile_orchestrator.integration_plane import artifacts
from compile_orchestrator.integration_plane.workspace_manager import (
    locate_project_subdir,
    relocate_root_program,
)
from compile_orchestrator.knowledge_plane.static_analyzer import ProjectAnalysis, analyze
from compile_orchestrator.observability.logging import correlation_scope
from compile_orchestrator.sandbox.sandbox_manager import SandboxRunResult
from compile_orchestrator.synthesis_plane.advisor import attempt_summary, cannot_fix_reason
from compile_orchestrator.synthesis_plane.context_assembler import ContextAssembler
from compile_orchestrator.utils.fs import PathEscapeError, safe_delete
from compile_orchestrator.verification_plane.build_checker import check_run
from compile_orchestrator.verification_plane.fix_safety import FixSafetyPolicy, validate

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from compile_orchestrator.observability.events import EventBus
    from compile_orchestrator.sandbox.sandbox_manager import ResourceLimits, SandboxExecutor
    from compile_orchestrator.synthesis_plane.advisor import Advice
    from compile_orchestrator.synthesis_plane.context_assembler import ContextPack
    from compile_orchestrator.utils.concurrency import CancellationToken

_stdlib_logger = logging.getLogger(__name__)

EXHAUSTED_MESSAGE = "Exhausted all retry attempts without successful compilation"


class AdvisorProtocol(Protocol):
    async def request_structure_fixes(self, pack: ContextPack) -> Advice: ...

    async def request_fix(self, pack: ContextPack) -> Advice: ...


class _FixStep(Enum):
    REBUILD = "rebuild"
    SKIP = "skip"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Loop bounds for one job."""

    max_iterations: int = 8
    iteration_pause_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.iteration_pause_seconds < 0:
            raise ValueError("iteration_pause_seconds must be >= 0")

    @classmethod
    def from_config(cls, build_config: Mapping[str, Any]) -> OrchestratorSettings:
        return cls(
            max_iterations=int(build_config["max_iterations"]),
            iteration_pause_seconds=float(build_config["iteration_pause_seconds"]),
        )


@dataclass(slots=True)
class _Failure:
    error: BuildError
    log: str

    def describe(self) -> str:
        errors = getattr(self.error, "errors", ())
        if not errors:
            return self.error.message
        return self.error.message + "\n\n" + "\n".join(errors)


class BuildOrchestrator:
    """State machine for one build: analyze, verify, build, then repair and rebuild."""

    def __init__(
        self,
        *,
        executor: SandboxExecutor,
        advisor: AdvisorProtocol,
        limits: ResourceLimits | None = None,
        safety_policy: FixSafetyPolicy | None = None,
        settings: OrchestratorSettings | None = None,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._advisor = advisor
        self._limits = limits
        self._policy = safety_policy or FixSafetyPolicy()
        self._settings = settings or OrchestratorSettings()
        self._event_bus = event_bus
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    async def run(
        self,
        job: BuildJob,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> BuildJob:
        """Run ``job`` to a terminal status and return it.

        Only cancellation escapes; every other error is captured on the job.
        """

        with correlation_scope(build_id=job.id, principal=job.principal):
            job.transition(BuildStatus.RUNNING)
            self._emit(
                BuildEventType.BUILD_STARTED,
                job,
                {"principal": job.principal, "max_iterations": job.max_iterations},
            )
            self._logger.info("build_started", build_id=job.id, max_iterations=job.max_iterations)
            try:
                await self._loop(job, cancel_token)
            except Exception as exc:  # noqa: BLE001
                _stdlib_logger.exception("build failed with an internal error")
                job.error = f"Internal error: {exc}"
                job.error_code = "internal"
                if not job.is_terminal:
                    self._record_interrupted(job, exc)
                    job.transition(BuildStatus.FAILED)

            self._logger.info(
                "build_completed",
                build_id=job.id,
                status=job.status.value,
                iterations=job.iterations,
                fix_attempts=len(job.fix_attempts),
            )
            self._emit(
                BuildEventType.BUILD_COMPLETED,
                job,
                {
                    "status": job.status.value,
                    "iteration": job.iteration,
                    "iterations": job.iterations,
                    "error": job.error,
                    "cannot_fix_reason": job.cannot_fix_reason,
                },
            )
        return job

    async def _loop(self, job: BuildJob, cancel_token: CancellationToken | None) -> None:
        max_iterations = min(job.max_iterations, self._settings.max_iterations)
        assembler = ContextAssembler(job.source_root)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        analysis = await self._analyze(job, cancel_token)
        await self._verify_structure(job, assembler, analysis, cancel_token)
        failure = await self._attempt(job, 0, max_iterations)

        for iteration in range(1, max_iterations):
            if failure is None:
                return
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            step = await self._fix(job, iteration, assembler, failure, cancel_token)
            if step is _FixStep.STOP:
                return
            if step is _FixStep.SKIP:
                await self._pause(iteration, max_iterations)
                continue
            failure = await self._attempt(job, iteration, max_iterations)

        if failure is None:
            return
        exhausted = ExhaustedRetries(EXHAUSTED_MESSAGE)
        job.error = exhausted.message
        job.error_code = exhausted.code
        job.transition(BuildStatus.EXHAUSTED)

    async def _attempt(
        self, job: BuildJob, iteration: int, max_iterations: int
    ) -> _Failure | None:
        """One sandbox run plus its post-check; ``None`` means the job succeeded."""

        result = await self._build(job, iteration)
        scan = await asyncio.to_thread(artifacts.scan, job.output_root)
        error = check_run(result, scan)
        if error is None:
            self._record(
                job,
                Phase.BUILDING,
                iteration,
                PhaseOutcome.SUCCESS,
                {"exit_code": result.exit_code, "binaries": len(scan.binaries)},
            )
            job.error = None
            job.error_code = None
            job.compilation_errors = ()
            job.transition(BuildStatus.SUCCESS)
            return None

        job.error = error.message
        job.error_code = error.code
        job.compilation_errors = tuple(getattr(error, "errors", ()))
        self._record(job, Phase.BUILDING, iteration, PhaseOutcome.FAILED, error.to_dict())
        self._logger.info(
            "build_attempt_failed",
            build_id=job.id,
            iteration=iteration,
            error_code=error.code,
            error_count=len(job.compilation_errors),
        )
        await self._pause(iteration, max_iterations)
        return _Failure(error=error, log=result.combined_log)

    async def _analyze(
        self, job: BuildJob, cancel_token: CancellationToken | None
    ) -> ProjectAnalysis:
        self._enter(job, Phase.ANALYZING, 0)
        try:
            analysis = await asyncio.to_thread(
                analyze, job.source_root, cancel_token=cancel_token
            )
        except (OSError, ValueError, UnicodeError) as exc:
            _stdlib_logger.warning("static analysis failed: %s", exc)
            self._record(job, Phase.ANALYZING, 0, PhaseOutcome.FAILED, {"error": str(exc)})
            return ProjectAnalysis()

        detail = analysis.to_dict()
        detail.pop("files", None)
        detail["file_count"] = len(analysis.files)
        detail["summary"] = analysis.summary()
        self._record(job, Phase.ANALYZING, 0, PhaseOutcome.SUCCESS, detail)
        return analysis

    async def _verify_structure(
        self,
        job: BuildJob,
        assembler: ContextAssembler,
        analysis: ProjectAnalysis,
        cancel_token: CancellationToken | None,
    ) -> None:
        self._enter(job, Phase.VERIFYING, 0)
        detail: dict[str, object] = {}
        try:
            relocated = await asyncio.to_thread(
                relocate_root_program, job.source_root, analysis.program_name
            )
        except OSError as exc:
            _stdlib_logger.warning("root lib.rs relocation failed: %s", exc)
            detail["relocation_error"] = str(exc)
        else:
            if relocated is not None:
                detail["relocated"] = relocated.relative_to(job.source_root).as_posix()

        pack = await asyncio.to_thread(
            assembler.assemble, iteration=0, analysis=analysis, cancel_token=cancel_token
        )
        try:
            advice = await self._advisor.request_structure_fixes(pack)
        except AdvisorError as exc:
            detail["error"] = exc.to_dict()
            self._record(job, Phase.VERIFYING, 0, PhaseOutcome.FAILED, detail)
            self._logger.info("structure_check_failed", build_id=job.id, error=exc.message)
            return

        proposals = [
            item
            for item in advice.fixes
            if PurePosixPath(item.path).suffix not in COMPILED_SOURCE_EXTENSIONS
        ]
        detail["dropped_source_proposals"] = len(advice.fixes) - len(proposals)
        result = await asyncio.to_thread(
            validate,
            proposals,
            0,
            job.source_root,
            policy=self._policy,
            skip_existing_creates=True,
        )
        detail.update(result.to_dict())
        outcome = PhaseOutcome.FIXED if result.applied else PhaseOutcome.NO_FIXES
        self._record(job, Phase.VERIFYING, 0, outcome, detail)
        self._logger.info(
            "structure_checked",
            build_id=job.id,
            applied=len(result.applied),
            rejected=len(result.rejected),
            skipped=len(result.skipped),
        )

    async def _fix(
        self,
        job: BuildJob,
        iteration: int,
        assembler: ContextAssembler,
        failure: _Failure,
        cancel_token: CancellationToken | None,
    ) -> _FixStep:
        self._enter(job, Phase.FIXING, iteration)
        pack = await asyncio.to_thread(
            assembler.assemble,
            iteration=iteration,
            combined_log=failure.log,
            error_message=failure.describe(),
            previous_attempts=tuple(job.fix_attempts),
            cancel_token=cancel_token,
        )
        try:
            advice = await self._advisor.request_fix(pack)
        except AdvisorError as exc:
            self._record(job, Phase.FIXING, iteration, PhaseOutcome.FAILED, exc.to_dict())
            self._logger.info(
                "rebuild_skipped", build_id=job.id, iteration=iteration, error=exc.message
            )
            return _FixStep.SKIP

        if advice.cannot_fix:
            reason = cannot_fix_reason(advice)
            job.cannot_fix_reason = reason
            self._record(
                job, Phase.FIXING, iteration, PhaseOutcome.CANNOT_FIX, {"reason": reason}
            )
            self._logger.info("advisor_declined", build_id=job.id, iteration=iteration)
            job.transition(BuildStatus.CANNOT_FIX)
            return _FixStep.STOP

        result = await asyncio.to_thread(
            validate, advice.fixes, iteration, job.source_root, policy=self._policy
        )
        summary = attempt_summary(advice, result.applied) or "no fixes applied"
        job.fix_attempts.append(
            FixAttemptRecord(iteration=iteration, files=result.applied_paths, summary=summary)
        )
        outcome = PhaseOutcome.FIXED if result.applied else PhaseOutcome.NO_FIXES
        detail = result.to_dict()
        detail["proposed"] = len(advice.fixes)
        self._record(job, Phase.FIXING, iteration, outcome, detail)
        self._logger.info(
            "fixes_validated",
            build_id=job.id,
            iteration=iteration,
            proposed=len(advice.fixes),
            applied=len(result.applied),
            rejected=len(result.rejected),
        )
        return _FixStep.REBUILD

    async def _build(self, job: BuildJob, iteration: int) -> SandboxRunResult:
        self._enter(job, Phase.BUILDING, iteration)
        if job.logs:
            job.append_log("\n")
        job.append_log(f"=== Build attempt {iteration + 1} ===\n")
        try:
            await asyncio.to_thread(_reset_output, job)
            working_subdir = await asyncio.to_thread(locate_project_subdir, job.source_root)
        except (OSError, PathEscapeError) as exc:
            _stdlib_logger.error("sandbox preparation failed: %s", exc)
            message = str(exc) or exc.__class__.__name__
            result = SandboxRunResult(
                exit_code=None,
                combined_log=f"Fatal error: {message}",
                output_root=job.output_root,
                error=message,
            )
            job.append_log(result.combined_log)
            return result

        def sink(text: str) -> None:
            self._emit(
                BuildEventType.LOG_CHUNK,
                job,
                {"iteration": iteration, "text": truncate_for_event(text)},
            )

        result = await self._executor.run(
            job.source_root,
            job.output_root,
            working_subdir,
            self._limits,
            sink,
        )
        job.append_log(result.combined_log)
        return result

    async def _pause(self, iteration: int, max_iterations: int) -> None:
        if iteration < max_iterations - 1 and self._settings.iteration_pause_seconds > 0:
            await self._sleep(self._settings.iteration_pause_seconds)

    def _enter(self, job: BuildJob, phase: Phase, iteration: int) -> None:
        job.enter_phase(phase, iteration)
        self._emit(
            BuildEventType.PHASE_STARTED, job, {"phase": phase.value, "iteration": iteration}
        )

    def _record_interrupted(self, job: BuildJob, exc: BaseException) -> None:
        """Close the phase an internal error interrupted so the history has no gap."""

        if job.phase in (Phase.READY, Phase.COMPLETE):
            return
        last = job.phases[-1] if job.phases else None
        if last is not None and (last.phase, last.iteration) == (job.phase, job.iteration):
            return
        self._record(
            job,
            job.phase,
            job.iteration,
            PhaseOutcome.FAILED,
            {"code": "internal", "message": f"Internal error: {exc}"},
        )

    def _record(
        self,
        job: BuildJob,
        phase: Phase,
        iteration: int,
        outcome: PhaseOutcome,
        detail: Mapping[str, object],
    ) -> None:
        record = PhaseRecord(phase=phase, iteration=iteration, outcome=outcome, detail=detail)
        job.record_phase(record)
        self._emit(BuildEventType.PHASE_RECORDED, job, record.to_dict())

    def _emit(
        self, event_type: BuildEventType, job: BuildJob, payload: Mapping[str, object]
    ) -> None:
        if self._event_bus is None:
            return
        _, errors = self._event_bus.emit(event_type, job.id, payload)
        for error in errors:
            _stdlib_logger.warning(
                "event subscriber failed",
                extra={"event_type": event_type.value, "target": error.target},
            )


def _reset_output(job: BuildJob) -> None:
    stale = job.output_root / TARGET_DIR
    if stale.exists() or stale.is_symlink():
        safe_delete(stale, job.output_root)


__all__ = [
    "EXHAUSTED_MESSAGE",
    "AdvisorProtocol",
    "BuildOrchestrator",
    "OrchestratorSettings",
]
