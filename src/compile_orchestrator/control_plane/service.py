"""
compile-orchestrator — build service facade

File: src/compile_orchestrator/control_plane/service.py
Last updated: 2026-10-17

Purpose
- Caller-facing entry point: admit, run, report, and deliver one build per principal.

What should be included in this file
- Input validation, single-flight admission, job registration, orchestration, completion
  payload assembly, one-time secret delivery, artifact retrieval, rebuilds, and editing of
  a finished build's project files.

Functional requirements
- Secrets are delivered exactly once: to ``on_complete`` when given, otherwise in the
  value returned by ``submit``. Credential files are purged right after, even when
  delivery raised.
- Credential files are never retrievable through ``artifact_path``.
- The concurrency admission is released even when the build raises.
- Project file access goes through ``resolve_within``; edits are refused while the build
  is still running.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Any

from compile_orchestrator.control_plane.concurrency_guard import ConcurrencyGuard
from compile_orchestrator.control_plane.orchestrator import (
    AdvisorProtocol,
    BuildOrchestrator,
    OrchestratorSettings,
)
from compile_orchestrator.constants import SKIPPED_DIR_NAMES
from compile_orchestrator.control_plane.registry import BuildRegistry
from compile_orchestrator.domain.errors import ValidationError
from compile_orchestrator.domain.ids import generate_build_id
from compile_orchestrator.domain.models import ArtifactCategory, BuildJob, BuildStatus
from compile_orchestrator.integration_plane import artifacts
from compile_orchestrator.integration_plane.workspace_manager import WorkspaceManager
from compile_orchestrator.observability.events import EventBus
from compile_orchestrator.sandbox.sandbox_manager import ResourceLimits, SandboxExecutor
from compile_orchestrator.security import secrets
from compile_orchestrator.synthesis_plane.advisor import RepairAdvisor
from compile_orchestrator.utils.fs import (
    PathEscapeError,
    atomic_write,
    resolve_within,
    safe_delete,
    walk_files,
)
from compile_orchestrator.verification_plane.fix_safety import FixSafetyPolicy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from compile_orchestrator.domain.models import JSONValue

logger = logging.getLogger(__name__)


class BuildService:
    """Wires the planes together from one validated configuration mapping."""

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        executor: SandboxExecutor | None = None,
        advisor: AdvisorProtocol | None = None,
        event_bus: EventBus | None = None,
        workspace_manager: WorkspaceManager | None = None,
        registry: BuildRegistry | None = None,
        guard: ConcurrencyGuard | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        sandbox_config = config["sandbox"]
        retention_config = config["retention"]

        self._executor = executor or SandboxExecutor(image=str(sandbox_config["image"]))
        self._advisor = advisor or RepairAdvisor.from_config(config["advisor"], sleep=sleep)
        self._event_bus = event_bus or EventBus()
        self._workspaces = workspace_manager or WorkspaceManager(
            config["paths"]["workspace_root"]
        )
        self._registry = registry or BuildRegistry(
            retention_seconds=float(retention_config["retention_seconds"]),
            sweep_interval_seconds=float(retention_config["sweep_interval_seconds"]),
            workspace_manager=self._workspaces,
        )
        self._guard = guard or ConcurrencyGuard()
        self._orchestrator = BuildOrchestrator(
            executor=self._executor,
            advisor=self._advisor,
            limits=ResourceLimits.from_config(sandbox_config),
            safety_policy=FixSafetyPolicy.from_config(config["safety"]),
            settings=OrchestratorSettings.from_config(config["build"]),
            event_bus=self._event_bus,
            sleep=sleep,
        )
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def registry(self) -> BuildRegistry:
        return self._registry

    @property
    def executor(self) -> SandboxExecutor:
        return self._executor

    async def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._registry.sweep_forever())

    async def stop(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper

    async def submit(
        self,
        principal: str,
        source_root: str | Path,
        *,
        on_complete: Callable[[dict[str, JSONValue]], object] | None = None,
    ) -> dict[str, JSONValue]:
        """Run one build for ``principal`` and return its final payload.

        Raises :class:`ValidationError` for bad input and
        :class:`~compile_orchestrator.control_plane.concurrency_guard.BuildConflictError`
        when the principal already has a build in flight.
        """

        if not isinstance(principal, str) or not principal.strip():
            raise ValidationError("principal must be a non-empty string")
        source = Path(source_root).expanduser()
        if not source.is_dir():
            raise ValidationError(f"source root is not a directory: {source}")
        return await self._run(principal.strip(), source, on_complete)

    async def rebuild(
        self,
        build_id: str,
        *,
        on_complete: Callable[[dict[str, JSONValue]], object] | None = None,
    ) -> dict[str, JSONValue]:
        """Build a finished job's project again, edits and applied fixes included.

        The new build gets its own id and workspace seeded from the previous job's
        source tree; the previous job's record is left as it was.
        """

        previous = self._require(build_id)
        if not previous.is_terminal:
            raise ValidationError(f"build is still running: {build_id}")
        if not previous.source_root.is_dir():
            raise ValidationError(f"project files are no longer available: {build_id}")
        logger.info(
            "rebuild requested",
            extra={"build_id": build_id, "principal": previous.principal},
        )
        return await self._run(previous.principal, previous.source_root, on_complete)

    def list_builds(self, principal: str | None = None) -> list[dict[str, JSONValue]]:
        """Status payloads of the retained builds, oldest first."""

        jobs = sorted(self._registry.jobs(), key=lambda job: (job.created_at, job.id))
        return [
            job.to_status() for job in jobs if principal is None or job.principal == principal
        ]

    def list_files(self, build_id: str) -> list[dict[str, JSONValue]]:
        job = self._require(build_id)
        root = job.source_root
        return [
            {"path": path.relative_to(root).as_posix(), "size": path.stat().st_size}
            for path in walk_files(root, skip_dirs=SKIPPED_DIR_NAMES)
        ]

    def read_file(self, build_id: str, path: str) -> str:
        target = self._project_path(self._require(build_id), path)
        if target.is_dir():
            raise ValidationError(f"path is a directory, not a file: {path!r}")
        if not target.is_file():
            raise FileNotFoundError(f"file not found: {path}")
        return target.read_text(encoding="utf-8")

    def write_file(self, build_id: str, path: str, content: str) -> None:
        if not isinstance(content, str):
            raise ValidationError("content must be a string")
        job = self._require_editable(build_id)
        target = self._project_path(job, path)
        if target.is_dir():
            raise ValidationError(f"path is a directory, not a file: {path!r}")
        target.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(target, content)
        logger.info("project file written", extra={"build_id": build_id, "path": path})

    def delete_file(self, build_id: str, path: str) -> None:
        """Remove a file or a whole directory from the project."""

        job = self._require_editable(build_id)
        target = self._project_path(job, path)
        if not target.exists() and not target.is_symlink():
            raise FileNotFoundError(f"path not found: {path}")
        safe_delete(target, job.source_root)
        logger.info("project path deleted", extra={"build_id": build_id, "path": path})

    async def _run(
        self,
        principal: str,
        source: Path,
        on_complete: Callable[[dict[str, JSONValue]], object] | None,
    ) -> dict[str, JSONValue]:
        build_id = generate_build_id()
        with self._guard.hold(principal, build_id):
            workspace = await asyncio.to_thread(self._workspaces.create, build_id, source)
            job = BuildJob(
                id=build_id,
                principal=principal,
                source_root=workspace.source_dir,
                output_root=workspace.output_dir,
                max_iterations=self._orchestrator.settings.max_iterations,
            )
            self._registry.add(job)
            logger.info(
                "build admitted", extra={"build_id": build_id, "principal": job.principal}
            )
            await self._orchestrator.run(job)
            return await self._finish(job, on_complete)

    def status(self, build_id: str) -> dict[str, JSONValue]:
        job = self._require(build_id)
        payload = job.to_status()
        if job.status is BuildStatus.SUCCESS:
            payload["artifacts"] = artifacts.scan(job.output_root).to_payload()
        return payload

    def artifact_path(self, build_id: str, category: ArtifactCategory | str, name: str) -> Path:
        """Resolve a retrieval handle to a file inside the job's output directory."""

        job = self._require(build_id)
        try:
            kind = ArtifactCategory(category)
        except ValueError as exc:
            raise ValidationError(f"unknown artifact category: {category!r}") from exc
        if kind is ArtifactCategory.CREDENTIAL:
            raise ValidationError("credential files are not retrievable")
        known = {item.name for item in artifacts.scan(job.output_root).by_category(kind)}
        if name not in known:
            raise FileNotFoundError(f"artifact not found: {kind.value}/{name}")
        try:
            return resolve_within(job.output_root, artifacts.handle_for(kind, name).as_posix())
        except (PathEscapeError, FileNotFoundError) as exc:
            raise ValidationError(f"invalid artifact name: {name!r}") from exc

    async def _finish(
        self,
        job: BuildJob,
        on_complete: Callable[[dict[str, JSONValue]], object] | None,
    ) -> dict[str, JSONValue]:
        payload = job.to_status()
        if job.status is not BuildStatus.SUCCESS:
            return payload

        scan = await asyncio.to_thread(artifacts.scan, job.output_root)
        payload["artifacts"] = scan.to_payload()
        records = await asyncio.to_thread(secrets.extract, job.output_root)
        if not records:
            if on_complete is not None:
                await _deliver(on_complete, payload)
            return payload

        completion = dict(payload)
        completion["secrets"] = [record.to_payload() for record in records]
        try:
            if on_complete is not None:
                await _deliver(on_complete, completion)
                return payload
            return completion
        finally:
            removed = await asyncio.to_thread(secrets.purge, job.output_root, records)
            logger.info(
                "credentials purged",
                extra={"build_id": job.id, "removed": len(removed), "expected": len(records)},
            )

    def _require(self, build_id: str) -> BuildJob:
        job = self._registry.get(build_id)
        if job is None:
            raise ValidationError(f"unknown build id: {build_id}")
        return job

    def _require_editable(self, build_id: str) -> BuildJob:
        job = self._require(build_id)
        if not job.is_terminal:
            raise ValidationError(f"build is still running: {build_id}")
        return job

    @staticmethod
    def _project_path(job: BuildJob, path: str) -> Path:
        try:
            return resolve_within(job.source_root, path)
        except (PathEscapeError, FileNotFoundError) as exc:
            raise ValidationError(f"invalid project path: {path!r}") from exc


async def _deliver(
    callback: Callable[[dict[str, JSONValue]], object], payload: dict[str, JSONValue]
) -> None:
    result = callback(payload)
    if inspect.isawaitable(result):
        await result


__all__ = ["BuildService"]
