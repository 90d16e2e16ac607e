"""In-memory build registry with a periodic retention sweep."""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from compile_orchestrator.domain.models import BuildJob
    from compile_orchestrator.integration_plane.workspace_manager import WorkspaceManager

logger = logging.getLogger(__name__)


class BuildRegistry:
    """Thread-safe ``build_id -> BuildJob`` store.

    Jobs are evicted once ``retention_seconds`` have passed since their last update,
    whatever their status; their workspace directories go with them.
    """

    def __init__(
        self,
        *,
        retention_seconds: float = 3600.0,
        sweep_interval_seconds: float = 600.0,
        workspace_manager: WorkspaceManager | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be > 0")
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")
        self._retention = timedelta(seconds=retention_seconds)
        self._sweep_interval_seconds = sweep_interval_seconds
        self._workspace_manager = workspace_manager
        self._now_fn: Callable[[], datetime] = now_fn or (lambda: datetime.now(tz=UTC))
        self._jobs: dict[str, BuildJob] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, build_id: object) -> bool:
        with self._lock:
            return build_id in self._jobs

    def add(self, job: BuildJob) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"build already registered: {job.id}")
            self._jobs[job.id] = job

    def get(self, build_id: str) -> BuildJob | None:
        with self._lock:
            return self._jobs.get(build_id)

    def jobs(self) -> tuple[BuildJob, ...]:
        with self._lock:
            return tuple(self._jobs.values())

    def sweep(self, *, now: datetime | None = None) -> list[str]:
        """Evict expired jobs and return their ids."""

        cutoff = (now or self._now_fn()) - self._retention
        with self._lock:
            expired = [job_id for job_id, job in self._jobs.items() if job.updated_at < cutoff]
            for job_id in expired:
                del self._jobs[job_id]

        for job_id in expired:
            if self._workspace_manager is not None:
                try:
                    self._workspace_manager.remove(job_id)
                except OSError as exc:
                    logger.warning(
                        "workspace removal failed", extra={"build_id": job_id, "error": str(exc)}
                    )
            logger.info("build evicted", extra={"build_id": job_id})
        return expired

    async def sweep_forever(self) -> None:
        """Run :meth:`sweep` every ``sweep_interval_seconds`` until cancelled."""

        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            await asyncio.to_thread(self.sweep)


__all__ = ["BuildRegistry"]
