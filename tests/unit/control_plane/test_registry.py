from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from compile_orchestrator.control_plane import BuildRegistry
from compile_orchestrator.domain.ids import generate_build_id
from compile_orchestrator.domain.models import BuildJob
from compile_orchestrator.integration_plane.workspace_manager import WorkspaceManager

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


def _job(workspace: WorkspaceManager, source: Path, *, age: timedelta) -> BuildJob:
    build_id = generate_build_id()
    created = workspace.create(build_id, source)
    return BuildJob(
        id=build_id,
        principal="alice",
        source_root=created.source_dir,
        output_root=created.output_dir,
        max_iterations=3,
        updated_at=NOW - age,
    )


def test_add_get_and_duplicate_rejection(tmp_path: Path, anchor_project: Path) -> None:
    workspace = WorkspaceManager(tmp_path / "work")
    registry = BuildRegistry(workspace_manager=workspace)
    job = _job(workspace, anchor_project, age=timedelta(0))

    registry.add(job)

    assert registry.get(job.id) is job
    assert job.id in registry
    assert len(registry) == 1
    with pytest.raises(ValueError, match="already registered"):
        registry.add(job)


def test_sweep_evicts_expired_jobs_and_their_workspaces(
    tmp_path: Path, anchor_project: Path
) -> None:
    workspace = WorkspaceManager(tmp_path / "work")
    registry = BuildRegistry(
        retention_seconds=3600, workspace_manager=workspace, now_fn=lambda: NOW
    )
    stale = _job(workspace, anchor_project, age=timedelta(hours=2))
    fresh = _job(workspace, anchor_project, age=timedelta(minutes=5))
    registry.add(stale)
    registry.add(fresh)

    evicted = registry.sweep()

    assert evicted == [stale.id]
    assert registry.jobs() == (fresh,)
    assert not (workspace.workspace_root / stale.id).exists()
    assert (workspace.workspace_root / fresh.id).is_dir()


def test_sweep_without_workspace_manager(tmp_path: Path) -> None:
    registry = BuildRegistry(retention_seconds=60)
    job = BuildJob(
        id=generate_build_id(),
        principal="alice",
        source_root=tmp_path,
        output_root=tmp_path,
        max_iterations=1,
        updated_at=NOW,
    )
    registry.add(job)

    assert registry.sweep(now=NOW + timedelta(seconds=30)) == []
    assert registry.sweep(now=NOW + timedelta(seconds=61)) == [job.id]
    assert registry.get(job.id) is None


@pytest.mark.parametrize("kwargs", [{"retention_seconds": 0}, {"sweep_interval_seconds": -1}])
def test_invalid_intervals(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        BuildRegistry(**kwargs)
