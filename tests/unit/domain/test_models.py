"""Unit tests for build job state transitions and lenient fix proposals."""

from __future__ import annotations

from pathlib import Path

import pytest

from compile_orchestrator.domain.ids import generate_build_id
from compile_orchestrator.domain.models import (
    BuildJob,
    BuildStatus,
    FixAction,
    FixProposal,
    InvalidTransitionError,
    Phase,
    PhaseOutcome,
    PhaseRecord,
)


def _job(tmp_path: Path, *, max_iterations: int = 3) -> BuildJob:
    return BuildJob(
        id=generate_build_id(),
        principal="alice",
        source_root=tmp_path / "source",
        output_root=tmp_path / "output",
        max_iterations=max_iterations,
    )


def test_new_job_is_ready_and_not_terminal(tmp_path: Path) -> None:
    job = _job(tmp_path)

    assert job.status is BuildStatus.READY
    assert job.phase is Phase.READY
    assert not job.is_terminal


@pytest.mark.parametrize(
    "terminal",
    [BuildStatus.SUCCESS, BuildStatus.CANNOT_FIX, BuildStatus.EXHAUSTED, BuildStatus.FAILED],
)
def test_running_job_reaches_each_terminal_status(tmp_path: Path, terminal: BuildStatus) -> None:
    job = _job(tmp_path)
    job.transition(BuildStatus.RUNNING)
    job.transition(terminal)

    assert job.is_terminal
    assert job.phase is Phase.COMPLETE
    assert job.completed_at is not None


def test_terminal_status_is_final(tmp_path: Path) -> None:
    job = _job(tmp_path)
    job.transition(BuildStatus.RUNNING)
    job.transition(BuildStatus.SUCCESS)

    with pytest.raises(InvalidTransitionError):
        job.transition(BuildStatus.RUNNING)
    with pytest.raises(InvalidTransitionError):
        job.transition(BuildStatus.EXHAUSTED)


def test_ready_cannot_jump_to_success(tmp_path: Path) -> None:
    job = _job(tmp_path)

    with pytest.raises(InvalidTransitionError):
        job.transition(BuildStatus.SUCCESS)


def test_enter_phase_enforces_monotonic_bounded_iterations(tmp_path: Path) -> None:
    job = _job(tmp_path, max_iterations=2)
    job.enter_phase(Phase.BUILDING, 0)
    job.enter_phase(Phase.FIXING, 1)

    with pytest.raises(InvalidTransitionError):
        job.enter_phase(Phase.BUILDING, 0)
    with pytest.raises(InvalidTransitionError):
        job.enter_phase(Phase.BUILDING, 2)


def test_phase_history_is_append_only_and_serialized(tmp_path: Path) -> None:
    job = _job(tmp_path)
    job.record_phase(PhaseRecord(phase=Phase.BUILDING, iteration=0, outcome=PhaseOutcome.FAILED))
    job.record_phase(
        PhaseRecord(
            phase="fixing", iteration=1, outcome="fixed", detail={"files": ["Cargo.toml"]}
        )
    )

    payload = job.to_status()
    phases = payload["phases"]
    assert isinstance(phases, list)
    assert [item["phase"] for item in phases] == ["building", "fixing"]
    assert phases[1]["detail"] == {"files": ["Cargo.toml"]}


def test_to_status_includes_failure_fields_only_when_set(tmp_path: Path) -> None:
    job = _job(tmp_path)
    assert "error" not in job.to_status()

    job.error = "Compilation failed"
    job.error_code = "compilation"
    job.compilation_errors = ("error[E0425]: cannot find value `x`",)
    payload = job.to_status()

    assert payload["error"] == "Compilation failed"
    assert payload["error_code"] == "compilation"
    assert payload["errors"] == ["error[E0425]: cannot find value `x`"]


def test_append_log_accumulates(tmp_path: Path) -> None:
    job = _job(tmp_path)
    job.append_log("one\n")
    job.append_log("")
    job.append_log("two\n")

    assert job.logs == "one\ntwo\n"


def test_job_rejects_invalid_id(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        BuildJob(
            id="not-a-build",
            principal="alice",
            source_root=tmp_path,
            output_root=tmp_path,
            max_iterations=1,
        )


def test_fix_proposal_is_lenient() -> None:
    proposal = FixProposal.from_mapping(
        {"action": " Create ", "path": "  Anchor.toml ", "content": 42, "reason": None}
    )

    assert proposal.action is FixAction.CREATE
    assert proposal.path == "Anchor.toml"
    assert proposal.content is None
    assert proposal.reason == ""


def test_fix_proposal_keeps_unknown_action() -> None:
    proposal = FixProposal.from_mapping({"action": " Rename ", "path": "Cargo.toml"})

    assert proposal.action == "rename"
    assert proposal.action_name == "rename"
    assert FixProposal.from_mapping({"path": "Cargo.toml"}).action is FixAction.UPDATE
    assert FixProposal(action=7, path="Cargo.toml").action_name == ""  # type: ignore[arg-type]
