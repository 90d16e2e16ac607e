"""State-machine tests for the build orchestrator with a scripted sandbox and advisor."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest
from conftest import CARGO_TOML, FakeDockerClient, ScriptedRun, advice, success_artifacts

from compile_orchestrator.control_plane import (
    EXHAUSTED_MESSAGE,
    BuildOrchestrator,
    OrchestratorSettings,
)
from compile_orchestrator.domain.errors import AdvisorError
from compile_orchestrator.domain.events import BuildEventType
from compile_orchestrator.domain.ids import generate_build_id
from compile_orchestrator.domain.models import BuildJob, BuildStatus, Phase, PhaseOutcome
from compile_orchestrator.observability.events import EventBus
from compile_orchestrator.sandbox.sandbox_manager import SandboxExecutor
from compile_orchestrator.synthesis_plane.advisor import Advice, parse_advice
from compile_orchestrator.synthesis_plane.context_assembler import ContextPack
from compile_orchestrator.verification_plane.build_checker import NO_ARTIFACTS_MESSAGE

FAILED_LOG = (
    "error[E0432]: unresolved import `anchor_spl`\n"
    " --> programs/demo/src/lib.rs:2:5\n"
    "error: could not compile `demo`; aborting due to 1 previous error\n"
)
FIXED_MANIFEST = CARGO_TOML + 'solana-program = "1.18"\n'
MANIFEST_FIX = {
    "action": "update",
    "path": "programs/demo/Cargo.toml",
    "content": FIXED_MANIFEST,
    "reason": "declare solana-program",
}


class _ScriptedAdvisor:
    """Replays advice objects; an ``Exception`` entry is raised instead."""

    def __init__(
        self,
        fixes: Sequence[Advice | Exception] = (),
        *,
        structure: Advice | Exception | None = None,
    ) -> None:
        self._fixes = list(fixes)
        self._structure = structure if structure is not None else parse_advice(advice())
        self.structure_packs: list[ContextPack] = []
        self.fix_packs: list[ContextPack] = []

    async def request_structure_fixes(self, pack: ContextPack) -> Advice:
        self.structure_packs.append(pack)
        if isinstance(self._structure, Exception):
            raise self._structure
        return self._structure

    async def request_fix(self, pack: ContextPack) -> Advice:
        self.fix_packs.append(pack)
        reply = self._fixes.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _failed_run() -> ScriptedRun:
    return ScriptedRun(exit_code=1, log=FAILED_LOG)


def _job(anchor_project: Path, tmp_path: Path, max_iterations: int = 3) -> BuildJob:
    return BuildJob(
        id=generate_build_id(),
        principal="alice",
        source_root=anchor_project,
        output_root=tmp_path / "output",
        max_iterations=max_iterations,
    )


def _orchestrator(
    client: FakeDockerClient,
    advisor: _ScriptedAdvisor,
    *,
    event_bus: EventBus | None = None,
    sleep: _Sleeps | None = None,
    pause: float = 0.0,
) -> BuildOrchestrator:
    return BuildOrchestrator(
        executor=SandboxExecutor(image="anchor-builder:test", client=client),
        advisor=advisor,
        settings=OrchestratorSettings(max_iterations=8, iteration_pause_seconds=pause),
        event_bus=event_bus,
        sleep=sleep or _Sleeps(),
    )


def _phases(job: BuildJob) -> list[tuple[Phase, int, PhaseOutcome]]:
    return [(record.phase, record.iteration, record.outcome) for record in job.phases]


async def test_clean_project_builds_on_first_attempt(anchor_project: Path, tmp_path: Path) -> None:
    client = FakeDockerClient([ScriptedRun(artifacts=success_artifacts())])
    advisor = _ScriptedAdvisor()
    job = _job(anchor_project, tmp_path)

    await _orchestrator(client, advisor).run(job)

    assert job.status is BuildStatus.SUCCESS
    assert job.phase is Phase.COMPLETE
    assert job.iteration == 0
    assert job.to_status()["iterations"] == 1
    assert job.error is None
    assert _phases(job) == [
        (Phase.ANALYZING, 0, PhaseOutcome.SUCCESS),
        (Phase.VERIFYING, 0, PhaseOutcome.NO_FIXES),
        (Phase.BUILDING, 0, PhaseOutcome.SUCCESS),
    ]
    assert job.logs.startswith("=== Build attempt 1 ===\n")
    assert advisor.fix_packs == []
    assert advisor.structure_packs[0].analysis_summary == (
        'Found program "demo" with 2 dependencies'
    )


async def test_failed_build_is_repaired_and_rebuilt(anchor_project: Path, tmp_path: Path) -> None:
    client = FakeDockerClient([_failed_run(), ScriptedRun(artifacts=success_artifacts())])
    advisor = _ScriptedAdvisor([parse_advice(advice([MANIFEST_FIX], analysis="missing crate"))])
    job = _job(anchor_project, tmp_path)

    await _orchestrator(client, advisor).run(job)

    assert job.status is BuildStatus.SUCCESS
    assert job.iteration == 1
    assert job.to_status()["iterations"] == 2
    assert [(item.iteration, item.files) for item in job.fix_attempts] == [
        (1, ("programs/demo/Cargo.toml",))
    ]
    assert job.fix_attempts[0].summary.startswith("missing crate | Reasoning:")
    assert "=== Build attempt 1 ===" in job.logs
    assert "\n=== Build attempt 2 ===\n" in job.logs
    assert "unresolved import" in job.logs

    pack = advisor.fix_packs[0]
    assert pack.iteration == 1
    assert "Build failed with exit code 1" in pack.error_message
    assert "error[E0432]" in pack.error_message
    rebuilt = client.containers.created[1].source_files()
    assert rebuilt["programs/demo/Cargo.toml"] == FIXED_MANIFEST


async def test_cannot_fix_stops_immediately(anchor_project: Path, tmp_path: Path) -> None:
    client = FakeDockerClient([_failed_run()])
    verdict = parse_advice(advice(cannot_fix=True, analysis="requires removing the instruction"))
    job = _job(anchor_project, tmp_path)

    await _orchestrator(client, _ScriptedAdvisor([verdict])).run(job)

    assert job.status is BuildStatus.CANNOT_FIX
    assert job.cannot_fix_reason == "requires removing the instruction"
    assert len(client.containers.created) == 1
    assert _phases(job)[-1] == (Phase.FIXING, 1, PhaseOutcome.CANNOT_FIX)
    assert job.fix_attempts == []


async def test_iteration_cap_exhausts(anchor_project: Path, tmp_path: Path) -> None:
    client = FakeDockerClient([_failed_run()])
    no_fix = parse_advice(advice())
    advisor = _ScriptedAdvisor([no_fix, no_fix])
    job = _job(anchor_project, tmp_path, max_iterations=3)

    await _orchestrator(client, advisor).run(job)

    assert job.status is BuildStatus.EXHAUSTED
    assert job.error == EXHAUSTED_MESSAGE
    assert job.iterations == 3
    assert job.error_code == "exhausted"
    assert len(client.containers.created) == 3
    assert [item.summary for item in job.fix_attempts] == ["analysis | Reasoning: reasoning"] * 2
    assert job.logs.count("=== Build attempt") == 3
    assert job.compilation_errors[0].startswith("error[E0432]")


async def test_advisor_failure_skips_the_rebuild(anchor_project: Path, tmp_path: Path) -> None:
    client = FakeDockerClient([_failed_run(), ScriptedRun(artifacts=success_artifacts())])
    advisor = _ScriptedAdvisor(
        [AdvisorError("Advisor request failed: overloaded"), parse_advice(advice([MANIFEST_FIX]))]
    )
    job = _job(anchor_project, tmp_path, max_iterations=3)

    await _orchestrator(client, advisor).run(job)

    assert job.status is BuildStatus.SUCCESS
    assert job.iteration == 2
    assert len(client.containers.created) == 2
    assert (Phase.FIXING, 1, PhaseOutcome.FAILED) in _phases(job)
    assert [item.iteration for item in job.fix_attempts] == [2]


async def test_structure_phase_failures_do_not_stop_the_build(
    anchor_project: Path, tmp_path: Path
) -> None:
    client = FakeDockerClient([ScriptedRun(artifacts=success_artifacts())])
    advisor = _ScriptedAdvisor(structure=AdvisorError("Advisor request failed: down"))
    job = _job(anchor_project, tmp_path)

    await _orchestrator(client, advisor).run(job)

    assert job.status is BuildStatus.SUCCESS
    assert (Phase.VERIFYING, 0, PhaseOutcome.FAILED) in _phases(job)


async def test_structure_phase_applies_config_only(anchor_project: Path, tmp_path: Path) -> None:
    client = FakeDockerClient([ScriptedRun(artifacts=success_artifacts())])
    structure = parse_advice(
        advice(
            [
                {"action": "create", "path": "programs/demo/Xargo.toml", "content": "[x]\n"},
                {"action": "update", "path": "programs/demo/src/lib.rs", "content": "// gone\n"},
                {"action": "create", "path": "Anchor.toml", "content": "[replaced]\n"},
            ],
            cannot_fix=True,
        )
    )
    job = _job(anchor_project, tmp_path)

    await _orchestrator(client, _ScriptedAdvisor(structure=structure)).run(job)

    assert job.status is BuildStatus.SUCCESS
    verifying = job.phases[1]
    assert verifying.outcome is PhaseOutcome.FIXED
    assert verifying.detail["dropped_source_proposals"] == 1
    assert verifying.detail["skipped"] == ["Anchor.toml"]
    assert (anchor_project / "programs/demo/Xargo.toml").read_text(encoding="utf-8") == "[x]\n"
    assert "declare_id!" in (anchor_project / "programs/demo/src/lib.rs").read_text(
        encoding="utf-8"
    )
    assert "[replaced]" not in (anchor_project / "Anchor.toml").read_text(encoding="utf-8")


async def test_zero_exit_without_binary_is_a_failure(anchor_project: Path, tmp_path: Path) -> None:
    stale = tmp_path / "output" / "target" / "deploy" / "demo.so"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"stale")
    client = FakeDockerClient([ScriptedRun(exit_code=0)])
    job = _job(anchor_project, tmp_path, max_iterations=1)

    await _orchestrator(client, _ScriptedAdvisor()).run(job)

    assert job.status is BuildStatus.EXHAUSTED
    building = job.phases[-1]
    assert (building.phase, building.outcome) == (Phase.BUILDING, PhaseOutcome.FAILED)
    assert building.detail["message"] == NO_ARTIFACTS_MESSAGE
    assert not stale.exists()


async def test_pause_between_iterations_but_not_after_the_last(
    anchor_project: Path, tmp_path: Path
) -> None:
    client = FakeDockerClient([_failed_run()])
    sleeps = _Sleeps()
    no_fix = parse_advice(advice())
    job = _job(anchor_project, tmp_path, max_iterations=2)

    await _orchestrator(client, _ScriptedAdvisor([no_fix]), sleep=sleeps, pause=5.0).run(job)

    assert job.status is BuildStatus.EXHAUSTED
    assert sleeps.calls == [5.0]


async def test_unexpected_errors_end_in_failed(anchor_project: Path, tmp_path: Path) -> None:
    client = FakeDockerClient([_failed_run()])
    job = _job(anchor_project, tmp_path)

    await _orchestrator(client, _ScriptedAdvisor([KeyError("surprise")])).run(job)

    assert job.status is BuildStatus.FAILED
    assert job.error_code == "internal"
    assert job.error is not None and job.error.startswith("Internal error:")
    interrupted = job.phases[-1]
    assert (interrupted.phase, interrupted.iteration, interrupted.outcome) == (
        Phase.FIXING,
        1,
        PhaseOutcome.FAILED,
    )
    assert interrupted.detail["code"] == "internal"


async def test_oversized_analysis_does_not_break_the_loop(
    anchor_project: Path, tmp_path: Path
) -> None:
    client = FakeDockerClient([_failed_run(), ScriptedRun(artifacts=success_artifacts())])
    verbose = parse_advice(advice([MANIFEST_FIX], analysis="x" * 9000))
    job = _job(anchor_project, tmp_path)

    await _orchestrator(client, _ScriptedAdvisor([verbose])).run(job)

    assert job.status is BuildStatus.SUCCESS
    assert len(client.containers.created) == 2
    (attempt,) = job.fix_attempts
    assert len(attempt.summary) < 2000
    assert attempt.summary.endswith("| Reasoning: reasoning")


async def test_unusable_output_root_fails_the_attempt_not_the_job(
    anchor_project: Path, tmp_path: Path
) -> None:
    blocked = tmp_path / "output"
    blocked.write_text("not a directory", encoding="utf-8")
    client = FakeDockerClient([ScriptedRun(artifacts=success_artifacts())])
    no_fix = parse_advice(advice())
    advisor = _ScriptedAdvisor([no_fix])
    job = _job(anchor_project, tmp_path, max_iterations=2)

    await _orchestrator(client, advisor).run(job)

    assert job.status is BuildStatus.EXHAUSTED
    assert client.containers.created == []
    building = [record for record in job.phases if record.phase is Phase.BUILDING]
    assert [(record.iteration, record.outcome) for record in building] == [
        (0, PhaseOutcome.FAILED),
        (1, PhaseOutcome.FAILED),
    ]
    assert all(record.detail["code"] == "sandbox" for record in building)
    assert "Build failed" not in advisor.fix_packs[0].error_message
    assert "Fatal error:" in job.logs


async def test_progress_events_are_published(anchor_project: Path, tmp_path: Path) -> None:
    bus = EventBus()
    client = FakeDockerClient([ScriptedRun(artifacts=success_artifacts())])
    job = _job(anchor_project, tmp_path)

    await _orchestrator(client, _ScriptedAdvisor(), event_bus=bus).run(job)

    types = [event.event_type for event in bus.replay(build_id=job.id)]
    assert types[0] is BuildEventType.BUILD_STARTED
    assert types[-1] is BuildEventType.BUILD_COMPLETED
    assert BuildEventType.LOG_CHUNK in types
    phases = [
        event.payload["phase"]
        for event in bus.replay(build_id=job.id, event_type=BuildEventType.PHASE_STARTED)
    ]
    assert phases == ["analyzing", "verifying", "building"]
    completed = bus.replay(build_id=job.id, event_type=BuildEventType.BUILD_COMPLETED)[0]
    assert completed.payload["status"] == "success"


def test_settings_validation() -> None:
    with pytest.raises(ValueError):
        OrchestratorSettings(max_iterations=0)
    with pytest.raises(ValueError):
        OrchestratorSettings(iteration_pause_seconds=-1)
    settings = OrchestratorSettings.from_config(
        {"max_iterations": 4, "iteration_pause_seconds": 0.5}
    )
    assert settings == OrchestratorSettings(max_iterations=4, iteration_pause_seconds=0.5)
