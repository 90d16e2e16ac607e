from __future__ import annotations

import threading
from datetime import UTC, datetime

import pytest

from compile_orchestrator.control_plane import (
    AdmissionToken,
    BuildConflict,
    BuildConflictError,
    ConcurrencyGuard,
)

FIXED_NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


@pytest.fixture
def guard() -> ConcurrencyGuard:
    return ConcurrencyGuard(now_fn=lambda: FIXED_NOW)


def test_second_admission_for_same_principal_conflicts(guard: ConcurrencyGuard) -> None:
    first = guard.admit("alice", "build-1")
    second = guard.admit("alice", "build-2")

    assert isinstance(first, AdmissionToken)
    assert second == BuildConflict(
        principal="alice", active_build_id="build-1", started_at=FIXED_NOW
    )
    assert second.to_dict()["started_at"] == "2026-10-17T12:00:00Z"


def test_principals_are_independent(guard: ConcurrencyGuard) -> None:
    assert isinstance(guard.admit("alice", "build-1"), AdmissionToken)
    assert isinstance(guard.admit("bob", "build-2"), AdmissionToken)
    assert guard.active_count() == 2


def test_release_frees_the_slot(guard: ConcurrencyGuard) -> None:
    token = guard.admit("alice", "build-1")
    assert isinstance(token, AdmissionToken)

    assert guard.release(token) is True
    assert guard.active("alice") is None
    assert isinstance(guard.admit("alice", "build-2"), AdmissionToken)


def test_stale_token_does_not_release_newer_build(guard: ConcurrencyGuard) -> None:
    old = guard.admit("alice", "build-1")
    assert isinstance(old, AdmissionToken)
    guard.release(old)
    guard.admit("alice", "build-2")

    assert guard.release(old) is False
    active = guard.active("alice")
    assert active is not None and active.build_id == "build-2"


def test_hold_releases_when_the_block_raises(guard: ConcurrencyGuard) -> None:
    with pytest.raises(RuntimeError), guard.hold("alice", "build-1"):
        raise RuntimeError("boom")

    assert guard.active_count() == 0


def test_hold_raises_conflict(guard: ConcurrencyGuard) -> None:
    with guard.hold("alice", "build-1"):
        with pytest.raises(BuildConflictError) as excinfo, guard.hold("alice", "build-2"):
            pass
        assert excinfo.value.conflict.active_build_id == "build-1"
        assert excinfo.value.message == "A build is already in progress: build-1"
    assert guard.active_count() == 0


def test_concurrent_admissions_admit_exactly_one(guard: ConcurrencyGuard) -> None:
    results: list[object] = []
    barrier = threading.Barrier(8)

    def attempt(index: int) -> None:
        barrier.wait()
        results.append(guard.admit("alice", f"build-{index}"))

    threads = [threading.Thread(target=attempt, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    admitted = [item for item in results if isinstance(item, AdmissionToken)]
    assert len(admitted) == 1
    assert guard.active_count() == 1
