"""Unit tests for the build event envelope and payload helpers."""

from __future__ import annotations

import pytest

from compile_orchestrator.domain.events import (
    MAX_EVENT_STRING_CHARS,
    BuildEvent,
    BuildEventType,
    redact_sensitive,
    truncate_for_event,
)
from compile_orchestrator.domain.ids import generate_build_id


def test_event_round_trips_through_dict() -> None:
    event = BuildEvent(
        event_type=BuildEventType.PHASE_STARTED,
        build_id=generate_build_id(),
        payload={"phase": "building", "iteration": 0},
    )

    restored = BuildEvent.from_dict(event.to_dict())

    assert restored.event_type is BuildEventType.PHASE_STARTED
    assert restored.payload == {"phase": "building", "iteration": 0}
    assert restored.event_id == event.event_id


def test_event_type_accepts_string_value() -> None:
    event = BuildEvent(event_type="LogChunk", build_id=generate_build_id())

    assert event.event_type is BuildEventType.LOG_CHUNK


def test_event_rejects_unknown_type() -> None:
    with pytest.raises(ValueError):
        BuildEvent(event_type="RunStarted", build_id=generate_build_id())


def test_truncate_for_event() -> None:
    short = "abc"
    long = "x" * (MAX_EVENT_STRING_CHARS + 100)

    assert truncate_for_event(short) == short
    clipped = truncate_for_event(long)
    assert len(clipped) == MAX_EVENT_STRING_CHARS
    assert clipped.endswith("[truncated]")


def test_redact_sensitive_masks_nested_keys() -> None:
    event = BuildEvent(
        event_type=BuildEventType.BUILD_COMPLETED,
        build_id=generate_build_id(),
        payload={"status": "success", "detail": {"api_key": "sk-ant-123", "name": "demo"}},
    )

    redacted = redact_sensitive(event)

    assert redacted.payload["status"] == "success"
    assert redacted.payload["detail"] == {"api_key": "***REDACTED***", "name": "demo"}
    assert event.payload["detail"]["api_key"] == "sk-ant-123"
