"""Build event envelope, serialization, and payload redaction helpers."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final

from compile_orchestrator.domain import ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

MAX_EVENT_STRING_CHARS: Final[int] = 8192

_SENSITIVE_KEY_TERMS = ("secret", "password", "token", "api_key", "private_key")
_REDACTED_VALUE = "***REDACTED***"


class BuildEventType(StrEnum):
    """Progress events emitted by the orchestrator, one producer per build."""

    BUILD_STARTED = "BuildStarted"
    PHASE_STARTED = "PhaseStarted"
    PHASE_RECORDED = "PhaseRecorded"
    LOG_CHUNK = "LogChunk"
    BUILD_COMPLETED = "BuildCompleted"


@dataclass(slots=True)
class BuildEvent:
    """Serializable event envelope consumed by the external log/progress transport."""

    event_type: BuildEventType
    build_id: str
    payload: dict[str, JSONValue] = field(default_factory=dict)
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        ids.validate_build_id(self.build_id)
        self.event_type = _as_event_type(self.event_type, "BuildEvent.event_type")
        self.timestamp = _as_utc_datetime(self.timestamp, "BuildEvent.timestamp")
        self.payload = _as_json_object(self.payload, "BuildEvent.payload")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": _datetime_to_iso8601z(self.timestamp),
            "build_id": self.build_id,
            "payload": _as_json_object(self.payload, "BuildEvent.payload"),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> BuildEvent:
        if not isinstance(data, dict):
            raise ValueError(f"BuildEvent: expected object, got {type(data).__name__}")
        missing = sorted(
            key for key in ("event_id", "event_type", "timestamp", "build_id") if key not in data
        )
        if missing:
            raise ValueError(f"BuildEvent: missing required fields: {missing}")
        unknown = sorted(
            key
            for key in data
            if key not in {"event_id", "event_type", "timestamp", "build_id", "payload"}
        )
        if unknown:
            raise ValueError(f"BuildEvent: unexpected fields: {unknown}")
        return cls(
            event_id=str(data["event_id"]),
            event_type=_as_event_type(data["event_type"], "BuildEvent.event_type"),
            timestamp=_as_utc_datetime(data["timestamp"], "BuildEvent.timestamp"),
            build_id=str(data["build_id"]),
            payload=_as_json_object(data.get("payload", {}), "BuildEvent.payload"),
        )


def truncate_for_event(text: str, limit: int = MAX_EVENT_STRING_CHARS) -> str:
    """Clip ``text`` so it fits into one event payload string."""

    if len(text) <= limit:
        return text
    marker = "\n...[truncated]"
    return text[: limit - len(marker)] + marker


def redact_sensitive(event: BuildEvent) -> BuildEvent:
    """Return a new event with sensitive payload keys deeply redacted."""
    redacted_payload = _redact_value(event.payload, key_context=None)
    if not isinstance(redacted_payload, dict):
        raise ValueError("redacted payload must remain a JSON object")
    return BuildEvent(
        event_id=event.event_id,
        event_type=event.event_type,
        timestamp=event.timestamp,
        build_id=event.build_id,
        payload=redacted_payload,
    )


def _as_event_type(value: object, path: str) -> BuildEventType:
    if isinstance(value, BuildEventType):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string event type, got {type(value).__name__}")
    try:
        return BuildEventType(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in BuildEventType)
        raise ValueError(f"{path}: unsupported event type {value!r}; allowed: {allowed}") from exc


def _as_utc_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ValueError(f"{path}: invalid ISO-8601 datetime: {value!r}") from exc
    else:
        raise ValueError(
            f"{path}: expected datetime or ISO-8601 string, got {type(value).__name__}"
        )

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"{path}: datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_utc_datetime(value, "BuildEvent.timestamp")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > 16:
        raise ValueError(f"{path}: JSON nesting too deep")

    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: float value must be finite")
        return value
    if isinstance(value, str):
        if len(value) > MAX_EVENT_STRING_CHARS:
            raise ValueError(f"{path}: string too long")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, dict):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return out
    raise ValueError(f"{path}: value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected object")
    return parsed


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _redact_value(value: JSONValue, key_context: str | None) -> JSONValue:
    if key_context is not None and _is_sensitive_key(key_context):
        return _REDACTED_VALUE

    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]

    if isinstance(value, dict):
        redacted: dict[str, JSONValue] = {}
        for key, item in value.items():
            redacted[key] = _redact_value(item, key_context=key)
        return redacted

    return value


__all__ = [
    "MAX_EVENT_STRING_CHARS",
    "BuildEvent",
    "BuildEventType",
    "redact_sensitive",
    "truncate_for_event",
]
