"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import Final, NoReturn, TypeVar, cast

from compile_orchestrator.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT: Final[int] = 8192
_MAX_REASON: Final[int] = 4096


class BuildStatus(StrEnum):
    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    CANNOT_FIX = "cannot_fix"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class Phase(StrEnum):
    READY = "ready"
    ANALYZING = "analyzing"
    VERIFYING = "verifying"
    FIXING = "fixing"
    BUILDING = "building"
    COMPLETE = "complete"


class PhaseOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    FIXED = "fixed"
    NO_FIXES = "no_fixes"
    CANNOT_FIX = "cannot_fix"


class FixAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ArtifactCategory(StrEnum):
    BINARY = "binary"
    DESCRIPTOR = "descriptor"
    BINDINGS = "bindings"
    CREDENTIAL = "credential"


TERMINAL_STATUSES: Final[frozenset[BuildStatus]] = frozenset(
    {
        BuildStatus.SUCCESS,
        BuildStatus.CANNOT_FIX,
        BuildStatus.EXHAUSTED,
        BuildStatus.FAILED,
    }
)

# FAILED is reserved for unexpected internal errors escaping the repair loop.
_ALLOWED_TRANSITIONS: Final[dict[BuildStatus, frozenset[BuildStatus]]] = {
    BuildStatus.READY: frozenset({BuildStatus.RUNNING, BuildStatus.FAILED}),
    BuildStatus.RUNNING: TERMINAL_STATUSES,
}


class InvalidTransitionError(RuntimeError):
    """Raised when a BuildJob status change leaves the state machine."""


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())


@dataclass(frozen=True, slots=True)
class PhaseRecord(CanonicalModel):
    """One phase execution; append-only within a BuildJob."""

    phase: Phase
    iteration: int
    outcome: PhaseOutcome
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    detail: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "phase", _as_enum(Phase, self.phase, "PhaseRecord.phase"))
        object.__setattr__(
            self, "outcome", _as_enum(PhaseOutcome, self.outcome, "PhaseRecord.outcome")
        )
        _as_int(self.iteration, "PhaseRecord.iteration", minimum=0)
        object.__setattr__(
            self, "timestamp", _as_datetime(self.timestamp, "PhaseRecord.timestamp")
        )
        object.__setattr__(self, "detail", _as_json_object(self.detail, "PhaseRecord.detail"))


@dataclass(frozen=True, slots=True)
class FixProposal(CanonicalModel):
    """One advisor-proposed file edit. Never applied without validation.

    Construction is lenient so malformed advisor output reaches the validator intact:
    ``path`` may be empty and ``content`` may be missing.
    """

    action: FixAction | str
    path: str
    content: str | None = None
    reason: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "action", _coerce_fix_action(self.action))
        object.__setattr__(self, "path", self.path.strip() if isinstance(self.path, str) else "")
        if self.content is not None and not isinstance(self.content, str):
            object.__setattr__(self, "content", None)
        object.__setattr__(
            self, "reason", self.reason.strip() if isinstance(self.reason, str) else ""
        )

    @property
    def action_name(self) -> str:
        return self.action.value if isinstance(self.action, FixAction) else self.action

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> FixProposal:
        content = data.get("content")
        return cls(
            action=cast("FixAction", data.get("action", FixAction.UPDATE)),
            path=cast("str", data.get("path", "")),
            content=content if isinstance(content, str) else None,
            reason=cast("str", data.get("reason", "")),
        )


@dataclass(frozen=True, slots=True)
class FixAttemptRecord(CanonicalModel):
    """Files touched by one repair iteration and a short rationale."""

    iteration: int
    files: tuple[str, ...]
    summary: str

    def __post_init__(self) -> None:
        _as_int(self.iteration, "FixAttemptRecord.iteration", minimum=0)
        object.__setattr__(self, "files", tuple(str(item) for item in self.files))
        object.__setattr__(
            self, "summary", _as_str(self.summary, "FixAttemptRecord.summary", min_len=0)
        )


@dataclass(frozen=True, slots=True)
class Artifact(CanonicalModel):
    """A classified file inside a job's output directory."""

    name: str
    category: ArtifactCategory
    path: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "Artifact.name"))
        object.__setattr__(
            self, "category", _as_enum(ArtifactCategory, self.category, "Artifact.category")
        )
        object.__setattr__(self, "path", Path(self.path))


@dataclass(frozen=True, slots=True)
class SecretRecord:
    """Key material parsed from one credential file.

    Ephemeral: built at completion, delivered once, never persisted. ``secret`` is
    excluded from ``repr`` so it cannot leak through logging.
    """

    name: str
    filename: str
    public_key: str
    secret: tuple[int, ...] = field(repr=False)

    def to_payload(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "filename": self.filename,
            "public_key": self.public_key,
            "secret": list(self.secret),
        }


@dataclass(slots=True)
class BuildJob(CanonicalModel):
    """Mutable build record owned by the orchestrator and the concurrency guard."""

    id: str
    principal: str
    source_root: Path
    output_root: Path
    max_iterations: int
    status: BuildStatus = BuildStatus.READY
    phase: Phase = Phase.READY
    iteration: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    completed_at: datetime | None = None
    logs: str = ""
    error: str | None = None
    error_code: str | None = None
    cannot_fix_reason: str | None = None
    compilation_errors: tuple[str, ...] = ()
    phases: list[PhaseRecord] = field(default_factory=list)
    fix_attempts: list[FixAttemptRecord] = field(default_factory=list)

    def __post_init__(self) -> None:
        domain_ids.validate_build_id(_as_str(self.id, "BuildJob.id"))
        self.principal = _as_str(self.principal, "BuildJob.principal", max_len=256)
        self.source_root = Path(self.source_root)
        self.output_root = Path(self.output_root)
        self.max_iterations = _as_int(self.max_iterations, "BuildJob.max_iterations", minimum=1)
        self.status = _as_enum(BuildStatus, self.status, "BuildJob.status")
        self.phase = _as_enum(Phase, self.phase, "BuildJob.phase")
        self.created_at = _as_datetime(self.created_at, "BuildJob.created_at")
        self.updated_at = _as_datetime(self.updated_at, "BuildJob.updated_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def iterations(self) -> int:
        """Iterations consumed so far; equals the iteration cap once exhausted."""

        if self.status is BuildStatus.READY:
            return 0
        return self.iteration + 1

    def touch(self) -> None:
        self.updated_at = datetime.now(tz=UTC)

    def transition(self, status: BuildStatus) -> None:
        target = _as_enum(BuildStatus, status, "BuildJob.status")
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if target not in allowed:
            raise InvalidTransitionError(
                f"illegal build status transition {self.status.value} -> {target.value}"
            )
        self.status = target
        self.touch()
        if target in TERMINAL_STATUSES:
            self.phase = Phase.COMPLETE
            self.completed_at = self.updated_at

    def enter_phase(self, phase: Phase, iteration: int) -> None:
        if iteration < self.iteration:
            raise InvalidTransitionError("iteration counter must not decrease")
        if iteration >= self.max_iterations:
            raise InvalidTransitionError(
                f"iteration {iteration} exceeds max_iterations {self.max_iterations}"
            )
        self.phase = _as_enum(Phase, phase, "BuildJob.phase")
        self.iteration = iteration
        self.touch()

    def record_phase(self, record: PhaseRecord) -> None:
        if not isinstance(record, PhaseRecord):
            _fail("BuildJob.phases", "must append PhaseRecord")
        self.phases.append(record)
        self.touch()

    def append_log(self, text: str) -> None:
        if text:
            self.logs += text
            self.touch()

    def to_status(self) -> dict[str, JSONValue]:
        """Caller-facing build status."""

        payload: dict[str, JSONValue] = {
            "id": self.id,
            "status": self.status.value,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "iterations": self.iterations,
            "max_iterations": self.max_iterations,
            "logs": self.logs,
            "created_at": _datetime_to_iso8601z(self.created_at),
            "updated_at": _datetime_to_iso8601z(self.updated_at),
            "phases": [record.to_dict() for record in self.phases],
        }
        if self.completed_at is not None:
            payload["completed_at"] = _datetime_to_iso8601z(self.completed_at)
        if self.error is not None:
            payload["error"] = self.error
            payload["error_code"] = self.error_code
            payload["errors"] = list(self.compilation_errors)
        if self.cannot_fix_reason is not None:
            payload["cannot_fix_reason"] = self.cannot_fix_reason
        return payload


def _coerce_fix_action(value: object) -> FixAction | str:
    # Unknown actions are kept verbatim so the validator can reject them.
    if isinstance(value, FixAction):
        return value
    if not isinstance(value, str):
        return ""
    normalized = value.strip().lower()
    try:
        return FixAction(normalized)
    except ValueError:
        return normalized


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_datetime(value: object, path: str) -> datetime:
    if not isinstance(value, datetime):
        _fail(path, f"expected datetime, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return value.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > 16:
        _fail(path, "JSON nesting too deep")
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float value must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{index}]", depth=depth + 1)
            for index, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return out
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "Artifact",
    "ArtifactCategory",
    "BuildJob",
    "BuildStatus",
    "CanonicalModel",
    "FixAction",
    "FixAttemptRecord",
    "FixProposal",
    "InvalidTransitionError",
    "JSONScalar",
    "JSONValue",
    "Phase",
    "PhaseOutcome",
    "PhaseRecord",
    "SecretRecord",
    "TERMINAL_STATUSES",
]
