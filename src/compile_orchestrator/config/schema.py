"""
compile-orchestrator — configuration schema and validation.

File: src/compile_orchestrator/config/schema.py
Last updated: 2026-10-17

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Embedded secret values are rejected; only ``*_env`` variable names are accepted.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from compile_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_LOG_DIR,
    DEFAULT_WORKSPACE_ROOT,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "api",
        "key",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

_GIB: Final[int] = 1024 * 1024 * 1024

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class SandboxConfig(TypedDict):
    image: str
    memory_bytes: int
    memory_swap_bytes: int
    cpu_cores: float
    timeout_seconds: float
    network_disabled: bool
    readonly_rootfs: bool


class AdvisorConfig(TypedDict):
    provider: Literal["anthropic"]
    model: str
    api_key_env: str
    max_tokens: int
    request_timeout_seconds: float
    rate_limit_retries: int
    rate_limit_min_wait_seconds: float


class BuildConfig(TypedDict):
    max_iterations: int
    iteration_pause_seconds: float


class SafetyConfig(TypedDict):
    shrink_ratio: float
    shrink_min_lines: int


class RetentionConfig(TypedDict):
    retention_seconds: float
    sweep_interval_seconds: float


class PathsConfig(TypedDict):
    workspace_root: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    redact_secrets: bool
    log_to_stdout: bool


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    sandbox: SandboxConfig
    advisor: AdvisorConfig
    build: BuildConfig
    safety: SafetyConfig
    retention: RetentionConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "sandbox": {
        "image": "anchor-builder:latest",
        "memory_bytes": 2 * _GIB,
        "memory_swap_bytes": 2 * _GIB,
        "cpu_cores": 2.0,
        "timeout_seconds": 600.0,
        "network_disabled": True,
        "readonly_rootfs": False,
    },
    "advisor": {
        "provider": "anthropic",
        "model": "claude-sonnet-4-5",
        "api_key_env": "ANTHROPIC_API_KEY",
        "max_tokens": 16000,
        "request_timeout_seconds": 300.0,
        "rate_limit_retries": 5,
        "rate_limit_min_wait_seconds": 65.0,
    },
    "build": {
        "max_iterations": 8,
        "iteration_pause_seconds": 5.0,
    },
    "safety": {
        "shrink_ratio": 0.7,
        "shrink_min_lines": 10,
    },
    "retention": {
        "retention_seconds": 3600.0,
        "sweep_interval_seconds": 600.0,
    },
    "paths": {
        "workspace_root": DEFAULT_WORKSPACE_ROOT,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": DEFAULT_LOG_DIR,
        "redact_secrets": True,
        "log_to_stdout": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> OrchestratorConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade compile_orchestrator.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the compile-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=issues.items())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and diagnostics."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


_SectionValidator = Callable[[Mapping[str, object], str, "_IssueCollector"], dict[str, Any]]


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators: dict[str, _SectionValidator] = {
        "meta": _validate_meta,
        "sandbox": _validate_sandbox,
        "advisor": _validate_advisor,
        "build": _validate_build,
        "safety": _validate_safety,
        "retention": _validate_retention,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(validators), "", issues)
    _require_keys(payload, set(validators), "", issues)

    out: dict[str, Any] = {}
    for key, validator in validators.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validator(section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"schema_version"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_sandbox(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {
        "image",
        "memory_bytes",
        "memory_swap_bytes",
        "cpu_cores",
        "timeout_seconds",
        "network_disabled",
        "readonly_rootfs",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "image" in payload:
        parsed_image = _as_str(payload["image"], _join(path, "image"), issues)
        if parsed_image is not None:
            out["image"] = parsed_image

    for key in ("memory_bytes", "memory_swap_bytes"):
        if key in payload:
            parsed_bytes = _as_int(payload[key], _join(path, key), issues, minimum=64 * 1024 * 1024)
            if parsed_bytes is not None:
                out[key] = parsed_bytes

    for key in ("cpu_cores", "timeout_seconds"):
        if key in payload:
            parsed_number = _as_float(payload[key], _join(path, key), issues, exclusive_minimum=0.0)
            if parsed_number is not None:
                out[key] = parsed_number

    if "network_disabled" in payload:
        parsed_network = _as_bool(
            payload["network_disabled"], _join(path, "network_disabled"), issues
        )
        if parsed_network is False:
            issues.add(_join(path, "network_disabled"), "sandbox network access cannot be enabled")
        elif parsed_network is not None:
            out["network_disabled"] = parsed_network

    if "readonly_rootfs" in payload:
        parsed_readonly = _as_bool(
            payload["readonly_rootfs"], _join(path, "readonly_rootfs"), issues
        )
        if parsed_readonly is not None:
            out["readonly_rootfs"] = parsed_readonly

    swap = out.get("memory_swap_bytes")
    memory = out.get("memory_bytes")
    if isinstance(swap, int) and isinstance(memory, int) and swap < memory:
        issues.add(_join(path, "memory_swap_bytes"), "must be >= memory_bytes")
    return out


def _validate_advisor(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {
        "provider",
        "model",
        "api_key_env",
        "max_tokens",
        "request_timeout_seconds",
        "rate_limit_retries",
        "rate_limit_min_wait_seconds",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "provider" in payload:
        parsed_provider = _as_enum(
            payload["provider"],
            _join(path, "provider"),
            issues,
            allowed_values=("anthropic",),
        )
        if parsed_provider is not None:
            out["provider"] = parsed_provider

    if "model" in payload:
        parsed_model = _as_str(payload["model"], _join(path, "model"), issues)
        if parsed_model is not None:
            out["model"] = parsed_model

    if "api_key_env" in payload:
        parsed_env = _as_env_name(payload["api_key_env"], _join(path, "api_key_env"), issues)
        if parsed_env is not None:
            out["api_key_env"] = parsed_env

    for key in ("max_tokens", "rate_limit_retries"):
        if key in payload:
            parsed_int = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed_int is not None:
                out[key] = parsed_int

    if "request_timeout_seconds" in payload:
        parsed_timeout = _as_float(
            payload["request_timeout_seconds"],
            _join(path, "request_timeout_seconds"),
            issues,
            exclusive_minimum=0.0,
        )
        if parsed_timeout is not None:
            out["request_timeout_seconds"] = parsed_timeout

    if "rate_limit_min_wait_seconds" in payload:
        parsed_wait = _as_float(
            payload["rate_limit_min_wait_seconds"],
            _join(path, "rate_limit_min_wait_seconds"),
            issues,
            minimum=0.0,
        )
        if parsed_wait is not None:
            out["rate_limit_min_wait_seconds"] = parsed_wait
    return out


def _validate_build(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"max_iterations", "iteration_pause_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "max_iterations" in payload:
        parsed_max_iterations = _as_int(
            payload["max_iterations"], _join(path, "max_iterations"), issues, minimum=1
        )
        if parsed_max_iterations is not None:
            out["max_iterations"] = parsed_max_iterations

    if "iteration_pause_seconds" in payload:
        parsed_pause = _as_float(
            payload["iteration_pause_seconds"],
            _join(path, "iteration_pause_seconds"),
            issues,
            minimum=0.0,
        )
        if parsed_pause is not None:
            out["iteration_pause_seconds"] = parsed_pause
    return out


def _validate_safety(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"shrink_ratio", "shrink_min_lines"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "shrink_ratio" in payload:
        parsed_ratio = _as_float(
            payload["shrink_ratio"], _join(path, "shrink_ratio"), issues, minimum=0.0
        )
        if parsed_ratio is not None and parsed_ratio > 1.0:
            issues.add(_join(path, "shrink_ratio"), "must be <= 1.0")
        elif parsed_ratio is not None:
            out["shrink_ratio"] = parsed_ratio

    if "shrink_min_lines" in payload:
        parsed_lines = _as_int(
            payload["shrink_min_lines"], _join(path, "shrink_min_lines"), issues, minimum=0
        )
        if parsed_lines is not None:
            out["shrink_min_lines"] = parsed_lines
    return out


def _validate_retention(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"retention_seconds", "sweep_interval_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_float(payload[key], _join(path, key), issues, exclusive_minimum=0.0)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"workspace_root"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "redact_secrets", "log_to_stdout"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_log_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if parsed_log_level is not None:
            out["log_level"] = parsed_log_level

    if "log_dir" in payload:
        parsed_log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_log_dir is not None:
            out["log_dir"] = parsed_log_dir

    for key in ("redact_secrets", "log_to_stdout"):
        if key in payload:
            parsed_flag = _as_bool(payload[key], _join(path, key), issues)
            if parsed_flag is not None:
                out[key] = parsed_flag
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: ANTHROPIC_API_KEY)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    exclusive_minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if exclusive_minimum is not None and parsed <= exclusive_minimum:
        issues.add(path, f"must be > {exclusive_minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        item = value[key]
        out[key] = _deep_copy_mapping(item) if isinstance(item, Mapping) else copy.deepcopy(item)
    return out


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _key_is_sensitive_for_redaction(key) and not isinstance(item, (bool, Mapping)):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _key_is_sensitive_for_redaction(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return True
    return _looks_sensitive_key(normalized)


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
