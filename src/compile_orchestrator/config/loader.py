"""
compile-orchestrator — runtime config loader.

File: src/compile_orchestrator/config/loader.py
Last updated: 2026-10-17

Purpose
- Produce the one validated configuration mapping a build service is constructed from.

Functional requirements
- Layers, lowest first: built-in defaults, ``compile_orchestrator.toml`` (or an explicit
  file), ``COMPILE_<SECTION>_<KEY>`` environment variables, CLI overrides.
- Environment variables exist only for scalar keys of the default config and are
  coerced to the default value's type.
- ``paths.workspace_root`` and ``observability.log_dir`` resolve against the directory
  of the config file.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from compile_orchestrator.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "compile_orchestrator.toml"
ENV_PREFIX: Final[str] = "COMPILE_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class ConfigLoadError(ValueError):
    """The config file or an override could not be read or coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    explicit = config_path is not None
    path = Path(config_path or Path.cwd() / DEFAULT_CONFIG_FILE).expanduser().resolve()

    config = assert_valid_config(merge_config(default_config(), _read_toml(path, explicit)))
    env = os.environ if environ is None else environ
    config = merge_config(config, _env_layer(env))
    config = merge_config(config, _dotted_layer(cli_overrides or {}))
    config = assert_valid_config(config)

    for field_path in PATH_FIELDS:
        _resolve_path_field(config, field_path, path.parent)
    return assert_valid_config(config)


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` for display and logs."""

    return redact_config(config)


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for section, values in default_config().items():
        if not isinstance(values, Mapping):
            continue
        for key, default in values.items():
            name = f"{ENV_PREFIX}{section}_{key}".upper()
            raw = environ.get(name)
            if raw is None or isinstance(default, (Mapping, list, tuple)):
                continue
            layer.setdefault(section, {})[key] = _coerce(name, raw.strip(), default)
    return layer


def _coerce(name: str, raw: str, default: object) -> object:
    if isinstance(default, bool):
        if raw.lower() in _TRUTHY:
            return True
        if raw.lower() in _FALSY:
            return False
        raise ConfigLoadError(f"{name} must be a boolean (true/false/1/0/yes/no/on/off)")
    if isinstance(default, (int, float)):
        kind = type(default)
        try:
            return kind(raw)
        except ValueError as exc:
            expected = "an integer" if kind is int else "a number"
            raise ConfigLoadError(f"{name} must be {expected}") from exc
    return raw


def _dotted_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in overrides.items():
        *parents, leaf = [part for part in dotted.split(".") if part] or [""]
        if not leaf:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        cursor = layer
        for part in parents:
            cursor = cursor.setdefault(part, {})
        cursor[leaf] = value
    return layer


def _resolve_path_field(config: dict[str, Any], field_path: tuple[str, ...], base: Path) -> None:
    *parents, leaf = field_path
    section: Any = config
    for part in parents:
        section = section.get(part)
        if not isinstance(section, dict):
            return
    raw = section.get(leaf)
    if not isinstance(raw, str):
        return
    candidate = Path(os.path.expandvars(raw)).expanduser()
    section[leaf] = Path(os.path.normpath(base / candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "effective_config",
    "load_config",
]
