"""Configuration: TOML file, ``COMPILE_*`` environment overrides and schema validation."""

from compile_orchestrator.config.loader import (
    ConfigLoadError,
    effective_config,
    load_config,
)
from compile_orchestrator.config.schema import (
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "assert_valid_config",
    "default_config",
    "effective_config",
    "load_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
