"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
DEFAULT_WORKSPACE_ROOT: Final[str] = "builds/"
DEFAULT_LOG_DIR: Final[str] = "logs/"

# Per-job directory layout under the workspace root.
SOURCE_DIR_NAME: Final[str] = "source"
OUTPUT_DIR_NAME: Final[str] = "output"

# Output tree convention written by the sandbox.
TARGET_DIR: Final[PurePosixPath] = PurePosixPath("target")
DEPLOY_DIR: Final[PurePosixPath] = TARGET_DIR / "deploy"
IDL_DIR: Final[PurePosixPath] = TARGET_DIR / "idl"
TYPES_DIR: Final[PurePosixPath] = TARGET_DIR / "types"
KEYPAIR_SUFFIX: Final[str] = "-keypair.json"

# Container mount points.
CONTAINER_WORKSPACE: Final[str] = "/workspace"
CONTAINER_OUTPUT: Final[str] = "/output"

# Project markers and directories never walked into.
PROJECT_MANIFEST: Final[str] = "Anchor.toml"
SKIPPED_DIR_NAMES: Final[frozenset[str]] = frozenset({"node_modules", "target", ".git"})

# File classes for the fix safety validator.
COMPILED_SOURCE_EXTENSIONS: Final[frozenset[str]] = frozenset({".rs"})
CONFIG_EXTENSIONS: Final[frozenset[str]] = frozenset({".toml", ".json", ".lock"})

__all__ = [
    "COMPILED_SOURCE_EXTENSIONS",
    "CONFIG_EXTENSIONS",
    "CONFIG_SCHEMA_VERSION",
    "CONTAINER_OUTPUT",
    "CONTAINER_WORKSPACE",
    "DEFAULT_LOG_DIR",
    "DEFAULT_WORKSPACE_ROOT",
    "DEPLOY_DIR",
    "IDL_DIR",
    "KEYPAIR_SUFFIX",
    "OUTPUT_DIR_NAME",
    "PROJECT_MANIFEST",
    "SKIPPED_DIR_NAMES",
    "SOURCE_DIR_NAME",
    "TARGET_DIR",
    "TYPES_DIR",
]
