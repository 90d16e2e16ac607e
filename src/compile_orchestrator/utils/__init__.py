"""Utility exports for filesystem and concurrency helpers."""

from compile_orchestrator.utils.concurrency import CancellationToken, run_with_timeout
from compile_orchestrator.utils.fs import (
    PathEscapeError,
    atomic_write,
    find_directory_containing,
    is_within,
    resolve_within,
    safe_delete,
    walk_files,
)

__all__ = [
    "CancellationToken",
    "PathEscapeError",
    "atomic_write",
    "find_directory_containing",
    "is_within",
    "resolve_within",
    "run_with_timeout",
    "safe_delete",
    "walk_files",
]
