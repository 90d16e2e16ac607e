"""
compile-orchestrator — filesystem utilities

File: src/compile_orchestrator/utils/fs.py
Last updated: 2026-10-17

Purpose
- Safe filesystem helpers for atomic writes, guarded deletion, path containment and
  bounded directory walks.

Functional requirements
- Every path accepted from an advisor proposal or caller input is canonicalized through
  ``resolve_within`` before use; no call site re-implements traversal checks.
- Directory walks are iterative worklists so depth never grows the call stack and a walk
  can be abandoned mid-way through a cancellation token.
- Deletion refuses paths outside the configured root.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Collection, Iterator

    from compile_orchestrator.utils.concurrency import CancellationToken

PathLike = str | os.PathLike[str]

__all__ = [
    "PathEscapeError",
    "atomic_write",
    "find_directory_containing",
    "is_within",
    "resolve_within",
    "safe_delete",
    "walk_files",
]


class PathEscapeError(ValueError):
    """Raised when a path resolves outside of its permitted root."""


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        if isinstance(data, bytes):
            with os.fdopen(fd, "wb") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())
        else:
            with os.fdopen(fd, "w", encoding=encoding) as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    resolved_child = Path(child).resolve(strict=False)
    return _is_relative_to(resolved_child, resolved_parent)


def resolve_within(root: PathLike, relative: str) -> Path:
    """Canonicalize ``relative`` against ``root`` and enforce containment.

    ``relative`` uses forward slashes as produced by advisors and callers. Absolute
    paths, NUL bytes, and any path whose resolution (symlinks included) lands outside
    ``root`` raise :class:`PathEscapeError`. The returned path need not exist.
    """

    if not isinstance(relative, str):
        raise PathEscapeError(f"path must be a string, got {type(relative).__name__}")
    candidate = relative.strip().replace("\\", "/")
    if not candidate:
        raise PathEscapeError("path must not be empty")
    if "\x00" in candidate:
        raise PathEscapeError("path must not contain NUL bytes")

    pure = PurePosixPath(candidate)
    if pure.is_absolute() or (pure.parts and pure.parts[0].endswith(":")):
        raise PathEscapeError(f"path must be relative: {relative!r}")

    resolved_root = Path(root).resolve(strict=True)
    resolved = (resolved_root / Path(*pure.parts)).resolve(strict=False)
    if resolved == resolved_root or not _is_relative_to(resolved, resolved_root):
        raise PathEscapeError(f"path escapes root: {relative!r}")
    return resolved


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``root``.

    Symlinks are unlinked without traversing into their targets.
    """

    workspace = Path(root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    parent_resolved = target.parent.resolve(strict=True)
    candidate = parent_resolved / target.name
    if not _is_relative_to(candidate, workspace):
        raise PathEscapeError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    resolved_target = target.resolve(strict=True)
    if not _is_relative_to(resolved_target, workspace):
        raise PathEscapeError(f"refusing to delete path outside root: {target!s}")

    if target.is_dir():
        shutil.rmtree(target)
        return

    target.unlink()


def walk_files(
    root: PathLike,
    *,
    skip_dirs: Collection[str] = (),
    cancel_token: CancellationToken | None = None,
) -> Iterator[Path]:
    """Yield regular files under ``root`` in deterministic order.

    Uses an explicit worklist. Symlinked directories are not followed and directories
    named in ``skip_dirs`` are pruned. A cancelled token stops the walk between entries.
    """

    base = Path(root)
    if not base.is_dir():
        return

    pending: list[Path] = [base]
    while pending:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        current = pending.pop()
        try:
            entries = sorted(current.iterdir(), key=lambda item: item.name)
        except OSError:
            continue

        subdirs: list[Path] = []
        for entry in entries:
            if entry.is_symlink():
                if entry.is_file() and is_within(entry, base):
                    yield entry
                continue
            if entry.is_dir():
                if entry.name not in skip_dirs:
                    subdirs.append(entry)
            elif entry.is_file():
                yield entry
        # Reverse so the lexicographically first directory is popped first.
        pending.extend(reversed(subdirs))


def find_directory_containing(
    root: PathLike,
    filename: str,
    *,
    skip_dirs: Collection[str] = (),
) -> Path | None:
    """Return the shallowest directory under ``root`` holding ``filename``."""

    base = Path(root)
    if not base.is_dir():
        return None

    pending: list[Path] = [base]
    while pending:
        current = pending.pop(0)
        if (current / filename).is_file():
            return current
        try:
            children = sorted(
                (
                    entry
                    for entry in current.iterdir()
                    if entry.is_dir() and not entry.is_symlink() and entry.name not in skip_dirs
                ),
                key=lambda item: item.name,
            )
        except OSError:
            continue
        pending.extend(children)
    return None


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
