"""Per-build workspace lifecycle: isolated source copy plus sandbox output directory."""

from __future__ import annotations

import logging
import re
import shutil
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from compile_orchestrator.constants import (
    OUTPUT_DIR_NAME,
    PROJECT_MANIFEST,
    SKIPPED_DIR_NAMES,
    SOURCE_DIR_NAME,
)
from compile_orchestrator.domain.errors import ValidationError
from compile_orchestrator.domain.ids import validate_build_id
from compile_orchestrator.utils.fs import find_directory_containing, safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_PROGRAM_DIR_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


@dataclass(frozen=True, slots=True)
class BuildWorkspace:
    """Resolved directory bundle owned by one build."""

    build_id: str
    root: Path
    source_dir: Path
    output_dir: Path
    created_at: datetime


class WorkspaceManager:
    """Create, inspect, and remove per-build directories under one workspace root."""

    def __init__(
        self,
        workspace_root: str | Path,
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        root = Path(workspace_root).expanduser()
        root.mkdir(parents=True, exist_ok=True)
        self._workspace_root = root.resolve(strict=True)
        self._now_fn: Callable[[], datetime] = now_fn or (lambda: datetime.now(tz=UTC))
        self._lock = threading.RLock()

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    def create(self, build_id: str, source_root: str | Path) -> BuildWorkspace:
        """Copy ``source_root`` into a fresh job directory.

        Symlinks and build/dependency directories are not copied, so the job tree never
        points outside itself.
        """

        validate_build_id(build_id)
        source = Path(source_root).expanduser()
        if not source.is_dir():
            raise ValidationError(f"source root is not a directory: {source}")

        job_root = self._workspace_root / build_id
        with self._lock:
            if job_root.exists() or job_root.is_symlink():
                raise FileExistsError(f"workspace directory already exists: {job_root}")
            job_root.mkdir(parents=True)
            source_dir = job_root / SOURCE_DIR_NAME
            output_dir = job_root / OUTPUT_DIR_NAME
            shutil.copytree(source, source_dir, symlinks=True, ignore=_ignore_unsafe_entries)
            output_dir.mkdir()

        logger.info("workspace created", extra={"build_id": build_id, "path": str(job_root)})
        return BuildWorkspace(
            build_id=build_id,
            root=job_root,
            source_dir=source_dir,
            output_dir=output_dir,
            created_at=self._now_fn(),
        )

    def remove(self, build_id: str) -> bool:
        """Delete a job directory. Returns ``False`` when nothing was there."""

        validate_build_id(build_id)
        job_root = self._workspace_root / build_id
        with self._lock:
            if not job_root.exists() and not job_root.is_symlink():
                return False
            safe_delete(job_root, self._workspace_root)
        logger.info("workspace removed", extra={"build_id": build_id})
        return True


def locate_project_subdir(source_dir: Path) -> str:
    """Relative POSIX path of the directory holding ``Anchor.toml``; ``""`` at the root."""

    found = find_directory_containing(source_dir, PROJECT_MANIFEST, skip_dirs=SKIPPED_DIR_NAMES)
    if found is None or found == source_dir:
        return ""
    return found.relative_to(source_dir).as_posix()


def relocate_root_program(source_dir: Path, program_name: str | None) -> Path | None:
    """Move a root-level ``lib.rs`` into ``programs/<name>/src/lib.rs``.

    Only applies when there is no ``programs/`` directory yet. Returns the new path, or
    ``None`` when the layout was left alone.
    """

    root_lib = source_dir / "lib.rs"
    programs_dir = source_dir / "programs"
    if not root_lib.is_file() or root_lib.is_symlink() or programs_dir.exists():
        return None

    dir_name = (program_name or "program").replace("_", "-").lower()
    if not _PROGRAM_DIR_PATTERN.fullmatch(dir_name):
        dir_name = "program"
    target = programs_dir / dir_name / "src" / "lib.rs"
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(root_lib), str(target))
    logger.info("moved root lib.rs", extra={"target": target.relative_to(source_dir).as_posix()})
    return target


def _ignore_unsafe_entries(directory: str, names: list[str]) -> set[str]:
    base = Path(directory)
    ignored: set[str] = set()
    for name in names:
        if name in SKIPPED_DIR_NAMES or (base / name).is_symlink():
            ignored.add(name)
    return ignored


__all__ = [
    "BuildWorkspace",
    "WorkspaceManager",
    "locate_project_subdir",
    "relocate_root_program",
]
