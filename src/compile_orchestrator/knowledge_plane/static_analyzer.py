"""
compile-orchestrator — static project analyzer

File: src/compile_orchestrator/knowledge_plane/static_analyzer.py
Last updated: 2026-10-17

Purpose
- Cheap, network-free scan of Rust sources to extract program metadata used to enrich
  the first advisor request.

Functional requirements
- Program id from ``declare_id!``, program name from ``#[program] mod``, crate
  dependencies through a fixed table, module declarations, feature flags, and
  per-file metadata.
- Iterative walk that skips build and dependency directories and honours cancellation.

Non-functional requirements
- Deterministic output for the same source snapshot.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final

from compile_orchestrator.constants import COMPILED_SOURCE_EXTENSIONS, SKIPPED_DIR_NAMES
from compile_orchestrator.utils.fs import walk_files

if TYPE_CHECKING:
    from compile_orchestrator.utils.concurrency import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES: Final[int] = 1_000_000

CRATE_DEPENDENCIES: Final[dict[str, str]] = {
    "anchor_lang": "anchor-lang",
    "anchor_spl": "anchor-spl",
    "solana_program": "solana-program",
    "spl_token": "spl-token",
    "spl_associated_token_account": "spl-associated-token-account",
    "mpl_token_metadata": "mpl-token-metadata",
}

_USE_CRATE: Final[re.Pattern[str]] = re.compile(r"use\s+(\w+)::")
_DECLARE_ID: Final[re.Pattern[str]] = re.compile(r"""declare_id!\s*\(\s*["']([^"']+)["']\s*\)""")
_PROGRAM_MOD: Final[re.Pattern[str]] = re.compile(r"#\[program\]\s+(?:pub\s+)?mod\s+(\w+)")
_MOD_DECL: Final[re.Pattern[str]] = re.compile(r"(?:pub\s+)?mod\s+(\w+)\s*;")
_FEATURE_FLAG: Final[re.Pattern[str]] = re.compile(r'#\[cfg\(feature\s*=\s*"([^"]+)"\)\]')


@dataclass(frozen=True, slots=True)
class FileMetadata:
    lines: int
    declares_id: bool
    has_program_mod: bool


@dataclass(frozen=True, slots=True)
class ProjectAnalysis:
    """Metadata extracted from one source tree."""

    program_name: str | None = None
    program_id: str | None = None
    dependencies: tuple[str, ...] = ()
    modules: tuple[str, ...] = ()
    features: tuple[str, ...] = ()
    files: dict[str, FileMetadata] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "program_name": self.program_name,
            "program_id": self.program_id,
            "dependencies": list(self.dependencies),
            "modules": list(self.modules),
            "features": list(self.features),
            "files": {
                path: {
                    "lines": meta.lines,
                    "declares_id": meta.declares_id,
                    "has_program_mod": meta.has_program_mod,
                }
                for path, meta in self.files.items()
            },
        }

    def summary(self) -> str:
        name = self.program_name or "unknown"
        return f'Found program "{name}" with {len(self.dependencies)} dependencies'


def analyze_text(relative_path: str, content: str) -> ProjectAnalysis:
    """Analyze a single file's text; used by :func:`analyze` and directly in tests."""

    dependencies = sorted(
        {
            CRATE_DEPENDENCIES[crate]
            for crate in _USE_CRATE.findall(content)
            if crate in CRATE_DEPENDENCIES
        }
    )
    declared = _DECLARE_ID.search(content)
    program = _PROGRAM_MOD.search(content)
    return ProjectAnalysis(
        program_name=program.group(1) if program else None,
        program_id=declared.group(1) if declared else None,
        dependencies=tuple(dependencies),
        modules=tuple(_MOD_DECL.findall(content)),
        features=tuple(_FEATURE_FLAG.findall(content)),
        files={
            relative_path: FileMetadata(
                lines=content.count("\n") + 1,
                declares_id=declared is not None,
                has_program_mod=program is not None,
            )
        },
    )


def analyze(
    source_root: Path | str,
    *,
    cancel_token: CancellationToken | None = None,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
) -> ProjectAnalysis:
    """Scan every ``.rs`` file under ``source_root``.

    Later files win for program name and id, matching a top-down read of the tree.
    Unreadable files are logged and skipped.
    """

    root = Path(source_root)
    program_name: str | None = None
    program_id: str | None = None
    dependencies: set[str] = set()
    modules: list[str] = []
    features: list[str] = []
    files: dict[str, FileMetadata] = {}

    for path in walk_files(root, skip_dirs=SKIPPED_DIR_NAMES, cancel_token=cancel_token):
        if path.suffix not in COMPILED_SOURCE_EXTENSIONS:
            continue
        relative = path.relative_to(root).as_posix()
        try:
            if path.stat().st_size > max_file_bytes:
                logger.debug("skipping oversized source file %s", relative)
                continue
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("cannot read %s: %s", relative, exc)
            continue

        partial = analyze_text(relative, content)
        program_name = partial.program_name or program_name
        program_id = partial.program_id or program_id
        dependencies.update(partial.dependencies)
        modules.extend(partial.modules)
        features.extend(partial.features)
        files.update(partial.files)

    return ProjectAnalysis(
        program_name=program_name,
        program_id=program_id,
        dependencies=tuple(sorted(dependencies)),
        modules=tuple(modules),
        features=tuple(features),
        files=files,
    )


__all__ = [
    "CRATE_DEPENDENCIES",
    "DEFAULT_MAX_FILE_BYTES",
    "FileMetadata",
    "ProjectAnalysis",
    "analyze",
    "analyze_text",
]
