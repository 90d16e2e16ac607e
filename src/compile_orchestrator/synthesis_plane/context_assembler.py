"""
compile-orchestrator — advisor context assembler

File: src/compile_orchestrator/synthesis_plane/context_assembler.py
Last updated: 2026-10-17

Purpose
- Build the context package for one advisor request: file tree, truncated source and
  configuration contents, failure log excerpts, and the history of attempted fixes.

Functional requirements
- ``.rs`` files are capped at 4000 chars each and 16000 chars in total; once the total
  budget is spent, remaining files contribute only their first 500 chars.
- ``.toml`` files are capped at 2000 chars each.
- Log context is the first 20 lines (environment) plus the last 80 lines (errors).
- Log excerpts and error text are passed through secret redaction; file contents are sent
  verbatim.

Non-functional requirements
- Deterministic for the same source snapshot and log text.
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final

from compile_orchestrator.constants import SKIPPED_DIR_NAMES
from compile_orchestrator.security.redaction import redact_text
from compile_orchestrator.utils.fs import walk_files

if TYPE_CHECKING:
    from compile_orchestrator.domain.models import FixAttemptRecord
    from compile_orchestrator.knowledge_plane.static_analyzer import ProjectAnalysis
    from compile_orchestrator.utils.concurrency import CancellationToken

MAX_RS_CHARS: Final[int] = 4000
MAX_TOTAL_RS_CHARS: Final[int] = 16000
OVERFLOW_RS_CHARS: Final[int] = 500
MAX_TOML_CHARS: Final[int] = 2000
MAX_JSON_CHARS: Final[int] = 2000
LOG_HEAD_LINES: Final[int] = 20
LOG_TAIL_LINES: Final[int] = 80
MAX_ATTEMPT_SUMMARY_CHARS: Final[int] = 200
MAX_FILE_READ_BYTES: Final[int] = 1_000_000

_READ_SUFFIXES: Final[frozenset[str]] = frozenset({".rs", ".toml", ".json"})


@dataclass(frozen=True, slots=True)
class ContextDoc:
    """Single file included in an advisor context pack."""

    path: str
    doc_type: str
    content: str
    content_hash: str
    bytes_total: int
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class TruncationRecord:
    path: str
    reason: str
    included_chars: int
    total_chars: int


@dataclass(frozen=True, slots=True)
class ContextPack:
    """Everything an advisor prompt is rendered from."""

    file_tree: tuple[str, ...]
    config_docs: tuple[ContextDoc, ...]
    source_docs: tuple[ContextDoc, ...]
    log_head: str = ""
    log_tail: str = ""
    error_message: str = ""
    iteration: int = 0
    previous_attempts: tuple[str, ...] = ()
    analysis_summary: str = ""
    truncations: tuple[TruncationRecord, ...] = field(default_factory=tuple)

    @property
    def existing_paths(self) -> tuple[str, ...]:
        return tuple(doc.path for doc in (*self.config_docs, *self.source_docs))


def read_project_files(
    source_root: Path,
    *,
    cancel_token: CancellationToken | None = None,
) -> dict[str, str]:
    """Map relative POSIX path to text for ``.rs``, ``.toml`` and ``.json`` files."""

    files: dict[str, str] = {}
    for path in walk_files(source_root, skip_dirs=SKIPPED_DIR_NAMES, cancel_token=cancel_token):
        if path.suffix not in _READ_SUFFIXES:
            continue
        try:
            if path.stat().st_size > MAX_FILE_READ_BYTES:
                continue
            files[path.relative_to(source_root).as_posix()] = path.read_text(
                encoding="utf-8", errors="replace"
            )
        except OSError:
            continue
    return files


def file_tree(
    source_root: Path, *, cancel_token: CancellationToken | None = None
) -> tuple[str, ...]:
    return tuple(
        path.relative_to(source_root).as_posix()
        for path in walk_files(source_root, skip_dirs=SKIPPED_DIR_NAMES, cancel_token=cancel_token)
    )


def split_log_context(combined_log: str) -> tuple[str, str]:
    """Return ``(head, tail)``: the first 20 and the last 80 lines of the log."""

    lines = combined_log.split("\n")
    return "\n".join(lines[:LOG_HEAD_LINES]), "\n".join(lines[-LOG_TAIL_LINES:])


def summarize_attempts(attempts: Sequence[FixAttemptRecord]) -> tuple[str, ...]:
    return tuple(
        f"{index}. (iteration {attempt.iteration}) {', '.join(attempt.files) or 'no files'}: "
        f"{attempt.summary[:MAX_ATTEMPT_SUMMARY_CHARS]}"
        for index, attempt in enumerate(attempts, start=1)
    )


class ContextAssembler:
    """Deterministic advisor context builder for one job's source tree."""

    def __init__(self, source_root: Path | str) -> None:
        self._source_root = Path(source_root)

    def assemble(
        self,
        *,
        iteration: int,
        combined_log: str = "",
        error_message: str = "",
        previous_attempts: Sequence[FixAttemptRecord] = (),
        analysis: ProjectAnalysis | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ContextPack:
        files = read_project_files(self._source_root, cancel_token=cancel_token)
        truncations: list[TruncationRecord] = []

        config_docs: list[ContextDoc] = []
        source_docs: list[ContextDoc] = []
        rs_budget_used = 0
        for path in sorted(files):
            content = files[path]
            if path.endswith(".rs"):
                limited = _truncate(content, MAX_RS_CHARS, "\n// ... [truncated]")
                if rs_budget_used + len(limited) <= MAX_TOTAL_RS_CHARS:
                    rs_budget_used += len(limited)
                    reason = "per-file limit"
                else:
                    limited = (
                        content[:OVERFLOW_RS_CHARS]
                        + f"\n// ... [large file truncated, {len(content)} chars total]"
                    )
                    reason = "total source budget exhausted"
                source_docs.append(_doc(path, "source", limited, content))
                if limited != content:
                    included = min(len(limited), len(content))
                    truncations.append(TruncationRecord(path, reason, included, len(content)))
            else:
                cap = MAX_TOML_CHARS if path.endswith(".toml") else MAX_JSON_CHARS
                limited = _truncate(content, cap, "\n# ... [truncated]")
                config_docs.append(_doc(path, "config", limited, content))
                if limited != content:
                    truncations.append(TruncationRecord(path, "per-file limit", cap, len(content)))

        head, tail = split_log_context(combined_log) if combined_log else ("", "")
        return ContextPack(
            file_tree=file_tree(self._source_root, cancel_token=cancel_token),
            config_docs=tuple(config_docs),
            source_docs=tuple(source_docs),
            log_head=redact_text(head),
            log_tail=redact_text(tail),
            error_message=redact_text(error_message),
            iteration=iteration,
            previous_attempts=summarize_attempts(previous_attempts),
            analysis_summary=analysis.summary() if analysis is not None else "",
            truncations=tuple(truncations),
        )


def _truncate(content: str, limit: int, marker: str) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + marker


def _doc(path: str, doc_type: str, content: str, original: str) -> ContextDoc:
    return ContextDoc(
        path=path,
        doc_type=doc_type,
        content=content,
        content_hash=hashlib.sha256(original.encode("utf-8")).hexdigest(),
        bytes_total=len(original.encode("utf-8")),
        truncated=content != original,
    )


__all__ = [
    "LOG_HEAD_LINES",
    "LOG_TAIL_LINES",
    "MAX_RS_CHARS",
    "MAX_TOML_CHARS",
    "MAX_TOTAL_RS_CHARS",
    "ContextAssembler",
    "ContextDoc",
    "ContextPack",
    "TruncationRecord",
    "file_tree",
    "read_project_files",
    "split_log_context",
    "summarize_attempts",
]
