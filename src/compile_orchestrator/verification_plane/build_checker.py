"""
Build Checker — post-run verification of one sandbox attempt.

Functional requirements:
- A zero exit code is not trusted on its own: at least one program binary must exist and
  the combined log must not contain known error signatures.
- Extract a bounded, de-duplicated list of structured compiler error lines for callers
  and for the repair advisor.
- Classify every failed attempt into the build error taxonomy.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Final

from compile_orchestrator.domain.errors import (
    BuildError,
    CompilationError,
    SandboxError,
    SandboxTimeoutError,
)

if TYPE_CHECKING:
    from compile_orchestrator.integration_plane.artifacts import ArtifactScan
    from compile_orchestrator.sandbox.sandbox_manager import SandboxRunResult

MAX_EXTRACTED_ERRORS: Final[int] = 20
_MAX_CONTEXT_LINES: Final[int] = 4

NO_ARTIFACTS_MESSAGE: Final[str] = "Build produced no .so artifacts — compilation likely failed"
ERRORS_DESPITE_SUCCESS_MESSAGE: Final[str] = "Build logs contain errors despite exit code 0"

ERROR_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"error\[E\d+\]"),
    re.compile(r"^error:.*aborting due to", re.MULTILINE),
    re.compile(r"ERROR.*cargo.build", re.IGNORECASE),
    re.compile(r"Failed to obtain package metadata"),
    re.compile(r"can't find library"),
)

_ERROR_HEAD: Final[re.Pattern[str]] = re.compile(r"^(?:error\[E\d+\]|error:)")
_CONTEXT_PREFIXES: Final[tuple[str, ...]] = ("-->", "|", "=")
_STANDALONE_MARKERS: Final[tuple[str, ...]] = (
    "Failed to obtain package metadata",
    "can't find library",
)


def log_has_errors(combined_log: str) -> bool:
    return any(pattern.search(combined_log) for pattern in ERROR_PATTERNS)


def extract_compilation_errors(combined_log: str) -> list[str]:
    """Return up to 20 unique error blocks in first-seen order.

    A block is an ``error[E....]``/``error:`` line plus up to four following location or
    hint lines (``-->``, ``|``, ``=``).
    """

    if not combined_log:
        return []

    lines = combined_log.split("\n")
    found: list[str] = []
    for index, raw in enumerate(lines):
        line = raw.strip()
        if _ERROR_HEAD.match(line):
            block = [line]
            for offset in range(1, _MAX_CONTEXT_LINES + 1):
                if index + offset >= len(lines):
                    break
                follower = lines[index + offset].strip()
                if not follower.startswith(_CONTEXT_PREFIXES):
                    break
                block.append(follower)
            found.append("\n".join(block))
        for marker in _STANDALONE_MARKERS:
            if marker in line:
                found.append(line)

    return list(dict.fromkeys(found))[:MAX_EXTRACTED_ERRORS]


def check_run(result: SandboxRunResult, scan: ArtifactScan) -> BuildError | None:
    """Classify one sandbox attempt; ``None`` means the build really succeeded."""

    if result.timed_out:
        return SandboxTimeoutError(result.error or "Build timeout exceeded")
    if result.error is not None:
        return SandboxError(result.error)

    errors = extract_compilation_errors(result.combined_log)
    if result.exit_code != 0:
        return CompilationError(
            f"Build failed with exit code {result.exit_code}",
            exit_code=result.exit_code,
            errors=errors,
        )
    if not scan.has_binary:
        return CompilationError(NO_ARTIFACTS_MESSAGE, exit_code=0, errors=errors)
    if log_has_errors(result.combined_log):
        return CompilationError(ERRORS_DESPITE_SUCCESS_MESSAGE, exit_code=0, errors=errors)
    return None


__all__ = [
    "ERRORS_DESPITE_SUCCESS_MESSAGE",
    "ERROR_PATTERNS",
    "MAX_EXTRACTED_ERRORS",
    "NO_ARTIFACTS_MESSAGE",
    "check_run",
    "extract_compilation_errors",
    "log_has_errors",
]
