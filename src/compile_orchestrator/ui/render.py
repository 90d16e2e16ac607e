"""Output rendering for the compile-orchestrator CLI.

File: src/compile_orchestrator/ui/render.py
Last updated: 2026-10-17

Purpose
- Thin plain-text rendering layer for build progress, results, and diagnostics.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Plain-text rendering must always work without external dependencies.

Non-functional requirements
- No mandatory dependencies beyond the standard library.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

_GREEN = "\033[32m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_RESET = "\033[0m"


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Deterministic plain-text renderer; color only on an interactive terminal."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream)

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{_RESET}" if self._color else text

    def heading(self, text: str) -> None:
        self._print(text)

    def kv(self, key: str, value: object) -> None:
        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._print(f"\n{title}")

    def warning(self, text: str) -> None:
        self._print(f"  {self._paint('Warning:', _YELLOW)} {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table. Nothing is printed for zero rows."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._print(f"  {_pad(list(row))}")

    def progress(self, iteration: int, phase: str) -> None:
        self._print(f"[{iteration + 1}] {phase}")

    def log(self, chunk: str) -> None:
        """Echo sandbox output verbatim; only shown in verbose mode."""

        if self.verbose and chunk:
            self._stream.write(chunk if chunk.endswith("\n") else chunk + "\n")

    def ok(self, label: str) -> None:
        self._print(f"  {self._paint('OK', _GREEN)}  {label}")

    def fail(self, label: str) -> None:
        self._print(f"  {self._paint('FAIL', _RED)}  {label}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
