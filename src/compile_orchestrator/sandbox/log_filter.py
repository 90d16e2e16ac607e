"""Display filter for raw ``anchor build`` output.

The raw stream is always kept verbatim for diagnostics and advisor context; this
module only shapes what the progress transport shows.
"""

from __future__ import annotations

import re
from typing import Final

_ANSI_ESCAPE: Final[re.Pattern[str]] = re.compile(r"\x1b\[[0-9;]*m")
_MAX_DISPLAY_LINE: Final[int] = 200

_NOISY_FRAGMENTS: Final[tuple[str, ...]] = (
    "Running `/usr/local/rustup/",
    "Running `/workspace/",
    "--crate-name",
    "--error-format=json",
    "--emit=dep-info",
    "-C metadata=",
    "-C extra-filename=",
    "--check-cfg",
    "--cap-lints",
    "-Zremap-cwd-prefix=",
    "--extern ",
)
_NOISY_PREFIXES: Final[tuple[str, ...]] = ("-L dependency=", "--out-dir")
_PROGRESS_PREFIXES: Final[tuple[str, ...]] = (
    "Compiling ",
    "Building ",
    "Finished ",
    "Downloading ",
    "error[",
    "error:",
    "warning:",
    "===",
)
_LISTING_PREFIXES: Final[tuple[str, ...]] = ("drwx", "lrwx", "-rw")


def strip_ansi(text: str) -> str:
    """Remove color escapes, including the bare ``[0m`` left by split chunks."""

    cleaned = _ANSI_ESCAPE.sub("", text)
    return cleaned.replace("[0m", "")


def filter_line(raw_line: str) -> str | None:
    """Return the display form of one log line, or ``None`` to drop it."""

    line = strip_ansi(raw_line).strip()
    if line.startswith("m "):
        line = line[2:].strip()
    if not line:
        return None

    if any(fragment in line for fragment in _NOISY_FRAGMENTS):
        return None
    if line.startswith(_NOISY_PREFIXES):
        return None

    if line.startswith(_PROGRESS_PREFIXES):
        return line
    if ": error:" in line or ": warning:" in line or "anchor" in line:
        return line

    if len(line) > _MAX_DISPLAY_LINE:
        return None
    if line.startswith(_LISTING_PREFIXES):
        return None
    return line


def filter_chunk(chunk: str) -> str:
    """Filter a multi-line chunk; returns an empty string when nothing survives."""

    kept = [line for line in (filter_line(item) for item in chunk.splitlines()) if line]
    return "\n".join(kept)


__all__ = ["filter_chunk", "filter_line", "strip_ansi"]
