"""Unit tests for the display filter applied to streamed build output."""

from __future__ import annotations

import pytest

from compile_orchestrator.sandbox.log_filter import filter_chunk, filter_line, strip_ansi


def test_strip_ansi_removes_escapes_and_split_resets() -> None:
    assert strip_ansi("\x1b[1;31merror\x1b[0m") == "error"
    assert strip_ansi("done[0m") == "done"


@pytest.mark.parametrize(
    "line",
    [
        "   Compiling anchor-lang v0.30.1",
        "error[E0425]: cannot find value `x` in this scope",
        "warning: unused variable: `ctx`",
        "=== Build exited with code: 0 ===",
        "src/lib.rs:3:5: error: expected item",
    ],
)
def test_progress_lines_are_kept(line: str) -> None:
    assert filter_line(line) == line.strip()


@pytest.mark.parametrize(
    "line",
    [
        "",
        "     Running `/usr/local/rustup/toolchains/stable/bin/rustc --crate-name demo`",
        "-L dependency=/workspace/target/release/deps",
        "drwxr-xr-x 2 root root 4096 Jan 1 00:00 deploy",
        "x" * 250,
    ],
)
def test_noise_is_dropped(line: str) -> None:
    assert filter_line(line) is None


def test_filter_chunk_keeps_order_and_drops_noise() -> None:
    chunk = "   Compiling demo\n--crate-name demo\n    Finished release\n"

    assert filter_chunk(chunk) == "Compiling demo\nFinished release"
    assert filter_chunk("\n\n") == ""
