"""Sandbox plane: isolated Docker execution of ``anchor build`` and log shaping."""

from compile_orchestrator.sandbox.log_filter import filter_chunk, filter_line, strip_ansi
from compile_orchestrator.sandbox.sandbox_manager import (
    TIMEOUT_MESSAGE,
    LogSink,
    ResourceLimits,
    SandboxExecutor,
    SandboxRunResult,
    build_script,
)

__all__ = [
    "LogSink",
    "ResourceLimits",
    "SandboxExecutor",
    "SandboxRunResult",
    "TIMEOUT_MESSAGE",
    "build_script",
    "filter_chunk",
    "filter_line",
    "strip_ansi",
]
