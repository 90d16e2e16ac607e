"""Console entrypoint: runs the CLI and turns escaped exceptions into exit codes."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    BUILD_FAILED = 1
    CONFIG_ERROR = 2
    PROVIDER_ERROR = 3
    INTERNAL_ERROR = 4
    SANDBOX_UNAVAILABLE = 5


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    try:
        from compile_orchestrator.ui.cli import run_cli

        code = run_cli(argv)
    except SystemExit as exc:
        code = exc.code
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return ExitCode.INTERNAL_ERROR
    except Exception as exc:  # noqa: BLE001
        exit_code = exit_code_for(exc)
        if exit_code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _write_stderr(str(exc).strip() or exc.__class__.__name__)
        return exit_code

    if code is None:
        return ExitCode.SUCCESS
    if isinstance(code, int) and code in set(ExitCode):
        return code
    if isinstance(code, str) and code.strip():
        _write_stderr(code)
    return ExitCode.INTERNAL_ERROR


def exit_code_for(exc: BaseException) -> ExitCode:
    """Exit code for the first recognised exception along the cause chain."""

    from compile_orchestrator.config import ConfigLoadError, ConfigValidationError
    from compile_orchestrator.domain.errors import (
        AdvisorError,
        SandboxUnavailableError,
        ValidationError,
    )
    from compile_orchestrator.synthesis_plane.providers.base import ProviderError

    bad_input = (FileNotFoundError, NotADirectoryError, PermissionError, ValueError)
    routes: tuple[tuple[type[BaseException] | tuple[type[BaseException], ...], ExitCode], ...] = (
        (SandboxUnavailableError, ExitCode.SANDBOX_UNAVAILABLE),
        ((ConfigLoadError, ConfigValidationError, ValidationError), ExitCode.CONFIG_ERROR),
        ((ProviderError, AdvisorError), ExitCode.PROVIDER_ERROR),
        (bad_input, ExitCode.CONFIG_ERROR),
    )
    for item in _causes(exc):
        for kinds, code in routes:
            if isinstance(item, kinds):
                return code
        # The anthropic SDK is imported lazily; a missing install is a provider problem.
        if isinstance(item, ModuleNotFoundError) and item.name == "anthropic":
            return ExitCode.PROVIDER_ERROR
    return ExitCode.INTERNAL_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or (
            None if current.__suppress_context__ else current.__context__
        )


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for"]
