"""Command-line interface router for compile-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from compile_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from compile_orchestrator.control_plane import BuildService
from compile_orchestrator.domain.events import BuildEvent, BuildEventType
from compile_orchestrator.domain.ids import generate_ulid
from compile_orchestrator.knowledge_plane import analyze
from compile_orchestrator.observability import setup_logging, shutdown_logging
from compile_orchestrator.ui.render import CLIRenderer, create_renderer

DEFAULT_PRINCIPAL: Final[str] = "local"

_STATUS_EXIT_CODES: Final[dict[str, int]] = {
    "success": 0,
    "cannot_fix": 1,
    "exhausted": 1,
    "failed": 4,
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="compile-orchestrator",
        description=(
            "compile-orchestrator: sandboxed Anchor builds with AI-assisted repair.\n\n"
            "Common workflows:\n"
            "  compile-orchestrator build ./my-program     Build (and repair) a project\n"
            "  compile-orchestrator analyze ./my-program   Show static project metadata\n"
            "  compile-orchestrator config                 Print the effective config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./compile_orchestrator.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output, including sandbox logs.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser(
        "build",
        parents=[common],
        help="Compile a project in the sandbox, repairing failures with the advisor.",
    )
    build.add_argument("source_dir", help="Directory holding the project sources.")
    build.add_argument(
        "--principal",
        default=DEFAULT_PRINCIPAL,
        help=f"Caller identity used for single-flight admission (default: {DEFAULT_PRINCIPAL}).",
    )
    build.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Override build.max_iterations for this run.",
    )
    build.add_argument("--json", action="store_true", help="Emit the final payload as JSON.")
    build.set_defaults(handler=_cmd_build)

    analyze_parser = subparsers.add_parser(
        "analyze",
        parents=[common],
        help="Run static analysis over a project without building it.",
    )
    analyze_parser.add_argument("source_dir", help="Directory holding the project sources.")
    analyze_parser.add_argument("--json", action="store_true", help="Emit JSON output.")
    analyze_parser.set_defaults(handler=_cmd_analyze)

    config = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective (redacted) configuration.",
    )
    config.add_argument("--json", action="store_true", help="Emit JSON output.")
    config.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_build(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {}
    max_iterations = getattr(args, "max_iterations", None)
    if max_iterations is not None:
        overrides["build.max_iterations"] = max_iterations
    config = _load_effective_config(args, cli_overrides=overrides)
    source = _source_dir(args)
    principal = _optional_str(getattr(args, "principal", None)) or DEFAULT_PRINCIPAL

    raw_observability = config.get("observability")
    observability = dict(raw_observability) if isinstance(raw_observability, Mapping) else {}
    if not _flag(args, "verbose"):
        observability["log_to_stdout"] = False
    handle = setup_logging(observability, run_id=f"cli-{generate_ulid()}")
    try:
        payload = asyncio.run(_run_build(config, source, principal, args))
    finally:
        shutdown_logging(handle)

    status = str(payload.get("status", "failed"))
    if _flag(args, "json"):
        _emit_json(payload)
    else:
        _render_build(_get_renderer(args), payload)
    return _STATUS_EXIT_CODES.get(status, 4)


async def _run_build(
    config: Mapping[str, object],
    source: Path,
    principal: str,
    args: argparse.Namespace,
) -> dict[str, object]:
    service = BuildService(config)
    await service.executor.ensure_available()

    if not _flag(args, "json"):
        renderer = _get_renderer(args)

        def on_phase(event: BuildEvent) -> None:
            iteration = event.payload.get("iteration", 0)
            renderer.progress(
                iteration if isinstance(iteration, int) else 0,
                str(event.payload.get("phase", "")),
            )

        def on_log(event: BuildEvent) -> None:
            renderer.log(str(event.payload.get("text", "")))

        service.event_bus.subscribe(BuildEventType.PHASE_STARTED, on_phase)
        service.event_bus.subscribe(BuildEventType.LOG_CHUNK, on_log)

    await service.start()
    try:
        return dict(await service.submit(principal, source))
    finally:
        await service.stop()


def _cmd_analyze(args: argparse.Namespace) -> int:
    source = _source_dir(args)
    analysis = analyze(source)
    payload: dict[str, object] = {"command": "analyze", "source_dir": str(source)}
    payload.update(analysis.to_dict())

    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.text(analysis.summary())
    renderer.kv("Program", analysis.program_name or "(not found)")
    renderer.kv("Program id", analysis.program_id or "(not declared)")
    if analysis.dependencies:
        renderer.section("Dependencies:")
        renderer.items(list(analysis.dependencies))
    if analysis.features:
        renderer.section("Features:")
        renderer.items(list(analysis.features))
    renderer.table(
        ["File", "Lines", "declare_id", "#[program]"],
        [
            [path, str(meta.lines), _yes_no(meta.declares_id), _yes_no(meta.has_program_mod)]
            for path, meta in sorted(analysis.files.items())
        ],
        title="Files:",
    )
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    no_color = _flag(args, "no_color")
    verbose = _flag(args, "verbose")
    return create_renderer(no_color=no_color, verbose=verbose)


def _render_build(renderer: CLIRenderer, payload: Mapping[str, object]) -> None:
    status = str(payload.get("status", ""))
    renderer.section("Result:")
    if status == "success":
        renderer.ok(f"build {payload.get('id')} succeeded")
    else:
        renderer.fail(f"build {payload.get('id')} finished with status {status}")
    renderer.kv("Iterations", payload.get("iterations"))

    error = payload.get("error")
    if error:
        renderer.kv("Error", error)
    reason = payload.get("cannot_fix_reason")
    if reason:
        renderer.kv("Advisor", reason)
    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        renderer.section("Compiler errors:")
        renderer.items([str(item) for item in errors])

    found = payload.get("artifacts")
    if isinstance(found, Mapping):
        rows = [
            [str(item.get("category", group)), str(item.get("handle", ""))]
            for group, entries in sorted(found.items())
            if isinstance(entries, list)
            for item in entries
            if isinstance(item, Mapping)
        ]
        renderer.table(["Category", "Handle"], rows, title="Artifacts:")

    secrets = payload.get("secrets")
    if isinstance(secrets, list) and secrets:
        renderer.section("Program keypairs (shown once, not stored):")
        for record in secrets:
            if isinstance(record, Mapping):
                renderer.kv(f"  {record.get('name')}", record.get("public_key"))
                renderer.kv("    secret", json.dumps(record.get("secret"), separators=(",", ":")))
        renderer.warning("copy these now; the keypair files have been deleted")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(
    args: argparse.Namespace, *, cli_overrides: Mapping[str, object] | None = None
) -> dict[str, object]:
    config_path = _optional_str(getattr(args, "config_path", None))
    try:
        loaded = load_config(config_path, cli_overrides=cli_overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    return {key: value for key, value in loaded.items()}


def _source_dir(args: argparse.Namespace) -> Path:
    raw = _optional_str(getattr(args, "source_dir", None))
    if raw is None:
        raise CLIError("source directory is required", exit_code=2)
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"source directory not found: {candidate}", exit_code=2)
    return candidate


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


__all__ = ["CLIError", "build_parser", "run_cli"]
