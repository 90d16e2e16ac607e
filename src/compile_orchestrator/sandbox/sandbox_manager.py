"""
compile-orchestrator — sandbox executor

File: src/compile_orchestrator/sandbox/sandbox_manager.py
Last updated: 2026-10-17

Purpose
- Run one ``anchor build`` attempt inside a disposable, resource-capped Docker container
  and return a structured result.

Functional requirements
- No network, dropped capabilities (only CHOWN/FOWNER/DAC_OVERRIDE kept), memory and CPU
  caps, ``no-new-privileges``.
- Source tree is copied in as a tar archive; the output directory is the only bind mount.
- Output directory is pre-created and made world-writable before the run.
- Combined output is streamed to a caller sink (filtered) and accumulated verbatim.
- A wall-clock timeout races the run; on expiry the container is killed.
- The container is always removed, including after failures.
- Setup failures (output directory, Docker client) end only this attempt and come back
  as ``SandboxRunResult.error``.

Non-functional requirements
- Blocking Docker SDK calls run in worker threads so other builds keep progressing.
"""

from __future__ import annotations

import asyncio
import importlib
import io
import logging
import os
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Final

from compile_orchestrator.constants import (
    CONTAINER_OUTPUT,
    CONTAINER_WORKSPACE,
    DEPLOY_DIR,
    IDL_DIR,
    SKIPPED_DIR_NAMES,
    TYPES_DIR,
)
from compile_orchestrator.domain.errors import SandboxUnavailableError
from compile_orchestrator.sandbox.log_filter import filter_chunk
from compile_orchestrator.utils.concurrency import run_with_timeout

logger = logging.getLogger(__name__)

LogSink = Callable[[str], object]

TIMEOUT_MESSAGE: Final[str] = "Build timeout exceeded"
_KEPT_CAPABILITIES: Final[tuple[str, ...]] = ("CHOWN", "FOWNER", "DAC_OVERRIDE")
_LOG_DRAIN_SECONDS: Final[float] = 10.0

_BUILD_SCRIPT_TEMPLATE: Final[str] = """
export CARGO_INCREMENTAL=0
export CARGO_TERM_COLOR=always
export RUST_BACKTRACE=1
echo "=== Toolchain ===" &&
anchor --version &&
solana --version &&
echo "=== Running Anchor Build ===" &&
anchor build 2>&1;
BUILD_EXIT=$?;
echo "=== Build exited with code: $BUILD_EXIT ===";
if [ $BUILD_EXIT -ne 0 ]; then
  exit $BUILD_EXIT;
fi;
mkdir -p {output}/{deploy} {output}/{idl} {output}/{types} &&
cp -v {deploy}/*.so {output}/{deploy}/ 2>/dev/null || true &&
cp -v {deploy}/*-keypair.json {output}/{deploy}/ 2>/dev/null || true &&
cp -v {idl}/*.json {output}/{idl}/ 2>/dev/null || true &&
cp -v {types}/*.ts {output}/{types}/ 2>/dev/null || true &&
chmod -R a+rX {output}/target/ &&
echo "=== Artifacts Copied ==="
"""


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Per-run isolation settings."""

    memory_bytes: int = 2 * 1024 * 1024 * 1024
    memory_swap_bytes: int = 2 * 1024 * 1024 * 1024
    cpu_cores: float = 2.0
    timeout_seconds: float = 600.0
    network_disabled: bool = True
    readonly_rootfs: bool = False

    def __post_init__(self) -> None:
        if self.memory_bytes <= 0:
            raise ValueError("memory_bytes must be > 0")
        if self.memory_swap_bytes < self.memory_bytes:
            raise ValueError("memory_swap_bytes must be >= memory_bytes")
        if self.cpu_cores <= 0:
            raise ValueError("cpu_cores must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if not self.network_disabled:
            raise ValueError("sandbox runs must not have network access")

    @classmethod
    def from_config(cls, sandbox_config: dict[str, Any]) -> ResourceLimits:
        return cls(
            memory_bytes=int(sandbox_config["memory_bytes"]),
            memory_swap_bytes=int(sandbox_config["memory_swap_bytes"]),
            cpu_cores=float(sandbox_config["cpu_cores"]),
            timeout_seconds=float(sandbox_config["timeout_seconds"]),
            network_disabled=bool(sandbox_config["network_disabled"]),
            readonly_rootfs=bool(sandbox_config["readonly_rootfs"]),
        )


@dataclass(frozen=True, slots=True)
class SandboxRunResult:
    """Normalized result of one sandbox run.

    ``exit_code`` is ``None`` when the run timed out or the runtime itself failed.
    """

    exit_code: int | None
    combined_log: str
    output_root: Path
    timed_out: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0


class SandboxExecutor:
    """Execute ``anchor build`` in an isolated Docker container."""

    def __init__(
        self,
        *,
        image: str,
        client: Any | None = None,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        if not isinstance(image, str) or not image.strip():
            raise ValueError("image must be a non-empty string")
        self._image = image.strip()
        self._client = client
        self._client_factory = client_factory or _create_default_client

    @property
    def image(self) -> str:
        return self._image

    async def ensure_available(self) -> None:
        """Raise :class:`SandboxUnavailableError` unless the Docker daemon answers."""

        client = await self._ensure_client()
        try:
            await asyncio.to_thread(client.ping)
        except Exception as exc:  # noqa: BLE001
            raise SandboxUnavailableError(f"docker daemon is not reachable: {exc}") from exc

    async def run(
        self,
        source_root: Path | str,
        output_root: Path | str,
        working_subdir: str = "",
        limits: ResourceLimits | None = None,
        sink: LogSink | None = None,
    ) -> SandboxRunResult:
        source = Path(source_root)
        if not source.is_dir():
            raise ValueError(f"source root is not a directory: {source}")
        output = Path(output_root)
        effective_limits = limits or ResourceLimits()
        workdir = _container_workdir(working_subdir)

        chunks: list[str] = []
        container: Any | None = None
        loop = asyncio.get_running_loop()
        try:
            await asyncio.to_thread(_prepare_output_dir, output)
            client = await self._ensure_client()
            archive = await asyncio.to_thread(_build_source_archive, source)
            container = await asyncio.to_thread(
                client.containers.create,
                self._image,
                **_container_kwargs(output, workdir, effective_limits),
            )
            await asyncio.to_thread(container.put_archive, "/", archive)
            await asyncio.to_thread(container.start)
            logger.info(
                "sandbox started",
                extra={"container_id": _short_id(container), "workdir": workdir},
            )

            pump = asyncio.ensure_future(
                asyncio.to_thread(_pump_logs, container, chunks, loop, sink)
            )
            try:
                status = await run_with_timeout(
                    asyncio.to_thread(container.wait),
                    effective_limits.timeout_seconds,
                )
            except TimeoutError:
                logger.warning("sandbox timed out", extra={"container_id": _short_id(container)})
                await _kill_quietly(container)
                await _settle(pump)
                return SandboxRunResult(
                    exit_code=None,
                    combined_log="".join(chunks) + f"\n\nFatal error: {TIMEOUT_MESSAGE}",
                    output_root=output,
                    timed_out=True,
                    error=TIMEOUT_MESSAGE,
                )

            await _settle(pump)
            exit_code = _status_code(status)
            logger.info(
                "sandbox finished",
                extra={"container_id": _short_id(container), "exit_code": exit_code},
            )
            return SandboxRunResult(
                exit_code=exit_code,
                combined_log="".join(chunks),
                output_root=output,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("sandbox runtime failure: %s", exc)
            return SandboxRunResult(
                exit_code=None,
                combined_log="".join(chunks) + f"\n\nFatal error: {exc}",
                output_root=output,
                error=str(exc) or exc.__class__.__name__,
            )
        finally:
            if container is not None:
                try:
                    await asyncio.to_thread(container.remove, force=True)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("failed to remove container: %s", exc)

    async def _ensure_client(self) -> Any:
        if self._client is None:
            self._client = await asyncio.to_thread(self._client_factory)
        return self._client


def build_script() -> str:
    """Shell script executed inside the container."""

    return _BUILD_SCRIPT_TEMPLATE.format(
        output=CONTAINER_OUTPUT,
        deploy=DEPLOY_DIR.as_posix(),
        idl=IDL_DIR.as_posix(),
        types=TYPES_DIR.as_posix(),
    ).strip()


def _create_default_client() -> Any:
    try:
        docker_module = importlib.import_module("docker")
    except ModuleNotFoundError as exc:
        raise SandboxUnavailableError("docker SDK is not installed") from exc
    try:
        return docker_module.from_env()
    except Exception as exc:  # noqa: BLE001
        raise SandboxUnavailableError(f"unable to connect to docker: {exc}") from exc


def _container_workdir(working_subdir: str) -> str:
    subdir = (working_subdir or "").strip().strip("/")
    if not subdir:
        return CONTAINER_WORKSPACE
    pure = PurePosixPath(subdir)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"working_subdir must stay inside the workspace: {working_subdir!r}")
    return f"{CONTAINER_WORKSPACE}/{pure.as_posix()}"


def _container_kwargs(output: Path, workdir: str, limits: ResourceLimits) -> dict[str, Any]:
    return {
        "command": ["sh", "-c", build_script()],
        "working_dir": workdir,
        "volumes": {str(output.resolve()): {"bind": CONTAINER_OUTPUT, "mode": "rw"}},
        "mem_limit": limits.memory_bytes,
        "memswap_limit": limits.memory_swap_bytes,
        "nano_cpus": int(limits.cpu_cores * 1_000_000_000),
        "network_mode": "none",
        "read_only": limits.readonly_rootfs,
        "security_opt": ["no-new-privileges"],
        "cap_drop": ["ALL"],
        "cap_add": list(_KEPT_CAPABILITIES),
        "tty": True,
    }


def _prepare_output_dir(output: Path) -> None:
    output.mkdir(parents=True, exist_ok=True)
    # The builder image may run under a different uid.
    os.chmod(output, 0o777)


def _build_source_archive(source: Path) -> bytes:
    buffer = io.BytesIO()

    def _exclude(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        parts = PurePosixPath(info.name).parts
        if any(part in SKIPPED_DIR_NAMES for part in parts[1:]):
            return None
        return info

    with tarfile.open(fileobj=buffer, mode="w") as archive:
        archive.add(str(source), arcname=CONTAINER_WORKSPACE.strip("/"), filter=_exclude)
    return buffer.getvalue()


def _pump_logs(
    container: Any,
    chunks: list[str],
    loop: asyncio.AbstractEventLoop,
    sink: LogSink | None,
) -> None:
    for raw in container.logs(stream=True, follow=True, stdout=True, stderr=True):
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        chunks.append(text)
        if sink is None:
            continue
        filtered = filter_chunk(text)
        if filtered:
            loop.call_soon_threadsafe(_deliver, sink, filtered)


def _deliver(sink: LogSink, text: str) -> None:
    try:
        sink(text)
    except Exception as exc:  # noqa: BLE001
        logger.warning("log sink failed: %s", exc)


async def _settle(pump: asyncio.Future[None]) -> None:
    try:
        await asyncio.wait_for(asyncio.shield(pump), timeout=_LOG_DRAIN_SECONDS)
    except TimeoutError:
        logger.warning("log stream did not close after container exit")
    except Exception as exc:  # noqa: BLE001
        logger.warning("log stream failed: %s", exc)


async def _kill_quietly(container: Any) -> None:
    try:
        await asyncio.to_thread(container.kill)
    except Exception as exc:  # noqa: BLE001
        logger.warning("failed to kill container: %s", exc)


def _status_code(status: object) -> int:
    if isinstance(status, dict):
        code = status.get("StatusCode")
        if isinstance(code, int):
            return code
    if isinstance(status, int):
        return status
    raise RuntimeError(f"unexpected container wait result: {status!r}")


def _short_id(container: Any) -> str:
    value = getattr(container, "short_id", None) or getattr(container, "id", None)
    return str(value) if value else "unknown"


__all__ = [
    "LogSink",
    "ResourceLimits",
    "SandboxExecutor",
    "SandboxRunResult",
    "TIMEOUT_MESSAGE",
    "build_script",
]
