"""
compile-orchestrator — structured run logging

File: src/compile_orchestrator/observability/logging.py
Last updated: 2026-10-17

Purpose
- Write every record of a service run as one JSON object per line under
  ``<log_dir>/<run_id>/orchestrator.jsonl``, optionally mirrored to stderr.

Functional requirements
- Records are handed to a queue on the logging thread and written by a listener, so a
  slow disk never stalls a build.
- ``correlation_scope`` binds build id, principal, phase and iteration onto every record
  emitted inside it.
- ``extra=`` fields land under ``"fields"``; secret-looking keys and values are redacted
  unless ``redact_secrets`` is off.
- structlog decision logs are routed into the same sink.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import queue
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

from compile_orchestrator.security.redaction import redact_structure

LOG_FILENAME: Final[str] = "orchestrator.jsonl"
ROOT_LOGGER_NAME: Final[str] = "compile_orchestrator"

_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.makeLogRecord({}))
) | {"message", "asctime", "taskName", "correlation"}

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "compile_orchestrator_correlation", default=()
)

_active: dict[str, LoggingHandle] = {}


class _CorrelatedQueueHandler(logging.handlers.QueueHandler):
    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see this context, so copy it onto the record.
        record.correlation = get_correlation_context()
        return super().prepare(record)


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, run_id: str, *, redact: bool) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service_run_id": self._run_id,
        }
        line.update(getattr(record, "correlation", None) or {})
        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        if fields:
            line["fields"] = fields
        if self._redact:
            line = redact_structure(line)  # type: ignore[assignment]
        return json.dumps(line, sort_keys=True, default=str, ensure_ascii=False)


class LoggingHandle:
    """An installed run log; ``shutdown`` drains the queue and restores the logger."""

    def __init__(
        self,
        logger: logging.Logger,
        log_path: Path,
        queue_handler: logging.Handler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._previous = (logger.level, logger.propagate)
        self.closed = False

    def shutdown(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.logger.removeHandler(self._queue_handler)
        self._listener.stop()
        for sink in self._sinks:
            sink.close()
        self.logger.setLevel(self._previous[0])
        self.logger.propagate = self._previous[1]
        if _active.get(self.logger.name) is self:
            del _active[self.logger.name]


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> LoggingHandle:
    """Install JSON-lines logging from an ``[observability]`` config section.

    A second call for the same logger shuts the previous run log down first.
    """

    if not isinstance(run_id, str) or not run_id.strip():
        raise ValueError("run_id must be a non-empty string")
    cfg = dict(observability_config or {})
    level = _parse_level(cfg.get("log_level", "INFO"))
    base_dir = Path(str(log_dir if log_dir is not None else cfg.get("log_dir", "logs")))

    previous = _active.get(logger_name)
    if previous is not None:
        previous.shutdown()

    log_path = base_dir / run_id.strip() / LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _JsonLinesFormatter(run_id.strip(), redact=bool(cfg.get("redact_secrets", True)))

    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if cfg.get("log_to_stdout", True):
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setFormatter(formatter)

    records: queue.Queue[logging.LogRecord] = queue.Queue()
    queue_handler = _CorrelatedQueueHandler(records)
    listener = logging.handlers.QueueListener(records, *sinks)

    logger = logging.getLogger(logger_name)
    handle = LoggingHandle(logger, log_path, queue_handler, listener, tuple(sinks))
    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(queue_handler)
    listener.start()
    _active[logger_name] = handle

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    return handle


def shutdown_logging(handle: LoggingHandle | None = None) -> None:
    """Shut ``handle`` down, or every run log still installed."""

    targets = [handle] if handle is not None else list(_active.values())
    for item in targets:
        item.shutdown()


atexit.register(shutdown_logging)


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields for records logged inside the block; ``None`` unbinds."""

    merged = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = str(value)
    token = _CORRELATION.set(tuple(merged.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def _parse_level(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    level = logging.getLevelName(str(value).strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return level


__all__ = [
    "LOG_FILENAME",
    "LoggingHandle",
    "correlation_scope",
    "get_correlation_context",
    "setup_logging",
    "shutdown_logging",
]
