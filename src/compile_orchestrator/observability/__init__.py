"""Run logging and build progress events."""

from compile_orchestrator.observability.events import DispatchError, EventBus, Subscriber
from compile_orchestrator.observability.logging import (
    LoggingHandle,
    correlation_scope,
    get_correlation_context,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "EventBus",
    "LoggingHandle",
    "Subscriber",
    "correlation_scope",
    "get_correlation_context",
    "setup_logging",
    "shutdown_logging",
]
