"""Cancellation and timeouts for work split between the event loop and worker threads."""

from __future__ import annotations

import asyncio
import inspect
import threading
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class CancellationToken:
    """Stop flag for one build, checked between phases and inside worker-thread walks."""

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._reason = "build cancelled"

    def cancel(self, reason: str | None = None) -> None:
        if reason:
            self._reason = reason
        self._flag.set()

    @property
    def is_cancelled(self) -> bool:
        return self._flag.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._flag.is_set():
            raise asyncio.CancelledError(self._reason)


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``.

    Raises the builtin :class:`TimeoutError` on expiry. A token that is already
    cancelled short-circuits before anything is scheduled.
    """

    try:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
    except BaseException:
        # Never scheduled; close it so no "never awaited" warning is emitted.
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise

    try:
        return await asyncio.wait_for(awaitable, timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"timed out after {timeout_seconds} seconds") from exc


__all__ = ["CancellationToken", "run_with_timeout"]
