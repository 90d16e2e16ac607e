"""
compile-orchestrator — build progress event bus

File: src/compile_orchestrator/observability/events.py
Last updated: 2026-10-17

Purpose
- Fan build progress (phase changes, log chunks, phase records) out to whoever watches a
  build: the CLI renderer, tests, or a transport in front of the service.

Functional requirements
- Subscribers are called in subscription order on the publishing thread. A coroutine
  subscriber is scheduled as a task on the running loop and never awaited by the
  publisher; `drain` waits for the ones still pending.
- A failing subscriber is logged and recorded; the build and the other subscribers
  carry on.
- The last ``buffer_size`` events stay replayable per build.
- Payloads pass through ``redact_sensitive`` before anyone sees them.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from compile_orchestrator.domain.events import BuildEvent, BuildEventType, redact_sensitive

logger = logging.getLogger(__name__)

Subscriber = Callable[[BuildEvent], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    event_id: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    callback: Subscriber
    event_type: BuildEventType | None
    build_id: str | None


def _matches(
    event: BuildEvent, event_type: BuildEventType | None, build_id: str | None
) -> bool:
    return (event_type is None or event_type is event.event_type) and (
        build_id is None or build_id == event.build_id
    )


class EventBus:
    def __init__(self, *, buffer_size: int = 512, redact_payloads: bool = True) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        self._history: deque[BuildEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._tokens = itertools.count(1)
        self._redact = redact_payloads
        self._lock = threading.Lock()
        self._pending: set[asyncio.Task[object]] = set()

    def subscribe(
        self,
        event_type: BuildEventType | str | None,
        callback: Subscriber,
        *,
        build_id: str | None = None,
    ) -> int:
        """Register ``callback`` for one event type, or every type when ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        kind = None if event_type is None else BuildEventType(event_type)
        with self._lock:
            token = next(self._tokens)
            self._subscriptions[token] = _Subscription(callback, kind, build_id)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def emit(
        self,
        event_type: BuildEventType | str,
        build_id: str,
        payload: Mapping[str, object] | None = None,
    ) -> tuple[BuildEvent, tuple[DispatchError, ...]]:
        event = BuildEvent(
            event_type=BuildEventType(event_type), build_id=build_id, payload=dict(payload or {})
        )
        if self._redact:
            event = redact_sensitive(event)

        with self._lock:
            self._history.append(event)
            targets = [
                item
                for item in self._subscriptions.values()
                if _matches(event, item.event_type, item.build_id)
            ]

        errors: list[DispatchError] = []
        for subscription in targets:
            try:
                outcome = subscription.callback(event)
                if inspect.isawaitable(outcome):
                    self._schedule(subscription.callback, event, outcome)
            except Exception as exc:  # noqa: BLE001
                errors.append(self._failed(subscription.callback, event, exc))
        if errors:
            with self._lock:
                self._errors.extend(errors)
        return event, tuple(errors)

    async def drain(self) -> tuple[DispatchError, ...]:
        """Wait for scheduled coroutine subscribers; return the failures among them."""

        results: list[DispatchError] = []
        while self._pending:
            batch = list(self._pending)
            outcomes = await asyncio.gather(*batch, return_exceptions=True)
            self._pending.difference_update(batch)
            results.extend(item for item in outcomes if isinstance(item, DispatchError))
        return tuple(results)

    def replay(
        self,
        *,
        build_id: str | None = None,
        event_type: BuildEventType | str | None = None,
        limit: int | None = None,
    ) -> tuple[BuildEvent, ...]:
        """Buffered events in publish order, newest ``limit`` only when given."""

        kind = None if event_type is None else BuildEventType(event_type)
        with self._lock:
            matched = [event for event in self._history if _matches(event, kind, build_id)]
        if limit is not None:
            matched = matched[-limit:] if limit > 0 else []
        return tuple(matched)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def _schedule(self, callback: Subscriber, event: BuildEvent, awaitable: object) -> None:
        async def run() -> DispatchError | None:
            try:
                await awaitable  # type: ignore[misc]
            except Exception as exc:  # noqa: BLE001
                failure = self._failed(callback, event, exc)
                with self._lock:
                    self._errors.append(failure)
                return failure
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise
        task = loop.create_task(run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    def _failed(callback: Subscriber, event: BuildEvent, exc: Exception) -> DispatchError:
        target = getattr(callback, "__name__", repr(callback))
        logger.warning(
            "event subscriber failed",
            extra={"target": target, "event_type": event.event_type.value},
        )
        return DispatchError(event.event_id, target, exc.__class__.__name__, str(exc))


__all__ = ["DispatchError", "EventBus", "Subscriber"]
