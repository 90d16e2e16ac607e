"""Single-flight admission: at most one in-flight build per calling principal."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from compile_orchestrator.domain.errors import BuildError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AdmissionToken:
    principal: str
    build_id: str
    started_at: datetime


@dataclass(frozen=True, slots=True)
class BuildConflict:
    """The principal already has a build in flight."""

    principal: str
    active_build_id: str
    started_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "principal": self.principal,
            "active_build_id": self.active_build_id,
            "started_at": self.started_at.isoformat().replace("+00:00", "Z"),
        }


class BuildConflictError(BuildError):
    """Raised to callers whose principal already has an admitted build."""

    code = "conflict"

    def __init__(self, conflict: BuildConflict) -> None:
        self.conflict = conflict
        super().__init__(
            f"A build is already in progress: {conflict.active_build_id}",
            detail=conflict.to_dict(),
        )


class ConcurrencyGuard:
    """Tracks the active build per principal.

    ``admit`` and ``release`` are atomic with respect to each other, so two concurrent
    admissions for the same principal can never both succeed.
    """

    def __init__(self, *, now_fn: Callable[[], datetime] | None = None) -> None:
        self._active: dict[str, AdmissionToken] = {}
        self._lock = threading.Lock()
        self._now_fn: Callable[[], datetime] = now_fn or (lambda: datetime.now(tz=UTC))

    def admit(self, principal: str, build_id: str) -> AdmissionToken | BuildConflict:
        with self._lock:
            current = self._active.get(principal)
            if current is not None:
                logger.info(
                    "admission refused",
                    extra={"principal": principal, "active_build_id": current.build_id},
                )
                return BuildConflict(
                    principal=principal,
                    active_build_id=current.build_id,
                    started_at=current.started_at,
                )
            token = AdmissionToken(
                principal=principal, build_id=build_id, started_at=self._now_fn()
            )
            self._active[principal] = token
        return token

    def release(self, token: AdmissionToken) -> bool:
        """Drop ``token``'s admission. A stale token never releases a newer build."""

        with self._lock:
            current = self._active.get(token.principal)
            if current is None or current.build_id != token.build_id:
                return False
            del self._active[token.principal]
        return True

    def active(self, principal: str) -> AdmissionToken | None:
        with self._lock:
            return self._active.get(principal)

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @contextmanager
    def hold(self, principal: str, build_id: str) -> Iterator[AdmissionToken]:
        """Admit for the duration of the block; release even if the block raises."""

        admitted = self.admit(principal, build_id)
        if isinstance(admitted, BuildConflict):
            raise BuildConflictError(admitted)
        try:
            yield admitted
        finally:
            self.release(admitted)


__all__ = [
    "AdmissionToken",
    "BuildConflict",
    "BuildConflictError",
    "ConcurrencyGuard",
]
