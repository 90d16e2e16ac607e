"""Build error taxonomy shared by every plane.

Only :class:`ValidationError` (and concurrency conflicts) ever leave the build
service as exceptions. The orchestrator captures every other member of this
hierarchy into the job's phase history via :attr:`BuildError.code`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import ClassVar


class BuildError(RuntimeError):
    """Base error with a stable machine-readable code."""

    code: ClassVar[str] = "build_error"

    def __init__(self, message: str, *, detail: Mapping[str, object] | None = None) -> None:
        self.message = " ".join(str(message).split()) or self.__class__.__name__
        self.detail = dict(detail or {})
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"code": self.code, "message": self.message}
        if self.detail:
            payload["detail"] = dict(self.detail)
        return payload


class ValidationError(BuildError, ValueError):
    """Malformed input rejected before any sandbox work begins."""

    code = "validation"


class SandboxError(BuildError):
    """The isolation runtime failed to create, start, or stop the environment."""

    code = "sandbox"


class SandboxUnavailableError(SandboxError):
    """Docker SDK or daemon is not reachable."""

    code = "sandbox_unavailable"


class SandboxTimeoutError(SandboxError, TimeoutError):
    """Wall-clock timeout exceeded for one sandbox run."""

    code = "timeout"


class CompilationError(BuildError):
    """Compilation failed, or succeeded without artifacts or with error lines in the log."""

    code = "compilation"

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        errors: Sequence[str] = (),
    ) -> None:
        self.exit_code = exit_code
        self.errors = tuple(errors)
        super().__init__(message, detail={"exit_code": exit_code, "errors": list(self.errors)})


class AdvisorError(BuildError):
    """The repair advisor was unreachable or exhausted its retries."""

    code = "advisor"


class SafetyRejection(BuildError):
    """One proposed edit violates the phase allow-list or the regression guard."""

    code = "safety_rejection"

    def __init__(self, reason: str, *, path: str = "") -> None:
        self.reason = reason
        self.path = path
        super().__init__(reason, detail={"path": path})


class ExhaustedRetries(BuildError):
    """The iteration cap was reached without a successful build."""

    code = "exhausted"


__all__ = [
    "AdvisorError",
    "BuildError",
    "CompilationError",
    "ExhaustedRetries",
    "SafetyRejection",
    "SandboxError",
    "SandboxTimeoutError",
    "SandboxUnavailableError",
    "ValidationError",
]
