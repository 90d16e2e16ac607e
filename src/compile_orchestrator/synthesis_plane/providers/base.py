"""
compile-orchestrator — provider contract for the repair advisor

File: src/compile_orchestrator/synthesis_plane/providers/base.py
Last updated: 2026-10-17

Purpose
- The request/response shapes an advisor provider speaks, its error taxonomy, and the
  retry loop the advisor wraps around a single ``send``.

Functional requirements
- Rate-limited requests wait for the server's retry-after hint, never less than a
  configured floor, and are re-sent a bounded number of times.
- Other retryable failures (timeouts, 5xx) back off exponentially up to a cap.
- Anything else surfaces on the first failure.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import ClassVar, NoReturn, TypeAlias

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RetryCallback: TypeAlias = Callable[[int, "ProviderError", float], None]


@dataclass(frozen=True, slots=True)
class ProviderRequest:
    """One advisor prompt: rendered system and user text plus an output budget."""

    model: str
    user_prompt: str
    system_prompt: str = ""
    max_tokens: int = 16000
    metadata: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.model, str) or not self.model.strip():
            raise ValueError("ProviderRequest.model cannot be empty")
        if not isinstance(self.user_prompt, str) or not isinstance(self.system_prompt, str):
            raise TypeError("ProviderRequest prompts must be strings")
        if self.max_tokens <= 0:
            raise ValueError("ProviderRequest.max_tokens must be > 0")
        object.__setattr__(self, "model", self.model.strip())
        object.__setattr__(self, "metadata", dict(self.metadata))

    def fingerprint(self) -> str:
        """Stable digest of what is sent; identical prompts share one idempotency key."""

        canonical = json.dumps(
            [self.model, self.system_prompt, self.user_prompt, self.max_tokens],
            separators=(",", ":"),
            ensure_ascii=False,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class ProviderUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True, slots=True)
class ProviderResponse:
    """Normalized reply. ``raw_text`` joins every text block of the message."""

    model: str
    raw_text: str
    usage: ProviderUsage = field(default_factory=ProviderUsage)
    finish_reason: str | None = None
    request_id: str | None = None


class BaseProvider(abc.ABC):
    provider_name: str = "provider"

    @abc.abstractmethod
    async def send(self, request: ProviderRequest) -> ProviderResponse:
        """Make exactly one attempt; raise :class:`ProviderError` on failure."""

    def map_exception(self, exc: Exception) -> ProviderError:
        """Classify an SDK exception. Unknown failures are not retried."""

        if isinstance(exc, ProviderError):
            return exc
        return ProviderServiceError(
            str(exc) or exc.__class__.__name__, provider=self.provider_name, retryable=False
        )


class ProviderError(RuntimeError):
    """Normalized provider failure; subclasses fix ``code`` and default retryability."""

    code: ClassVar[str] = "provider"
    default_retryable: ClassVar[bool] = False

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
        retry_after_seconds: float | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.detail = " ".join(str(detail).split()) or "unknown error"
        self.provider = provider
        self.http_status = http_status
        self.retry_after_seconds = retry_after_seconds
        self.retryable = self.default_retryable if retryable is None else retryable
        status = f" (HTTP {http_status})" if http_status is not None else ""
        super().__init__(f"{provider} {self.code}{status}: {self.detail}")


class ProviderUnavailableError(ProviderError):
    """The SDK is missing or cannot build a client."""

    code = "unavailable"


class ProviderAuthenticationError(ProviderError):
    code = "auth"


class ProviderInvalidRequestError(ProviderError):
    code = "invalid_request"


class ProviderRateLimitError(ProviderError):
    code = "rate_limit"
    default_retryable = True


class ProviderTimeoutError(ProviderError):
    code = "timeout"
    default_retryable = True


class ProviderServiceError(ProviderError):
    code = "service"
    default_retryable = True


class ProviderResponseError(ProviderError):
    """The reply carried no usable text."""

    code = "response_invalid"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Re-send budget: rate limits and transient failures are counted separately."""

    rate_limit_attempts: int = 5
    rate_limit_min_wait_seconds: float = 65.0
    max_retries: int = 2
    initial_delay_seconds: float = 0.25
    max_delay_seconds: float = 4.0

    def __post_init__(self) -> None:
        if self.rate_limit_attempts < 1:
            raise ValueError("rate_limit_attempts must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if min(self.rate_limit_min_wait_seconds, self.initial_delay_seconds) < 0:
            raise ValueError("wait times must be >= 0")

    def rate_limit_wait(self, error: ProviderError) -> float:
        hint = error.retry_after_seconds or 0.0
        return max(hint, self.rate_limit_min_wait_seconds)

    def backoff(self, retry_number: int) -> float:
        return min(self.initial_delay_seconds * 2 ** (retry_number - 1), self.max_delay_seconds)


async def send_with_retries(
    provider: BaseProvider,
    request: ProviderRequest,
    *,
    policy: RetryPolicy,
    sleep: SleepFn = asyncio.sleep,
    on_retry: RetryCallback | None = None,
) -> ProviderResponse:
    """``provider.send`` under ``policy``; the last mapped error is raised when it runs out."""

    rate_limited = 0
    retries = 0
    while True:
        try:
            return await provider.send(request)
        except Exception as exc:  # noqa: BLE001
            error = provider.map_exception(exc)
            if isinstance(error, ProviderRateLimitError):
                rate_limited += 1
                if rate_limited >= policy.rate_limit_attempts:
                    _reraise(error, exc)
                attempt, delay = rate_limited, policy.rate_limit_wait(error)
            elif error.retryable and retries < policy.max_retries:
                retries += 1
                attempt, delay = retries, policy.backoff(retries)
            else:
                _reraise(error, exc)
            if on_retry is not None:
                on_retry(attempt, error, delay)
            await sleep(delay)


def _reraise(error: ProviderError, original: Exception) -> NoReturn:
    if error is original:
        raise error
    raise error from original


__all__ = [
    "BaseProvider",
    "JSONValue",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderInvalidRequestError",
    "ProviderRateLimitError",
    "ProviderRequest",
    "ProviderResponse",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderUsage",
    "RetryPolicy",
    "SleepFn",
    "send_with_retries",
]
