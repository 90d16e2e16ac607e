"""
compile-orchestrator — Anthropic provider adapter

File: src/compile_orchestrator/synthesis_plane/providers/anthropic_adapter.py
Last updated: 2026-10-17

Purpose
- Anthropic messages adapter used by the repair advisor.

What should be included in this file
- Lazy SDK client construction, request payload mapping, response normalization.
- Exception mapping into the provider error taxonomy, including retry-after hints.

Functional requirements
- One attempt per ``send``; the advisor owns retries.

Non-functional requirements
- Must be configurable and safe; no secrets in logs.
"""

from __future__ import annotations

import asyncio
import importlib
import os
from collections.abc import Mapping, Sequence
from typing import Protocol, cast

from compile_orchestrator.synthesis_plane.providers.base import (
    BaseProvider,
    ProviderAuthenticationError,
    ProviderError,
    ProviderInvalidRequestError,
    ProviderRateLimitError,
    ProviderRequest,
    ProviderResponse,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderUsage,
)


class _AnthropicMessagesAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _AnthropicClient(Protocol):
    messages: _AnthropicMessagesAPI


class AnthropicProvider(BaseProvider):
    """Anthropic messages adapter with optional SDK dependency and injected client support."""

    provider_name = "anthropic"

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        api_key_env: str | None = None,
        timeout_seconds: float | None = None,
        client: _AnthropicClient | None = None,
    ) -> None:
        self.model = _validate_non_empty_str(model, "model")
        self._api_key = _validate_optional_str(api_key, "api_key")
        self._api_key_env = _validate_optional_str(api_key_env, "api_key_env")

        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        payload: dict[str, object] = {
            "model": request.model,
            "messages": [{"role": "user", "content": request.user_prompt}],
            "max_tokens": request.max_tokens,
            "extra_headers": {"Idempotency-Key": request.fingerprint()},
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        try:
            client = self._ensure_client()
            raw_response = await client.messages.create(**payload)
        except ProviderError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise self.map_exception(exc) from exc
        return _normalize_response(raw_response, request=request)

    def map_exception(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc

        status_code = _read_status_code(exc)
        class_name = exc.__class__.__name__.lower()
        detail = _exception_detail(exc)

        if status_code in {401, 403} or "auth" in class_name or "permission" in class_name:
            return ProviderAuthenticationError(
                provider=self.provider_name,
                detail=detail,
                http_status=status_code,
            )

        if status_code == 429 or "ratelimit" in class_name or "429" in detail:
            return ProviderRateLimitError(
                provider=self.provider_name,
                detail=detail,
                http_status=status_code if status_code is not None else 429,
                retry_after_seconds=_read_retry_after(exc),
            )

        if isinstance(exc, asyncio.TimeoutError) or "timeout" in class_name:
            return ProviderTimeoutError(provider=self.provider_name, detail=detail)

        if status_code is not None and status_code in {400, 404, 409, 413, 422}:
            return ProviderInvalidRequestError(
                provider=self.provider_name,
                detail=detail,
                http_status=status_code,
            )

        if "badrequest" in class_name or "invalidrequest" in class_name:
            return ProviderInvalidRequestError(provider=self.provider_name, detail=detail)

        if status_code is not None and status_code >= 500:
            return ProviderServiceError(
                provider=self.provider_name,
                detail=detail,
                retryable=True,
                http_status=status_code,
            )

        return ProviderServiceError(provider=self.provider_name, detail=detail, retryable=True)

    def _ensure_client(self) -> _AnthropicClient:
        if self._client is not None:
            return self._client
        self._client = self._create_default_client()
        return self._client

    def _create_default_client(self) -> _AnthropicClient:
        try:
            anthropic_module = importlib.import_module("anthropic")
        except ImportError as exc:
            raise ProviderUnavailableError(
                provider=self.provider_name,
                detail="anthropic SDK is not installed",
            ) from exc

        async_anthropic = getattr(anthropic_module, "AsyncAnthropic", None)
        if async_anthropic is None:
            raise ProviderUnavailableError(
                provider=self.provider_name,
                detail="anthropic SDK does not expose AsyncAnthropic",
            )

        init_kwargs: dict[str, object] = {"api_key": self._resolve_api_key()}
        if self._timeout_seconds is not None:
            init_kwargs["timeout"] = self._timeout_seconds
        # The advisor owns retries; disable the SDK's own retry loop.
        init_kwargs["max_retries"] = 0

        client = async_anthropic(**init_kwargs)
        if not hasattr(client, "messages"):
            raise ProviderUnavailableError(
                provider=self.provider_name,
                detail="anthropic client missing messages API",
            )
        return cast("_AnthropicClient", client)

    def _resolve_api_key(self) -> str:
        if self._api_key is not None:
            return self._api_key

        env_name = self._api_key_env or "ANTHROPIC_API_KEY"
        configured = os.getenv(env_name)
        if configured is None or not configured.strip():
            raise ProviderAuthenticationError(
                provider=self.provider_name,
                detail=f"missing Anthropic API key in env var {env_name}",
                http_status=401,
            )
        return configured




def _normalize_response(
    raw_response: object,
    *,
    request: ProviderRequest,
) -> ProviderResponse:
    text_chunks: list[str] = []
    for item in _read_sequence(raw_response, "content"):
        if (_read_str(item, "type") or "").lower() != "text":
            continue
        text_value = _read_str(item, "text")
        if text_value:
            text_chunks.append(text_value)

    combined_text = "\n".join(text_chunks)
    if not combined_text.strip():
        raise ProviderResponseError(
            provider="anthropic",
            detail="response does not contain text content",
        )

    usage_payload = _read_value(raw_response, "usage")
    usage = ProviderUsage(
        input_tokens=_read_int(usage_payload, "input_tokens") or 0,
        output_tokens=_read_int(usage_payload, "output_tokens") or 0,
    )
    return ProviderResponse(
        model=_read_str(raw_response, "model") or request.model,
        raw_text=combined_text,
        usage=usage,
        finish_reason=_read_str(raw_response, "stop_reason"),
        request_id=_read_str(raw_response, "id"),
    )


def _read_retry_after(exc: BaseException) -> float | None:
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if headers is None:
        headers = getattr(exc, "headers", None)
    if headers is None:
        return None
    try:
        raw = headers.get("retry-after")
    except AttributeError:
        return None
    if raw is None:
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        return None
    return value if value >= 0 else None


def _exception_detail(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return " ".join(text.split())
    return exc.__class__.__name__


def _read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        value = getattr(exc, key, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        nested = getattr(response, "status_code", None)
        if isinstance(nested, int):
            return nested
    return None


def _read_value(value: object, key: str, *, default: object | None = None) -> object | None:
    if value is None:
        return default
    if isinstance(value, Mapping):
        return cast("object | None", value.get(key, default))
    return cast("object | None", getattr(value, key, default))


def _read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = _read_value(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


def _read_str(value: object, key: str) -> str | None:
    candidate = _read_value(value, key)
    if isinstance(candidate, str) and candidate.strip():
        return candidate
    return None


def _read_int(value: object, key: str) -> int | None:
    candidate = _read_value(value, key)
    if isinstance(candidate, int) and not isinstance(candidate, bool):
        return candidate
    return None


def _validate_non_empty_str(value: str, name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{name} cannot be empty")
    return normalized


def _validate_optional_str(value: str | None, name: str) -> str | None:
    if value is None:
        return None
    return _validate_non_empty_str(value, name)


__all__ = ["AnthropicProvider"]
