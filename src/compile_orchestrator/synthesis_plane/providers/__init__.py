"""Advisor providers: the provider contract plus the Anthropic messages adapter."""

from compile_orchestrator.synthesis_plane.providers.anthropic_adapter import AnthropicProvider
from compile_orchestrator.synthesis_plane.providers.base import (
    BaseProvider,
    ProviderError,
    ProviderRateLimitError,
    ProviderRequest,
    ProviderResponse,
    RetryPolicy,
    send_with_retries,
)

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderRequest",
    "ProviderResponse",
    "RetryPolicy",
    "send_with_retries",
]
