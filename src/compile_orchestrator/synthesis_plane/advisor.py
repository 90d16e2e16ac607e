"""
compile-orchestrator — AI repair advisor

File: src/compile_orchestrator/synthesis_plane/advisor.py
Last updated: 2026-10-17

Purpose
- Ask the configured provider for structure fixes or compilation repairs and turn the
  free-form reply into a strict tagged result.

What should be included in this file
- Prompt rendering from a context pack, bounded retries with the rate-limit policy,
  provider error mapping, response parsing, and the reason/summary helpers the
  orchestrator records.

Functional requirements
- Response parsing never raises: no JSON block, invalid JSON, or a missing ``fixes``
  field all yield zero proposals.
- ``cannotFix`` is honoured even when the surrounding JSON is invalid.
- Provider failures surface as :class:`AdvisorError` once retries are exhausted.

Non-functional requirements
- Responses are logged only after secret redaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, TypeAlias

from compile_orchestrator.domain.errors import AdvisorError
from compile_orchestrator.domain.models import FixAction, FixProposal
from compile_orchestrator.security.redaction import redact_text
from compile_orchestrator.synthesis_plane.prompt_templates import (
    REPAIR_TEMPLATE,
    STRUCTURE_TEMPLATE,
    SYSTEM_TEMPLATE,
    PromptTemplateEngine,
    repair_variables,
    structure_variables,
)
from compile_orchestrator.synthesis_plane.providers.anthropic_adapter import AnthropicProvider
from compile_orchestrator.synthesis_plane.providers.base import (
    BaseProvider,
    ProviderError,
    ProviderRequest,
    RetryPolicy,
    SleepFn,
    send_with_retries,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from compile_orchestrator.synthesis_plane.context_assembler import ContextPack

logger = logging.getLogger(__name__)

DEFAULT_CANNOT_FIX_REASON: Final[str] = (
    "AI determined this issue cannot be fixed without simplifying the code"
)
MAX_CANNOT_FIX_CHARS: Final[int] = 200
MAX_SUMMARY_REASONING_CHARS: Final[int] = 300
MAX_ANALYSIS_CHARS: Final[int] = 1000

_JSON_BLOCK_RE = re.compile(r"```json\s*([\s\S]*?)```")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_CANNOT_FIX_RE = re.compile(r'"cannotFix"\s*:\s*true')


@dataclass(frozen=True, slots=True)
class ParsedAdvice:
    """Advisor reply that contained a usable JSON object."""

    reasoning: str = ""
    analysis: str = ""
    fixes: tuple[FixProposal, ...] = ()
    cannot_fix: bool = False
    raw_text: str = ""


@dataclass(frozen=True, slots=True)
class UnparsedAdvice:
    """Advisor reply with no usable JSON; treated as zero fixes."""

    raw_text: str = ""

    @property
    def fixes(self) -> tuple[FixProposal, ...]:
        return ()

    @property
    def cannot_fix(self) -> bool:
        return False


Advice: TypeAlias = ParsedAdvice | UnparsedAdvice


def parse_advice(text: str) -> Advice:
    """Parse a free-form advisor reply. Never raises."""

    raw = text if isinstance(text, str) else ""
    for candidate in _json_candidates(raw):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, Mapping):
            return _advice_from_payload(payload, raw)

    if _CANNOT_FIX_RE.search(raw):
        return ParsedAdvice(cannot_fix=True, raw_text=raw)
    return UnparsedAdvice(raw_text=raw)


def cannot_fix_reason(advice: Advice) -> str:
    if isinstance(advice, ParsedAdvice) and advice.analysis:
        return _clip(advice.analysis, MAX_ANALYSIS_CHARS)
    stripped = _CODE_BLOCK_RE.sub("", advice.raw_text).strip()
    if stripped:
        return stripped[:MAX_CANNOT_FIX_CHARS]
    return DEFAULT_CANNOT_FIX_REASON


def attempt_summary(advice: Advice, applied: Iterable[FixProposal]) -> str:
    """Short rationale kept in the job's fix history."""

    if isinstance(advice, ParsedAdvice) and advice.analysis:
        reasoning = advice.reasoning[:MAX_SUMMARY_REASONING_CHARS]
        analysis = _clip(advice.analysis, MAX_ANALYSIS_CHARS)
        return f"{analysis} | Reasoning: {reasoning}"
    listed = ", ".join(f"{item.action_name} {item.path}" for item in applied)
    return _clip(listed, MAX_ANALYSIS_CHARS)


class RepairAdvisor:
    """Consults a provider with rendered prompts and returns parsed advice."""

    def __init__(
        self,
        provider: BaseProvider,
        *,
        model: str,
        max_tokens: int = 16000,
        retry: RetryPolicy | None = None,
        templates: PromptTemplateEngine | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens
        self._retry = retry or RetryPolicy()
        self._templates = templates or PromptTemplateEngine()
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        advisor_config: Mapping[str, Any],
        *,
        provider: BaseProvider | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> RepairAdvisor:
        return cls(
            provider if provider is not None else create_provider(advisor_config),
            model=str(advisor_config["model"]),
            max_tokens=int(advisor_config.get("max_tokens", 16000)),
            retry=RetryPolicy(
                rate_limit_attempts=int(advisor_config.get("rate_limit_retries", 5)),
                rate_limit_min_wait_seconds=float(
                    advisor_config.get("rate_limit_min_wait_seconds", 65.0)
                ),
            ),
            sleep=sleep,
        )

    async def request_structure_fixes(self, pack: ContextPack) -> Advice:
        return await self._consult(STRUCTURE_TEMPLATE, structure_variables(pack), pack)

    async def request_fix(self, pack: ContextPack) -> Advice:
        return await self._consult(REPAIR_TEMPLATE, repair_variables(pack), pack)

    async def _consult(
        self,
        template: str,
        variables: Mapping[str, object],
        pack: ContextPack,
    ) -> Advice:
        system = self._templates.render(SYSTEM_TEMPLATE, variables={})
        user = self._templates.render(template, variables=variables)
        request = ProviderRequest(
            model=self._model,
            user_prompt=user.prompt,
            system_prompt=system.prompt,
            max_tokens=self._max_tokens,
            metadata={
                "template": user.name,
                "template_version": user.template_version,
                "prompt_hash": user.prompt_hash,
                "iteration": pack.iteration,
            },
        )

        try:
            response = await send_with_retries(
                self._provider,
                request,
                policy=self._retry,
                sleep=self._sleep,
                on_retry=self._on_retry,
            )
        except ProviderError as exc:
            logger.warning(
                "advisor request failed",
                extra={"template": user.name, "code": exc.code, "http_status": exc.http_status},
            )
            raise AdvisorError(
                f"Advisor request failed: {exc.detail}",
                detail={
                    "provider": exc.provider,
                    "code": exc.code,
                    "http_status": exc.http_status,
                    "retryable": exc.retryable,
                },
            ) from exc

        logger.debug(
            "advisor response received",
            extra={
                "template": user.name,
                "prompt_hash": user.prompt_hash,
                "response": redact_text(response.raw_text),
                "output_tokens": response.usage.output_tokens,
            },
        )
        return parse_advice(response.raw_text)

    def _on_retry(self, attempt: int, error: ProviderError, delay_seconds: float) -> None:
        logger.warning(
            "advisor retry scheduled",
            extra={"attempt": attempt, "code": error.code, "delay_seconds": delay_seconds},
        )


def create_provider(advisor_config: Mapping[str, Any]) -> BaseProvider:
    """Build the provider named by ``advisor.provider``."""

    name = str(advisor_config.get("provider", "anthropic"))
    if name != "anthropic":
        raise ValueError(f"unsupported advisor provider: {name!r}")
    return AnthropicProvider(
        model=str(advisor_config["model"]),
        api_key_env=advisor_config.get("api_key_env"),
        timeout_seconds=advisor_config.get("request_timeout_seconds"),
    )


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def _json_candidates(text: str) -> list[str]:
    candidates = [match.group(1).strip() for match in _JSON_BLOCK_RE.finditer(text)]
    match = _JSON_OBJECT_RE.search(text)
    if match is not None:
        candidates.append(match.group(0))
    return candidates


def _advice_from_payload(payload: Mapping[str, object], raw: str) -> ParsedAdvice:
    raw_fixes = payload.get("fixes")
    fixes: list[FixProposal] = []
    if isinstance(raw_fixes, list):
        for item in raw_fixes:
            if isinstance(item, Mapping):
                fixes.append(FixProposal.from_mapping(item))
            else:
                # Kept so the validator records it as malformed.
                fixes.append(FixProposal(action=FixAction.UPDATE, path=""))
    return ParsedAdvice(
        reasoning=_text(payload.get("reasoning")),
        analysis=_text(payload.get("analysis")),
        fixes=tuple(fixes),
        cannot_fix=payload.get("cannotFix") is True,
        raw_text=raw,
    )


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


__all__ = [
    "DEFAULT_CANNOT_FIX_REASON",
    "Advice",
    "ParsedAdvice",
    "RepairAdvisor",
    "UnparsedAdvice",
    "attempt_summary",
    "cannot_fix_reason",
    "create_provider",
    "parse_advice",
]
