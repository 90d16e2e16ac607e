from __future__ import annotations

from pathlib import Path

import pytest
from conftest import ScriptedProvider, advice

from compile_orchestrator.domain.errors import AdvisorError
from compile_orchestrator.domain.models import FixAction, FixProposal
from compile_orchestrator.synthesis_plane.advisor import (
    DEFAULT_CANNOT_FIX_REASON,
    MAX_ANALYSIS_CHARS,
    ParsedAdvice,
    RepairAdvisor,
    UnparsedAdvice,
    attempt_summary,
    cannot_fix_reason,
    create_provider,
    parse_advice,
)
from compile_orchestrator.synthesis_plane.context_assembler import ContextAssembler, ContextPack
from compile_orchestrator.synthesis_plane.providers.anthropic_adapter import AnthropicProvider
from compile_orchestrator.synthesis_plane.providers.base import (
    ProviderRateLimitError,
    ProviderTimeoutError,
    RetryPolicy,
)

MANIFEST_FIX = {
    "action": "update",
    "path": "programs/demo/Cargo.toml",
    "content": "[package]\nname = 'demo'\n",
    "reason": "add dependency",
}


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def pack(anchor_project: Path) -> ContextPack:
    return ContextAssembler(anchor_project).assemble(
        iteration=1,
        combined_log="error[E0432]: unresolved import `anchor_spl`\n",
        error_message="Build failed with exit code 1",
    )


def test_parses_fenced_json_reply() -> None:
    parsed = parse_advice(advice([MANIFEST_FIX], analysis="missing crate"))

    assert isinstance(parsed, ParsedAdvice)
    assert parsed.analysis == "missing crate"
    assert parsed.cannot_fix is False
    assert parsed.fixes == (
        FixProposal(
            action=FixAction.UPDATE,
            path="programs/demo/Cargo.toml",
            content="[package]\nname = 'demo'\n",
            reason="add dependency",
        ),
    )


def test_parses_bare_json_object_with_surrounding_prose() -> None:
    parsed = parse_advice('Here you go: {"analysis": "ok", "fixes": []} good luck')

    assert isinstance(parsed, ParsedAdvice)
    assert parsed.analysis == "ok"
    assert parsed.fixes == ()


def test_reply_without_json_yields_no_fixes() -> None:
    parsed = parse_advice("I am not sure what to do here.")

    assert isinstance(parsed, UnparsedAdvice)
    assert parsed.fixes == ()
    assert parsed.cannot_fix is False


def test_missing_fixes_field_and_malformed_entries() -> None:
    assert parse_advice('```json\n{"analysis": "x"}\n```').fixes == ()

    parsed = parse_advice('```json\n{"fixes": ["not an object", {"path": "a.toml"}]}\n```')

    assert [item.path for item in parsed.fixes] == ["", "a.toml"]
    assert all(item.action is FixAction.UPDATE for item in parsed.fixes)


def test_cannot_fix_survives_invalid_json() -> None:
    parsed = parse_advice('```json\n{"cannotFix": true, "fixes": [oops]}\n```')

    assert isinstance(parsed, ParsedAdvice)
    assert parsed.cannot_fix is True
    assert parsed.fixes == ()


def test_cannot_fix_reason_prefers_analysis_then_prose() -> None:
    refused = parse_advice(advice(cannot_fix=True, analysis="needs a rewrite"))
    assert cannot_fix_reason(refused) == "needs a rewrite"

    prose = "The macro API changed.\n```json\n{\"cannotFix\": true, oops}\n```"
    assert cannot_fix_reason(parse_advice(prose)) == "The macro API changed."

    assert cannot_fix_reason(parse_advice('{"cannotFix": true, broken')) == (
        '{"cannotFix": true, broken'
    )
    assert cannot_fix_reason(UnparsedAdvice(raw_text="```x```")) == DEFAULT_CANNOT_FIX_REASON


def test_attempt_summary() -> None:
    parsed = parse_advice(advice([MANIFEST_FIX], analysis="added crate"))
    summary = attempt_summary(parsed, parsed.fixes)

    assert summary == "added crate | Reasoning: reasoning"
    assert attempt_summary(UnparsedAdvice(), parsed.fixes) == "update programs/demo/Cargo.toml"


def test_long_analysis_is_clipped() -> None:
    verbose = parse_advice(advice([MANIFEST_FIX], analysis="x" * 3000, cannot_fix=True))

    reason = cannot_fix_reason(verbose)
    summary = attempt_summary(verbose, verbose.fixes)

    assert reason == "x" * (MAX_ANALYSIS_CHARS - 3) + "..."
    assert summary == f"{reason} | Reasoning: reasoning"


async def test_request_fix_renders_repair_prompt(pack: ContextPack) -> None:
    provider = ScriptedProvider([advice([MANIFEST_FIX])])
    advisor = RepairAdvisor(provider, model="claude-test", max_tokens=1000)

    result = await advisor.request_fix(pack)

    assert [item.path for item in result.fixes] == ["programs/demo/Cargo.toml"]
    (request,) = provider.requests
    assert request.model == "claude-test"
    assert request.max_tokens == 1000
    assert request.metadata["template"] == "repair"
    assert request.metadata["iteration"] == 1
    assert "unresolved import" in request.user_prompt
    assert "programs/demo/src/lib.rs" in request.user_prompt
    assert "cannotFix" in request.system_prompt


async def test_request_structure_fixes_uses_structure_prompt(pack: ContextPack) -> None:
    provider = ScriptedProvider([advice()])
    advisor = RepairAdvisor(provider, model="claude-test")

    result = await advisor.request_structure_fixes(pack)

    assert result.fixes == ()
    assert provider.requests[0].metadata["template"] == "structure"
    assert "structure phase" in provider.requests[0].user_prompt


@pytest.mark.parametrize(("hint", "expected"), [(None, 65.0), (5.0, 65.0), (120.0, 120.0)])
async def test_rate_limit_waits_at_least_the_floor(
    pack: ContextPack, hint: float | None, expected: float
) -> None:
    sleeps = _Sleeps()
    provider = ScriptedProvider(
        [ProviderRateLimitError("slow down", retry_after_seconds=hint), advice()]
    )
    advisor = RepairAdvisor(
        provider,
        model="claude-test",
        retry=RetryPolicy(rate_limit_attempts=5, rate_limit_min_wait_seconds=65.0),
        sleep=sleeps,
    )

    await advisor.request_fix(pack)

    assert sleeps.calls == [expected]
    assert len(provider.requests) == 2


async def test_rate_limit_retries_are_bounded(pack: ContextPack) -> None:
    sleeps = _Sleeps()
    provider = ScriptedProvider([ProviderRateLimitError("slow down") for _ in range(3)])
    advisor = RepairAdvisor(
        provider,
        model="claude-test",
        retry=RetryPolicy(rate_limit_attempts=3, rate_limit_min_wait_seconds=1.0),
        sleep=sleeps,
    )

    with pytest.raises(AdvisorError) as excinfo:
        await advisor.request_fix(pack)

    assert sleeps.calls == [1.0, 1.0]
    assert excinfo.value.detail["code"] == "rate_limit"


async def test_non_retryable_failure_raises_immediately(pack: ContextPack) -> None:
    sleeps = _Sleeps()
    provider = ScriptedProvider([RuntimeError("boom")])
    advisor = RepairAdvisor(provider, model="claude-test", sleep=sleeps)

    with pytest.raises(AdvisorError, match="boom"):
        await advisor.request_fix(pack)

    assert sleeps.calls == []
    assert len(provider.requests) == 1


async def test_transient_failures_back_off_exponentially(pack: ContextPack) -> None:
    sleeps = _Sleeps()
    provider = ScriptedProvider(
        [ProviderTimeoutError("slow"), ProviderTimeoutError("slow"), advice()]
    )
    advisor = RepairAdvisor(
        provider,
        model="claude-test",
        retry=RetryPolicy(max_retries=2, initial_delay_seconds=0.5),
        sleep=sleeps,
    )

    await advisor.request_fix(pack)

    assert sleeps.calls == [0.5, 1.0]
    assert len(provider.requests) == 3


def test_from_config_and_provider_factory() -> None:
    config = {
        "provider": "anthropic",
        "model": "claude-test",
        "max_tokens": 2000,
        "rate_limit_retries": 2,
        "rate_limit_min_wait_seconds": 3.0,
    }

    assert isinstance(create_provider(config), AnthropicProvider)
    advisor = RepairAdvisor.from_config(config, provider=ScriptedProvider([]))
    assert isinstance(advisor, RepairAdvisor)
    with pytest.raises(ValueError, match="unsupported advisor provider"):
        create_provider({**config, "provider": "other"})
