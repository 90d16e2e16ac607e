"""
compile-orchestrator — synthesis plane

File: src/compile_orchestrator/synthesis_plane/__init__.py
Last updated: 2026-10-17

Purpose
- Advisor context assembly, prompt rendering, provider access, and response parsing.

Functional requirements
- Must be provider-agnostic through adapters.
"""

from compile_orchestrator.synthesis_plane.advisor import (
    DEFAULT_CANNOT_FIX_REASON,
    Advice,
    ParsedAdvice,
    RepairAdvisor,
    UnparsedAdvice,
    attempt_summary,
    cannot_fix_reason,
    create_provider,
    parse_advice,
)
from compile_orchestrator.synthesis_plane.context_assembler import (
    ContextAssembler,
    ContextDoc,
    ContextPack,
    TruncationRecord,
)
from compile_orchestrator.synthesis_plane.prompt_templates import (
    PromptTemplateEngine,
    PromptTemplateError,
    RenderedPrompt,
)

__all__ = [
    "DEFAULT_CANNOT_FIX_REASON",
    "Advice",
    "ContextAssembler",
    "ContextDoc",
    "ContextPack",
    "ParsedAdvice",
    "PromptTemplateEngine",
    "PromptTemplateError",
    "RenderedPrompt",
    "RepairAdvisor",
    "TruncationRecord",
    "UnparsedAdvice",
    "attempt_summary",
    "cannot_fix_reason",
    "create_provider",
    "parse_advice",
]
