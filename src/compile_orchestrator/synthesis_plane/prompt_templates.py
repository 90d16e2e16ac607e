"""
compile-orchestrator — advisor prompt templates

File: src/compile_orchestrator/synthesis_plane/prompt_templates.py
Last updated: 2026-10-17

Purpose
- Loads and renders advisor prompt templates shipped in ``synthesis_plane/templates/``
  with strict placeholders.

What should be included in this file
- Template rendering rules and the allowed variables per template.
- Prompt versioning and hashing so a rendered prompt can be traced to its template.
- Conversion of a :class:`ContextPack` into template variables.

Functional requirements
- Must render prompts deterministically for the same inputs.
- Undeclared, missing, or unexpected variables are errors, never silently blank.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from jinja2 import Environment, StrictUndefined, meta

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping, Sequence

    from compile_orchestrator.synthesis_plane.context_assembler import ContextDoc, ContextPack

SYSTEM_TEMPLATE: Final[str] = "system"
STRUCTURE_TEMPLATE: Final[str] = "structure"
REPAIR_TEMPLATE: Final[str] = "repair"

_CONTEXT_VARIABLES: Final[frozenset[str]] = frozenset(
    {"file_tree", "config_files", "source_files", "analysis_summary"}
)
ALLOWED_VARIABLES: Final[dict[str, frozenset[str]]] = {
    SYSTEM_TEMPLATE: frozenset(),
    STRUCTURE_TEMPLATE: _CONTEXT_VARIABLES,
    REPAIR_TEMPLATE: _CONTEXT_VARIABLES
    | {"iteration", "error_message", "log_head", "log_tail", "previous_attempts"},
}

_FENCE_LANGUAGES: Final[dict[str, str]] = {".rs": "rust", ".toml": "toml", ".json": "json"}
_TEMPLATE_NAME_RE = re.compile(r"^[A-Za-z0-9_]+(?:\.md)?$")
_LAST_UPDATED_RE = re.compile(r"(?im)^\s*Last updated:\s*(.+?)\s*$")


class PromptTemplateError(RuntimeError):
    """Base error for prompt template loading and rendering."""


class PromptTemplateNotFoundError(PromptTemplateError, FileNotFoundError):
    """Raised when a template file does not exist."""


class PromptTemplateVariableError(PromptTemplateError, ValueError):
    """Raised for missing/extra variables or whitelist violations."""


@dataclass(frozen=True, slots=True)
class RenderedPrompt:
    """Rendered prompt text plus the identity of the template it came from."""

    name: str
    prompt: str
    prompt_hash: str
    template_version: str
    template_hash: str


class PromptTemplateEngine:
    """Deterministic template loader and renderer."""

    def __init__(self, *, template_root: Path | str | None = None) -> None:
        root = Path(template_root) if template_root is not None else _default_template_root()
        resolved_root = root.resolve()
        if not resolved_root.is_dir():
            raise PromptTemplateNotFoundError(f"template root does not exist: {resolved_root}")
        self._template_root = resolved_root
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )

    @property
    def template_root(self) -> Path:
        return self._template_root

    def render(
        self,
        name: str,
        *,
        variables: Mapping[str, object],
        allowed_variables: Collection[str] | None = None,
    ) -> RenderedPrompt:
        """Render one template with strict variable and whitelist checks."""

        template_name = _normalize_template_name(name)
        stem = template_name[:-3].lower()
        allowed = set(
            allowed_variables
            if allowed_variables is not None
            else ALLOWED_VARIABLES.get(stem, frozenset())
        )

        template_path = self._template_root / template_name
        if not template_path.is_file():
            raise PromptTemplateNotFoundError(
                f"template not found: {template_name!r} under {self._template_root}"
            )
        source = _normalize_newlines(template_path.read_text(encoding="utf-8"))
        declared = meta.find_undeclared_variables(self._environment.parse(source))

        not_allowed = sorted(declared - allowed)
        if not_allowed:
            raise PromptTemplateVariableError(
                "template uses variables not allowed by whitelist: " + ", ".join(not_allowed)
            )
        unexpected = sorted(set(variables) - allowed)
        if unexpected:
            raise PromptTemplateVariableError(
                "unexpected variables were provided: " + ", ".join(unexpected)
            )
        missing = sorted(declared - set(variables))
        if missing:
            raise PromptTemplateVariableError(
                "missing required template variables: " + ", ".join(missing)
            )

        rendered = self._environment.from_string(source).render(
            **{key: _stringify(value) for key, value in variables.items()}
        )
        prompt = _normalize_newlines(rendered).strip() + "\n"
        return RenderedPrompt(
            name=stem,
            prompt=prompt,
            prompt_hash=_sha256(prompt),
            template_version=_extract_template_version(source),
            template_hash=_sha256(source),
        )


def structure_variables(pack: ContextPack) -> dict[str, object]:
    return {
        "file_tree": _format_tree(pack.file_tree),
        "config_files": _format_docs(pack.config_docs, "(no configuration files)"),
        "source_files": _format_docs(pack.source_docs, "(no source files)"),
        "analysis_summary": pack.analysis_summary or "(no analysis available)",
    }


def repair_variables(pack: ContextPack) -> dict[str, object]:
    variables = structure_variables(pack)
    variables.update(
        iteration=pack.iteration,
        error_message=pack.error_message or "(no error message)",
        log_head=pack.log_head or "(empty)",
        log_tail=pack.log_tail or "(empty)",
        previous_attempts=_format_attempts(pack.previous_attempts),
    )
    return variables


def _format_tree(paths: Sequence[str]) -> str:
    return "\n".join(paths) if paths else "(empty)"


def _format_docs(docs: Sequence[ContextDoc], empty: str) -> str:
    if not docs:
        return empty
    blocks = []
    for doc in docs:
        language = _FENCE_LANGUAGES.get(Path(doc.path).suffix, "")
        blocks.append(f"### {doc.path}\n```{language}\n{doc.content}\n```")
    return "\n\n".join(blocks)


def _format_attempts(attempts: Sequence[str]) -> str:
    if not attempts:
        return "None. This is the first repair attempt."
    lines = list(attempts)
    lines.append("")
    lines.append("These fixes did not work. Try a DIFFERENT approach.")
    return "\n".join(lines)


def _default_template_root() -> Path:
    return Path(__file__).resolve().parent / "templates"


def _normalize_template_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned or not _TEMPLATE_NAME_RE.fullmatch(cleaned):
        raise ValueError(f"invalid template name: {name!r}")
    stem = cleaned[:-3] if cleaned.lower().endswith(".md") else cleaned
    return f"{stem.upper()}.md"


def _stringify(value: object) -> str:
    if isinstance(value, str):
        return _normalize_newlines(value)
    return str(value)


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _extract_template_version(source: str) -> str:
    match = _LAST_UPDATED_RE.search(source)
    if match is None:
        return "unversioned"
    return match.group(1).strip()


__all__ = [
    "ALLOWED_VARIABLES",
    "REPAIR_TEMPLATE",
    "STRUCTURE_TEMPLATE",
    "SYSTEM_TEMPLATE",
    "PromptTemplateEngine",
    "PromptTemplateError",
    "PromptTemplateNotFoundError",
    "PromptTemplateVariableError",
    "RenderedPrompt",
    "repair_variables",
    "structure_variables",
]
