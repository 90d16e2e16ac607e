"""
compile-orchestrator — security redaction utilities

File: src/compile_orchestrator/security/redaction.py
Last updated: 2026-10-17

Purpose
- Redaction rules for structured logs, build events, and advisor prompts.

Functional requirements
- No API key, bearer token, private key block, or keypair byte array leaks into logs or
  advisor requests by default.
- Deterministic and idempotent for stable inputs.

Non-functional requirements
- Minimize false positives on compiler output while prioritizing safety.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

DEFAULT_SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "authorization",
        "client_secret",
        "credential",
        "credentials",
        "keypair",
        "password",
        "private_key",
        "secret",
        "secret_key",
        "secrets",
        "token",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_access_token",
    "_private_key",
    "_password",
    "_secret",
    "_token",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class SecretFinding:
    """One secret-like match discovered during scanning."""

    rule: str
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_bearer",
        pattern=re.compile(r"(?i)(\bbearer\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="explicit_secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|secret|api[_-]?key|client[_-]?secret|access[_-]?token)"
            r"\b\s*[:=]\s*[\"']?)([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(name="anthropic_api_key", pattern=re.compile(r"\bsk-ant-[A-Za-z0-9_-]{20,255}\b")),
    _TextRule(name="generic_api_key", pattern=re.compile(r"\bsk-[A-Za-z0-9]{20,255}\b")),
    # Solana keypair files are a JSON array of 64 byte values.
    _TextRule(
        name="keypair_byte_array",
        pattern=re.compile(r"\[\s*(?:\d{1,3}\s*,\s*){63}\d{1,3}\s*\]"),
    ),
)


def scan_for_secrets(text: str) -> tuple[SecretFinding, ...]:
    """Scan text for secret-like patterns in deterministic rule order."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")

    findings: list[SecretFinding] = []
    for rule in _TEXT_RULES:
        for match in rule.pattern.finditer(text):
            start, end = match.span(rule.sensitive_group or 0)
            findings.append(SecretFinding(rule=rule.name, start=start, end=end))
    findings.sort(key=lambda item: (item.start, item.end, item.rule))
    return tuple(findings)


def is_sensitive_key(key: str) -> bool:
    """Return whether ``key`` names a value that must never be logged."""

    normalized = _normalize_key(key)
    if not normalized:
        return False
    if normalized in DEFAULT_SENSITIVE_KEY_DENYLIST:
        return True
    return any(normalized.endswith(suffix) for suffix in _SENSITIVE_KEY_SUFFIXES)


def redact_text(text: str, *, replacement: str = REDACTED_VALUE) -> str:
    """Redact secret-like substrings."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")

    redacted = text
    for rule in _TEXT_RULES:
        redacted = rule.pattern.sub(
            lambda match, rule=rule: _replace_sensitive_group(
                match, replacement=replacement, group=rule.sensitive_group
            ),
            redacted,
        )
    return redacted


def redact_structure(value: object, *, replacement: str = REDACTED_VALUE) -> object:
    """Return a deep-redacted copy of nested mappings, sequences, and strings."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        out: dict[object, object] = {}
        for key in sorted(value, key=str):
            item = value[key]
            if isinstance(key, str) and is_sensitive_key(key):
                out[key] = replacement
            else:
                out[key] = redact_structure(item, replacement=replacement)
        return out
    if isinstance(value, list):
        return [redact_structure(item, replacement=replacement) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_structure(item, replacement=replacement) for item in value)
    return value


def _replace_sensitive_group(
    match: re.Match[str],
    *,
    replacement: str,
    group: int | None,
) -> str:
    if group is None:
        return replacement

    full = match.group(0)
    start, end = match.span(group)
    offset_start = start - match.start(0)
    offset_end = end - match.start(0)
    return f"{full[:offset_start]}{replacement}{full[offset_end:]}"


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "DEFAULT_SENSITIVE_KEY_DENYLIST",
    "REDACTED_VALUE",
    "SecretFinding",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
    "scan_for_secrets",
]
