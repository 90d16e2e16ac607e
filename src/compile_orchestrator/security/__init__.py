"""Security plane: secret redaction and one-time keypair delivery helpers."""

from compile_orchestrator.security.redaction import (
    REDACTED_VALUE,
    SecretFinding,
    is_sensitive_key,
    redact_structure,
    redact_text,
    scan_for_secrets,
)
from compile_orchestrator.security.secrets import (
    KEYPAIR_LENGTH,
    KeypairParseError,
    extract,
    parse_keypair,
    purge,
)

__all__ = [
    "KEYPAIR_LENGTH",
    "KeypairParseError",
    "REDACTED_VALUE",
    "SecretFinding",
    "extract",
    "is_sensitive_key",
    "parse_keypair",
    "purge",
    "redact_structure",
    "redact_text",
    "scan_for_secrets",
]
