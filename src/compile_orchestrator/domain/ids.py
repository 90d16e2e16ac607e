"""Build and event identifiers: ``<kind>-<ULID>``, sortable by creation time."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26

BUILD_ID_PREFIX: Final[str] = "bld"
EVENT_ID_PREFIX: Final[str] = "evt"

# 48-bit millisecond timestamp followed by 80 random bits.
_TIMESTAMP_BITS: Final[int] = 48
_RANDOM_BYTES: Final[int] = 10
# A 26-character ULID holds 130 bits, so the leading character is at most "7".
_ULID_PATTERN: Final[re.Pattern[str]] = re.compile(
    rf"[0-7][{CROCKFORD_BASE32_ALPHABET}]{{{ULID_LENGTH - 1}}}"
)

_RandBytes = Callable[[int], bytes]

__all__ = [
    "BUILD_ID_PREFIX",
    "EVENT_ID_PREFIX",
    "generate_build_id",
    "generate_event_id",
    "generate_ulid",
    "validate_build_id",
    "validate_event_id",
]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= millis < 1 << _TIMESTAMP_BITS:
        raise ValueError(f"timestamp_ms out of range: {millis}")
    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BYTES)
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (millis << 8 * _RANDOM_BYTES) | int.from_bytes(entropy, "big")
    chars = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        chars.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(chars))


def generate_build_id() -> str:
    return f"{BUILD_ID_PREFIX}-{generate_ulid()}"


def generate_event_id() -> str:
    return f"{EVENT_ID_PREFIX}-{generate_ulid()}"


def validate_build_id(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a ``bld-`` identifier."""
    _validate(value, BUILD_ID_PREFIX)


def validate_event_id(value: str) -> None:
    _validate(value, EVENT_ID_PREFIX)


def _validate(value: object, prefix: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"{prefix} id must be a string, got {type(value).__name__}")
    kind, separator, ulid = value.partition("-")
    if kind != prefix or not separator:
        raise ValueError(f"expected prefix '{prefix}-' in {value!r}")
    if not _ULID_PATTERN.fullmatch(ulid.upper()):
        raise ValueError(f"invalid ULID part in {value!r}")
