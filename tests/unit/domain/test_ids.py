"""Unit tests for ULID-backed identifiers."""

from __future__ import annotations

import pytest

from compile_orchestrator.domain.ids import (
    generate_build_id,
    generate_event_id,
    generate_ulid,
    validate_build_id,
    validate_event_id,
)


def test_build_ids_are_prefixed_and_unique() -> None:
    first = generate_build_id()
    second = generate_build_id()

    assert first.startswith("bld-")
    assert first != second
    validate_build_id(first)


def test_ulids_sort_by_timestamp() -> None:
    def zeros(count: int) -> bytes:
        return b"\x00" * count

    earlier = generate_ulid(timestamp_ms=1_700_000_000_000, randbytes=lambda n: b"\xff" * n)
    later = generate_ulid(timestamp_ms=1_700_000_000_001, randbytes=zeros)

    assert len(earlier) == len(later) == 26
    assert earlier < later
    assert generate_ulid(timestamp_ms=0, randbytes=zeros) == "0" * 26


def test_ulid_rejects_bad_inputs() -> None:
    with pytest.raises(ValueError):
        generate_ulid(timestamp_ms=-1)
    with pytest.raises(ValueError):
        generate_ulid(randbytes=lambda n: b"\x00")


@pytest.mark.parametrize(
    "value",
    ["bld", "bld-", "bld-" + "0" * 25, "bld-8" + "0" * 25, "bld-" + "I" * 26, 42],
)
def test_validators_reject_malformed_ids(value: object) -> None:
    with pytest.raises(ValueError):
        validate_build_id(value)  # type: ignore[arg-type]


def test_validators_reject_wrong_prefix() -> None:
    with pytest.raises(ValueError):
        validate_build_id(generate_event_id())
    with pytest.raises(ValueError):
        validate_event_id(generate_build_id())
