"""Unit tests for keypair extraction and the purge-after-delivery guarantee."""

from __future__ import annotations

import json
from pathlib import Path

import base58
import pytest
from conftest import KEYPAIR_SEED, keypair_json, write_tree

from compile_orchestrator.domain.models import SecretRecord
from compile_orchestrator.security.secrets import (
    KeypairParseError,
    extract,
    parse_keypair,
    purge,
)


def test_parse_keypair_derives_base58_public_key() -> None:
    secret, public_key = parse_keypair(keypair_json())

    assert len(secret) == 64
    assert bytes(secret[:32]) == KEYPAIR_SEED
    assert base58.b58decode(public_key) == bytes(secret[32:])


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps(["a"] * 64),
        json.dumps([256] * 64),
        json.dumps([True] * 64),
    ],
)
def test_parse_keypair_rejects_malformed_input(raw: str) -> None:
    with pytest.raises(KeypairParseError):
        parse_keypair(raw)


def test_parse_keypair_rejects_mismatched_public_half() -> None:
    material = json.loads(keypair_json())
    material[-1] = (material[-1] + 1) % 256

    with pytest.raises(KeypairParseError):
        parse_keypair(json.dumps(material))


def test_extract_reads_keypairs_in_name_order_and_skips_bad_files(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "target/deploy/zeta-keypair.json": keypair_json(),
            "target/deploy/alpha-keypair.json": keypair_json(),
            "target/deploy/broken-keypair.json": "[1, 2]",
            "target/deploy/alpha.so": "binary",
        },
    )

    records = extract(tmp_path)

    assert [record.name for record in records] == ["alpha", "zeta"]
    assert records[0].filename == "alpha-keypair.json"


def test_extract_without_deploy_dir(tmp_path: Path) -> None:
    assert extract(tmp_path) == []


def test_secret_bytes_stay_out_of_repr(tmp_path: Path) -> None:
    write_tree(tmp_path, {"target/deploy/demo-keypair.json": keypair_json()})

    (record,) = extract(tmp_path)

    assert str(KEYPAIR_SEED[0]) + ", " + str(KEYPAIR_SEED[1]) not in repr(record)
    assert record.to_payload()["secret"] == list(record.secret)


def test_purge_removes_every_extracted_file(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "target/deploy/demo-keypair.json": keypair_json(),
            "target/deploy/other-keypair.json": keypair_json(),
            "target/deploy/demo.so": "binary",
        },
    )
    records = extract(tmp_path)

    removed = purge(tmp_path, records)

    assert sorted(removed) == ["demo-keypair.json", "other-keypair.json"]
    assert extract(tmp_path) == []
    assert (tmp_path / "target" / "deploy" / "demo.so").exists()


def test_purge_ignores_missing_files_and_refuses_escapes(tmp_path: Path) -> None:
    output = write_tree(tmp_path / "output", {"target/deploy/keep.txt": "x"})
    write_tree(tmp_path, {"victim-keypair.json": "x"})
    records = [
        SecretRecord(name="gone", filename="gone-keypair.json", public_key="x", secret=(1,)),
        SecretRecord(
            name="victim", filename="../../../victim-keypair.json", public_key="x", secret=(1,)
        ),
    ]

    assert purge(output, records) == []
    assert (tmp_path / "victim-keypair.json").exists()
