"""Unit tests for the read-only artifact scanner."""

from __future__ import annotations

from pathlib import Path, PurePosixPath

from conftest import success_artifacts, write_tree

from compile_orchestrator.domain.models import ArtifactCategory
from compile_orchestrator.integration_plane.artifacts import handle_for, scan


def _populate(output: Path) -> None:
    output.mkdir(parents=True, exist_ok=True)
    for relative, content in success_artifacts().items():
        path = output / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")


def test_scan_classifies_by_directory_and_extension(tmp_path: Path) -> None:
    _populate(tmp_path)
    write_tree(tmp_path, {"target/deploy/notes.txt": "x", "target/idl/readme.md": "x"})

    result = scan(tmp_path)

    assert [item.name for item in result.binaries] == ["demo.so"]
    assert [item.name for item in result.descriptors] == ["demo.json"]
    assert [item.name for item in result.bindings] == ["demo.ts"]
    assert [item.name for item in result.credentials] == ["demo-keypair.json"]
    assert result.has_binary


def test_scan_of_empty_output_is_empty(tmp_path: Path) -> None:
    result = scan(tmp_path / "missing")

    assert not result.has_binary
    assert result.by_category(ArtifactCategory.DESCRIPTOR) == ()


def test_scan_is_idempotent_and_read_only(tmp_path: Path) -> None:
    _populate(tmp_path)
    before = sorted(path.relative_to(tmp_path).as_posix() for path in tmp_path.rglob("*"))

    first = scan(tmp_path)
    second = scan(tmp_path)

    after = sorted(path.relative_to(tmp_path).as_posix() for path in tmp_path.rglob("*"))
    assert first == second
    assert before == after


def test_payload_hides_credentials_by_default(tmp_path: Path) -> None:
    _populate(tmp_path)

    payload = scan(tmp_path).to_payload()

    assert set(payload) == {"binaries", "descriptors", "bindings"}
    assert payload["binaries"] == [
        {"name": "demo.so", "category": "binary", "handle": "target/deploy/demo.so"}
    ]
    assert "credentials" in scan(tmp_path).to_payload(include_credentials=True)


def test_handle_for() -> None:
    assert handle_for(ArtifactCategory.BINDINGS, "demo.ts") == PurePosixPath("target/types/demo.ts")
    assert handle_for(ArtifactCategory.DESCRIPTOR, "demo.json") == PurePosixPath(
        "target/idl/demo.json"
    )
