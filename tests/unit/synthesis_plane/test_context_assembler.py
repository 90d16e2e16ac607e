from __future__ import annotations

from pathlib import Path

from conftest import LIB_RS, write_tree

from compile_orchestrator.domain.models import FixAttemptRecord
from compile_orchestrator.knowledge_plane import analyze
from compile_orchestrator.synthesis_plane.context_assembler import (
    MAX_RS_CHARS,
    MAX_TOML_CHARS,
    ContextAssembler,
    split_log_context,
    summarize_attempts,
)


def test_assemble_separates_config_and_source(anchor_project: Path) -> None:
    write_tree(anchor_project, {"target/deploy/demo.so": "x", "README.md": "hi"})

    pack = ContextAssembler(anchor_project).assemble(
        iteration=0, analysis=analyze(anchor_project)
    )

    assert [doc.path for doc in pack.config_docs] == [
        "Anchor.toml",
        "Cargo.toml",
        "programs/demo/Cargo.toml",
    ]
    assert [doc.path for doc in pack.source_docs] == ["programs/demo/src/lib.rs"]
    assert pack.source_docs[0].content == LIB_RS
    assert "README.md" in pack.file_tree
    assert not any(path.startswith("target/") for path in pack.file_tree)
    assert pack.analysis_summary == 'Found program "demo" with 2 dependencies'
    assert pack.truncations == ()
    assert "programs/demo/src/lib.rs" in pack.existing_paths


def test_large_rust_file_is_truncated_per_file(tmp_path: Path) -> None:
    write_tree(tmp_path, {"big.rs": "a" * (MAX_RS_CHARS + 1000)})

    pack = ContextAssembler(tmp_path).assemble(iteration=1)

    (doc,) = pack.source_docs
    assert doc.content == "a" * MAX_RS_CHARS + "\n// ... [truncated]"
    assert doc.truncated
    assert doc.bytes_total == MAX_RS_CHARS + 1000
    assert pack.truncations[0].reason == "per-file limit"


def test_total_rust_budget_switches_to_short_previews(tmp_path: Path) -> None:
    write_tree(tmp_path, {f"{name}.rs": name * 3900 for name in "abcde"})

    pack = ContextAssembler(tmp_path).assemble(iteration=1)

    contents = {doc.path: doc.content for doc in pack.source_docs}
    assert contents["d.rs"] == "d" * 3900
    assert contents["e.rs"] == "e" * 500 + "\n// ... [large file truncated, 3900 chars total]"
    assert [(item.path, item.reason) for item in pack.truncations] == [
        ("e.rs", "total source budget exhausted")
    ]


def test_toml_files_are_capped(tmp_path: Path) -> None:
    write_tree(tmp_path, {"Cargo.toml": "#" * (MAX_TOML_CHARS + 5)})

    pack = ContextAssembler(tmp_path).assemble(iteration=0)

    assert pack.config_docs[0].content == "#" * MAX_TOML_CHARS + "\n# ... [truncated]"


def test_log_context_is_head_and_tail() -> None:
    log = "\n".join(f"line {index}" for index in range(150))

    head, tail = split_log_context(log)

    assert head.splitlines() == [f"line {index}" for index in range(20)]
    assert tail.splitlines() == [f"line {index}" for index in range(70, 150)]


def test_logs_are_redacted_but_sources_are_not(tmp_path: Path) -> None:
    secret_source = 'const KEY: &str = "api_key=abcdef123456";\n'
    write_tree(tmp_path, {"lib.rs": secret_source})

    pack = ContextAssembler(tmp_path).assemble(
        iteration=1,
        combined_log="env ANTHROPIC_API_KEY=sk-ant-REDACTED\nerror: boom\n",
        error_message="Build failed with exit code 1",
    )

    assert "sk-ant-REDACTED" not in pack.log_head
    assert "error: boom" in pack.log_tail
    assert pack.source_docs[0].content == secret_source


def test_previous_attempts_are_numbered_and_bounded() -> None:
    attempts = [
        FixAttemptRecord(iteration=1, files=("Cargo.toml",), summary="added crate"),
        FixAttemptRecord(iteration=2, files=(), summary="x" * 500),
    ]

    summary = summarize_attempts(attempts)

    assert summary[0] == "1. (iteration 1) Cargo.toml: added crate"
    assert summary[1] == "2. (iteration 2) no files: " + "x" * 200
