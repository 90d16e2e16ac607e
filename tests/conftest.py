"""Shared offline fakes: a scripted Docker client and a scripted advisor provider."""

from __future__ import annotations

import io
import json
import tarfile
import threading
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from compile_orchestrator.synthesis_plane.providers.base import (
    BaseProvider,
    ProviderRequest,
    ProviderResponse,
    ProviderUsage,
)

# A valid 64-byte ed25519 keypair file body (secret seed 1..32 followed by its public key).
KEYPAIR_SEED = bytes(range(1, 33))


@dataclass
class ScriptedRun:
    """One scripted ``anchor build`` outcome."""

    exit_code: int = 0
    log: str = "=== Running Anchor Build ===\nFinished release [optimized]\n"
    artifacts: dict[str, bytes | str] = field(default_factory=dict)
    hang: bool = False


class FakeContainer:
    def __init__(self, client: FakeDockerClient, run: ScriptedRun, kwargs: dict[str, Any]):
        self._client = client
        self._run = run
        self.kwargs = kwargs
        self.short_id = f"fake{len(client.containers.created):04d}"
        self.archive: bytes = b""
        self._killed = threading.Event()
        self.removed = False

    @property
    def output_dir(self) -> Path:
        (host_path,) = self.kwargs["volumes"].keys()
        return Path(host_path)

    def put_archive(self, path: str, data: bytes) -> bool:
        assert path == "/"
        self.archive = data
        return True

    def start(self) -> None:
        if self._run.hang:
            return
        for relative, content in self._run.artifacts.items():
            target = self.output_dir / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content, encoding="utf-8")

    def logs(self, **_kwargs: Any) -> Iterator[bytes]:
        if self._run.hang:
            self._killed.wait(timeout=10)
            return
        for line in self._run.log.splitlines(keepends=True):
            yield line.encode("utf-8")

    def wait(self) -> dict[str, int]:
        if self._run.hang:
            self._killed.wait(timeout=10)
            return {"StatusCode": 137}
        return {"StatusCode": self._run.exit_code}

    def kill(self) -> None:
        self._killed.set()

    def remove(self, force: bool = False) -> None:
        self.removed = True

    def source_files(self) -> dict[str, str]:
        """Files shipped in the source archive, keyed by workspace-relative path."""

        files: dict[str, str] = {}
        with tarfile.open(fileobj=io.BytesIO(self.archive), mode="r") as archive:
            for member in archive.getmembers():
                if not member.isfile():
                    continue
                handle = archive.extractfile(member)
                assert handle is not None
                relative = member.name.split("/", 1)[1] if "/" in member.name else member.name
                files[relative] = handle.read().decode("utf-8", errors="replace")
        return files


class _FakeContainers:
    def __init__(self, client: FakeDockerClient) -> None:
        self._client = client
        self.created: list[FakeContainer] = []

    def create(self, image: str, **kwargs: Any) -> FakeContainer:
        self._client.images_used.append(image)
        runs = self._client.runs
        index = min(len(self.created), len(runs) - 1)
        container = FakeContainer(self._client, runs[index], kwargs)
        self.created.append(container)
        return container


class FakeDockerClient:
    """Plays back ``runs`` in order; the last run repeats once the script is exhausted."""

    def __init__(self, runs: Sequence[ScriptedRun], *, reachable: bool = True) -> None:
        if not runs:
            raise ValueError("at least one scripted run is required")
        self.runs = list(runs)
        self.reachable = reachable
        self.images_used: list[str] = []
        self.containers = _FakeContainers(self)

    def ping(self) -> bool:
        if not self.reachable:
            raise ConnectionError("daemon down")
        return True


class ScriptedProvider(BaseProvider):
    """Returns queued advisor replies; an ``Exception`` entry is raised instead."""

    provider_name = "scripted"

    def __init__(self, replies: Sequence[str | Exception]) -> None:
        self._replies = list(replies)
        self.requests: list[ProviderRequest] = []

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        if not self._replies:
            raise AssertionError("advisor consulted more often than scripted")
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ProviderResponse(
            model=request.model,
            raw_text=reply,
            usage=ProviderUsage(input_tokens=10, output_tokens=10),
        )


def advice(
    fixes: Sequence[dict[str, str]] = (),
    *,
    cannot_fix: bool = False,
    analysis: str = "analysis",
) -> str:
    """Render an advisor reply the way the model is instructed to answer."""

    body = {
        "reasoning": "reasoning",
        "analysis": analysis,
        "cannotFix": cannot_fix,
        "fixes": list(fixes),
    }
    return f"```json\n{json.dumps(body)}\n```"


def keypair_json() -> str:
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
    from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

    public = (
        Ed25519PrivateKey.from_private_bytes(KEYPAIR_SEED)
        .public_key()
        .public_bytes(Encoding.Raw, PublicFormat.Raw)
    )
    return json.dumps(list(KEYPAIR_SEED + public))


def success_artifacts(program: str = "demo") -> dict[str, bytes | str]:
    return {
        f"target/deploy/{program}.so": b"\x7fELF-binary",
        f"target/deploy/{program}-keypair.json": keypair_json(),
        f"target/idl/{program}.json": json.dumps({"name": program}),
        f"target/types/{program}.ts": f"export type {program.capitalize()} = {{}};\n",
    }


def write_tree(root: Path, files: dict[str, str]) -> Path:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


LIB_RS = """use anchor_lang::prelude::*;
use anchor_spl::token::Token;

declare_id!("Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS");

#[program]
pub mod demo {
    use super::*;

    pub fn initialize(ctx: Context<Initialize>) -> Result<()> {
        msg!("initialize");
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Initialize {}
"""

ANCHOR_TOML = """[programs.localnet]
demo = "Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS"

[provider]
cluster = "localnet"
wallet = "~/.config/solana/id.json"
"""

CARGO_TOML = """[package]
name = "demo"
version = "0.1.0"
edition = "2021"

[lib]
crate-type = ["cdylib", "lib"]

[dependencies]
anchor-lang = "0.30.1"
anchor-spl = "0.30.1"
"""


@pytest.fixture
def anchor_project(tmp_path: Path) -> Path:
    """A minimal, well-formed Anchor workspace."""

    return write_tree(
        tmp_path / "project",
        {
            "Anchor.toml": ANCHOR_TOML,
            "Cargo.toml": '[workspace]\nmembers = ["programs/*"]\n',
            "programs/demo/Cargo.toml": CARGO_TOML,
            "programs/demo/src/lib.rs": LIB_RS,
        },
    )
