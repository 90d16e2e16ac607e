"""Artifact Scanner: classify files the sandbox left under ``output/target``."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Final

from compile_orchestrator.constants import DEPLOY_DIR, IDL_DIR, KEYPAIR_SUFFIX, TYPES_DIR
from compile_orchestrator.domain.models import Artifact, ArtifactCategory

if TYPE_CHECKING:
    from collections.abc import Callable

_BINARY_SUFFIX: Final[str] = ".so"
_DESCRIPTOR_SUFFIX: Final[str] = ".json"
_BINDINGS_SUFFIX: Final[str] = ".ts"


@dataclass(frozen=True, slots=True)
class ArtifactScan:
    """Category lists produced by one scan; each list is sorted by name."""

    binaries: tuple[Artifact, ...] = ()
    descriptors: tuple[Artifact, ...] = ()
    bindings: tuple[Artifact, ...] = ()
    credentials: tuple[Artifact, ...] = ()

    @property
    def has_binary(self) -> bool:
        return bool(self.binaries)

    def by_category(self, category: ArtifactCategory) -> tuple[Artifact, ...]:
        return {
            ArtifactCategory.BINARY: self.binaries,
            ArtifactCategory.DESCRIPTOR: self.descriptors,
            ArtifactCategory.BINDINGS: self.bindings,
            ArtifactCategory.CREDENTIAL: self.credentials,
        }[ArtifactCategory(category)]

    def to_payload(self, *, include_credentials: bool = False) -> dict[str, list[dict[str, str]]]:
        """Caller-facing listing with retrieval handles relative to the output root."""

        payload: dict[str, list[dict[str, str]]] = {
            "binaries": [_handle(item) for item in self.binaries],
            "descriptors": [_handle(item) for item in self.descriptors],
            "bindings": [_handle(item) for item in self.bindings],
        }
        if include_credentials:
            payload["credentials"] = [_handle(item) for item in self.credentials]
        return payload


def scan(output_root: Path | str) -> ArtifactScan:
    """Read-only classification by directory convention and extension.

    Missing directories count as zero artifacts of that category.
    """

    root = Path(output_root)
    deploy = _list_files(root / DEPLOY_DIR)
    return ArtifactScan(
        binaries=_collect(
            deploy, ArtifactCategory.BINARY, lambda name: name.endswith(_BINARY_SUFFIX)
        ),
        descriptors=_collect(
            _list_files(root / IDL_DIR),
            ArtifactCategory.DESCRIPTOR,
            lambda name: name.endswith(_DESCRIPTOR_SUFFIX),
        ),
        bindings=_collect(
            _list_files(root / TYPES_DIR),
            ArtifactCategory.BINDINGS,
            lambda name: name.endswith(_BINDINGS_SUFFIX),
        ),
        credentials=_collect(
            deploy, ArtifactCategory.CREDENTIAL, lambda name: name.endswith(KEYPAIR_SUFFIX)
        ),
    )


def handle_for(category: ArtifactCategory, name: str) -> PurePosixPath:
    """Relative location of an artifact inside the output root."""

    directory = {
        ArtifactCategory.BINARY: DEPLOY_DIR,
        ArtifactCategory.DESCRIPTOR: IDL_DIR,
        ArtifactCategory.BINDINGS: TYPES_DIR,
        ArtifactCategory.CREDENTIAL: DEPLOY_DIR,
    }[ArtifactCategory(category)]
    return directory / name


def _list_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    try:
        return sorted(
            (entry for entry in directory.iterdir() if entry.is_file()),
            key=lambda item: item.name,
        )
    except OSError:
        return []


def _collect(
    files: list[Path], category: ArtifactCategory, accept: Callable[[str], bool]
) -> tuple[Artifact, ...]:
    return tuple(
        Artifact(name=entry.name, category=category, path=entry)
        for entry in files
        if accept(entry.name)
    )


def _handle(artifact: Artifact) -> dict[str, str]:
    return {
        "name": artifact.name,
        "category": artifact.category.value,
        "handle": handle_for(artifact.category, artifact.name).as_posix(),
    }


__all__ = ["ArtifactScan", "handle_for", "scan"]
