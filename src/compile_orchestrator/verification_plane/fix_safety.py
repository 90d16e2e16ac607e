"""
compile-orchestrator — fix safety validator

File: src/compile_orchestrator/verification_plane/fix_safety.py
Last updated: 2026-10-17

Purpose
- Gate every advisor-proposed edit through a phase allow-list and a regression guard
  before it touches the job's source tree.

Functional requirements
- Iteration 0 accepts configuration files only.
- Later iterations accept configuration files and updates to existing ``.rs`` files;
  creating or deleting ``.rs`` files is refused. A ``create`` aimed at an existing
  ``.rs`` file is treated as an update.
- ``.rs`` updates that lower any construct count, or shrink a file past the configured
  ratio, are refused.
- Malformed proposals (unknown action, missing path or content) are rejected, never
  raised. Every accepted path passes through ``resolve_within`` before any write.

Non-functional requirements
- Thresholds are policy parameters, not constants.
- One rejection never aborts the rest of the batch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Final

from compile_orchestrator.constants import COMPILED_SOURCE_EXTENSIONS, CONFIG_EXTENSIONS
from compile_orchestrator.domain.errors import SafetyRejection
from compile_orchestrator.domain.models import FixAction, FixProposal
from compile_orchestrator.utils.fs import PathEscapeError, atomic_write, resolve_within

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

logger = logging.getLogger(__name__)

_FUNCTION: Final[re.Pattern[str]] = re.compile(r"(?:pub\s+)?(?:async\s+)?fn\s+\w+")
_STRUCT: Final[re.Pattern[str]] = re.compile(r"(?:pub\s+)?struct\s+\w+")
_ENUM: Final[re.Pattern[str]] = re.compile(r"(?:pub\s+)?enum\s+\w+")
_IMPL: Final[re.Pattern[str]] = re.compile(r"impl\s+")


@dataclass(frozen=True, slots=True)
class FixSafetyPolicy:
    """Regression guard thresholds."""

    shrink_ratio: float = 0.7
    min_lines: int = 10

    def __post_init__(self) -> None:
        if not 0.0 < self.shrink_ratio <= 1.0:
            raise ValueError("shrink_ratio must be in (0, 1]")
        if self.min_lines < 0:
            raise ValueError("min_lines must be >= 0")

    @classmethod
    def from_config(cls, safety_config: Mapping[str, Any]) -> FixSafetyPolicy:
        return cls(
            shrink_ratio=float(safety_config.get("shrink_ratio", 0.7)),
            min_lines=int(safety_config.get("shrink_min_lines", 10)),
        )


@dataclass(frozen=True, slots=True)
class ConstructCounts:
    functions: int
    structs: int
    enums: int
    impls: int


@dataclass(frozen=True, slots=True)
class RejectedFix:
    proposal: FixProposal
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {
            "action": self.proposal.action_name,
            "path": self.proposal.path,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class FixValidationResult:
    """Outcome of one batch. ``skipped`` holds creates that would overwrite a file."""

    applied: tuple[FixProposal, ...] = ()
    rejected: tuple[RejectedFix, ...] = ()
    skipped: tuple[FixProposal, ...] = ()

    @property
    def applied_paths(self) -> tuple[str, ...]:
        return tuple(item.path for item in self.applied)

    def to_dict(self) -> dict[str, object]:
        return {
            "applied": [f"{item.action_name} {item.path}" for item in self.applied],
            "rejected": [item.to_dict() for item in self.rejected],
            "skipped": [item.path for item in self.skipped],
        }


def count_constructs(text: str) -> ConstructCounts:
    return ConstructCounts(
        functions=len(_FUNCTION.findall(text)),
        structs=len(_STRUCT.findall(text)),
        enums=len(_ENUM.findall(text)),
        impls=len(_IMPL.findall(text)),
    )


def check_regression(
    existing: str,
    proposed: str,
    policy: FixSafetyPolicy | None = None,
) -> None:
    """Raise :class:`SafetyRejection` when ``proposed`` looks like code removal."""

    active = policy or FixSafetyPolicy()
    before = count_constructs(existing)
    after = count_constructs(proposed)
    for label, old, new in (
        ("Functions", before.functions, after.functions),
        ("Structs", before.structs, after.structs),
        ("Enums", before.enums, after.enums),
        ("Impl blocks", before.impls, after.impls),
    ):
        if new < old:
            raise SafetyRejection(
                f"{label} reduced from {old} to {new} — code simplification detected"
            )

    old_lines = len(existing.split("\n"))
    new_lines = len(proposed.split("\n"))
    if old_lines > active.min_lines and new_lines < old_lines * active.shrink_ratio:
        percent = round((1 - new_lines / old_lines) * 100)
        raise SafetyRejection(f"Code reduced by {percent}% ({old_lines} → {new_lines} lines)")


def validate(
    proposals: Iterable[FixProposal],
    iteration: int,
    source_root: Path | str,
    *,
    policy: FixSafetyPolicy | None = None,
    skip_existing_creates: bool = False,
) -> FixValidationResult:
    """Screen and apply ``proposals`` against ``source_root`` in order."""

    root = Path(source_root)
    active = policy or FixSafetyPolicy()
    applied: list[FixProposal] = []
    rejected: list[RejectedFix] = []
    skipped: list[FixProposal] = []

    for proposal in proposals:
        try:
            target, accepted = _screen(proposal, iteration, root, active)
            if (
                skip_existing_creates
                and proposal.action is FixAction.CREATE
                and target.exists()
            ):
                skipped.append(proposal)
                continue
            _apply(accepted, target)
        except SafetyRejection as rejection:
            rejected.append(RejectedFix(proposal=proposal, reason=rejection.reason))
            logger.warning(
                "fix rejected",
                extra={"path": proposal.path, "reason": rejection.reason, "iteration": iteration},
            )
            continue
        applied.append(accepted)
        logger.info(
            "fix applied",
            extra={"action": accepted.action_name, "path": accepted.path, "iteration": iteration},
        )

    return FixValidationResult(
        applied=tuple(applied), rejected=tuple(rejected), skipped=tuple(skipped)
    )


def _screen(
    proposal: FixProposal,
    iteration: int,
    root: Path,
    policy: FixSafetyPolicy,
) -> tuple[Path, FixProposal]:
    if not isinstance(proposal.action, FixAction):
        shown = proposal.action_name or "missing"
        raise SafetyRejection(f"Unknown action: {shown}", path=proposal.path)

    needs_content = proposal.action is not FixAction.DELETE
    if not proposal.path or (needs_content and not proposal.content):
        raise SafetyRejection("Missing path or content", path=proposal.path)

    try:
        target = resolve_within(root, proposal.path)
    except (PathEscapeError, FileNotFoundError) as exc:
        raise SafetyRejection("Path escapes source root", path=proposal.path) from exc

    extension = PurePosixPath(proposal.path).suffix
    shown = extension or "no extension"
    is_config = extension in CONFIG_EXTENSIONS
    is_source = extension in COMPILED_SOURCE_EXTENSIONS

    if iteration == 0:
        if not is_config:
            raise SafetyRejection(
                f"Iteration 0: only config files allowed (got {shown})", path=proposal.path
            )
        return target, proposal

    if is_config:
        return target, proposal
    if not is_source:
        raise SafetyRejection(
            f"Iteration {iteration}: only config and .rs files allowed (got {shown})",
            path=proposal.path,
        )

    if proposal.action is FixAction.DELETE:
        raise SafetyRejection("Cannot delete .rs files", path=proposal.path)
    if not target.is_file():
        raise SafetyRejection("Cannot create new .rs files", path=proposal.path)

    accepted = proposal
    if proposal.action is FixAction.CREATE:
        accepted = FixProposal(
            action=FixAction.UPDATE,
            path=proposal.path,
            content=proposal.content,
            reason=proposal.reason,
        )

    try:
        existing = target.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise SafetyRejection(f"File read failed: {exc}", path=proposal.path) from exc
    check_regression(existing, accepted.content or "", policy)
    return target, accepted


def _apply(proposal: FixProposal, target: Path) -> None:
    try:
        if proposal.action is FixAction.DELETE:
            target.unlink()
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(target, proposal.content or "")
    except OSError as exc:
        verb = "delete" if proposal.action is FixAction.DELETE else "write"
        raise SafetyRejection(f"File {verb} failed: {exc}", path=proposal.path) from exc


__all__ = [
    "ConstructCounts",
    "FixSafetyPolicy",
    "FixValidationResult",
    "RejectedFix",
    "check_regression",
    "count_constructs",
    "validate",
]
