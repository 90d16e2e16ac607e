"""
compile-orchestrator — secret extraction and purge

File: src/compile_orchestrator/security/secrets.py
Last updated: 2026-10-17

Purpose
- Turn program keypair files produced by the sandbox into ephemeral SecretRecords and
  remove the backing files once the records were handed to the caller.

Functional requirements
- A file that fails to parse is skipped and logged; extraction never raises for content.
- After purge, no credential file with a purged record's filename remains.
- Key material is never logged.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Final

import base58
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from compile_orchestrator.constants import DEPLOY_DIR, KEYPAIR_SUFFIX
from compile_orchestrator.domain.models import SecretRecord
from compile_orchestrator.utils.fs import PathEscapeError, resolve_within

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

KEYPAIR_LENGTH: Final[int] = 64
_SEED_LENGTH: Final[int] = 32


class KeypairParseError(ValueError):
    """Raised when a keypair file does not hold a valid Ed25519 keypair."""


def parse_keypair(raw: str) -> tuple[tuple[int, ...], str]:
    """Return ``(secret_bytes, base58_public_key)`` for a JSON byte-array keypair.

    The public half stored in the file must match the key derived from the seed.
    """

    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise KeypairParseError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(decoded, list) or len(decoded) != KEYPAIR_LENGTH:
        raise KeypairParseError(f"expected a JSON array of {KEYPAIR_LENGTH} integers")
    if not all(isinstance(item, int) and not isinstance(item, bool) for item in decoded):
        raise KeypairParseError("keypair entries must be integers")
    if not all(0 <= item <= 255 for item in decoded):
        raise KeypairParseError("keypair entries must be bytes (0..255)")

    material = bytes(decoded)
    private_key = Ed25519PrivateKey.from_private_bytes(material[:_SEED_LENGTH])
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw, format=PublicFormat.Raw
    )
    if public_bytes != material[_SEED_LENGTH:]:
        raise KeypairParseError("public key half does not match the seed")
    return tuple(decoded), base58.b58encode(public_bytes).decode("ascii")


def extract(output_root: Path | str) -> list[SecretRecord]:
    """Parse every ``*-keypair.json`` under ``target/deploy`` in name order."""

    deploy_dir = Path(output_root) / DEPLOY_DIR
    if not deploy_dir.is_dir():
        return []

    records: list[SecretRecord] = []
    for path in sorted(deploy_dir.iterdir(), key=lambda item: item.name):
        if not path.name.endswith(KEYPAIR_SUFFIX) or not path.is_file():
            continue
        try:
            secret, public_key = parse_keypair(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, KeypairParseError) as exc:
            logger.warning("skipping unreadable keypair %s: %s", path.name, exc)
            continue
        records.append(
            SecretRecord(
                name=path.name[: -len(KEYPAIR_SUFFIX)],
                filename=path.name,
                public_key=public_key,
                secret=secret,
            )
        )
    logger.info("extracted %d keypair(s)", len(records))
    return records


def purge(output_root: Path | str, records: Iterable[SecretRecord]) -> list[str]:
    """Delete each record's backing file; returns the filenames that were removed."""

    root = Path(output_root)
    removed: list[str] = []
    for record in records:
        try:
            target = resolve_within(root, (DEPLOY_DIR / record.filename).as_posix())
        except (PathEscapeError, FileNotFoundError) as exc:
            logger.error("refusing to purge %s: %s", record.filename, exc)
            continue
        try:
            target.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.error("failed to purge %s: %s", record.filename, exc)
            continue
        removed.append(record.filename)
    logger.info("purged %d keypair file(s)", len(removed))
    return removed


__all__ = ["KEYPAIR_LENGTH", "KeypairParseError", "extract", "parse_keypair", "purge"]
