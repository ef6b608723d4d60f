from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import text

from chitchat import db
from chitchat.db import StoreHandle
from chitchat.services.storage_paths import resolve_storage_path

logger = logging.getLogger(__name__)


@dataclass
class RelocationFailure:
    storage_path: str
    error: str


@dataclass
class RelocationReport:
    moved: int = 0
    already_present: int = 0
    missing_source: int = 0
    failed: list[RelocationFailure] = field(default_factory=list)


def _relocate_one(old_root: Path, new_root: Path, storage_path: str, report: RelocationReport) -> None:
    source = resolve_storage_path(old_root, storage_path)
    target = resolve_storage_path(new_root, storage_path)

    if not source.exists():
        if target.exists():
            report.already_present += 1
        else:
            report.missing_source += 1
            logger.warning("Attachment file missing from both roots: %s", storage_path)
        return

    # Copy then delete so that moving across volumes works.
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)
    source.unlink()
    report.moved += 1


def relocate(old_root: Path | str, new_root: Path | str, *, handle: StoreHandle | None = None) -> RelocationReport:
    """Move every attachment file recorded in the database from old_root to new_root."""
    old = Path(old_root).expanduser().resolve()
    new = Path(new_root).expanduser().resolve()
    report = RelocationReport()
    if old == new:
        return report

    engine = (handle or db.store).acquire()
    with engine.connect() as conn:
        storage_paths = conn.execute(text("SELECT storage_path FROM attachments")).scalars().all()

    for storage_path in storage_paths:
        try:
            _relocate_one(old, new, storage_path, report)
        except Exception as exc:
            logger.warning("Failed to relocate attachment %s: %s", storage_path, exc)
            report.failed.append(RelocationFailure(storage_path=storage_path, error=str(exc)))

    logger.info(
        "Attachment relocation %s -> %s: moved=%s already_present=%s missing_source=%s failed=%s",
        old,
        new,
        report.moved,
        report.already_present,
        report.missing_source,
        len(report.failed),
    )
    return report
