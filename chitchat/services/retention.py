from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from chitchat import db
from chitchat.config import Settings, settings
from chitchat.db import StoreHandle
from chitchat.errors import CleanupNote, FilesystemError
from chitchat.services.storage_paths import resolve_storage_path

logger = logging.getLogger(__name__)

RETENTION_MODES = ("inherit", "never", "days")

_DELETE_EXPIRED_SQL = text(
    """
    DELETE FROM messages
    WHERE id IN (
      SELECT m.id
      FROM messages m
      LEFT JOIN pinned_messages pm ON pm.message_id = m.id
      WHERE m.room_id = :room_id
        AND pm.message_id IS NULL
        AND datetime(m.created_at) < datetime(:cutoff)
    )
    """
)

_ORPHAN_ATTACHMENTS_SQL = text(
    """
    SELECT a.id, a.storage_path
    FROM attachments a
    WHERE NOT EXISTS (
      SELECT 1 FROM message_attachments ma WHERE ma.attachment_id = a.id
    )
    """
)


@dataclass
class RetentionResult:
    messages_deleted: int = 0
    orphan_attachments_deleted: int = 0
    orphan_files_deleted: int = 0
    rooms_evaluated: int = 0
    rooms_with_retention: int = 0
    failed_rooms: list[str] = field(default_factory=list)
    cleanup: list[CleanupNote] = field(default_factory=list)


def _positive_days(value) -> int:
    try:
        days = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(days) or days <= 0:
        return 0
    return math.floor(days)


def effective_retention_days(mode: str | None, room_days, default_days) -> int:
    """Days to keep messages in a room. 0 means never prune.

    ``never`` wins over any server default, ``days`` uses only the room's own
    value, and anything else (``inherit``, unset) falls back to the default.
    """
    mode = (mode or "inherit").strip().lower()
    if mode == "never":
        return 0
    if mode == "days":
        return _positive_days(room_days)
    return _positive_days(default_days)


def _sqlite_timestamp(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def sweep_orphan_attachments(engine: Engine, storage_root: Path) -> tuple[int, int, list[CleanupNote]]:
    """Delete attachments no message links to. Returns (rows, files, cleanup notes)."""
    files_deleted = 0
    notes: list[CleanupNote] = []
    with engine.begin() as conn:
        orphans = conn.execute(_ORPHAN_ATTACHMENTS_SQL).all()
        for row in orphans:
            try:
                path = resolve_storage_path(storage_root, row.storage_path)
                if path.is_file():
                    path.unlink()
                    files_deleted += 1
            except (FilesystemError, OSError) as exc:
                notes.append(CleanupNote(path=str(row.storage_path), error=str(exc)))
            conn.execute(text("DELETE FROM attachments WHERE id = :id"), {"id": row.id})

    for note in notes:
        logger.warning("Orphan attachment file not removed: %s (%s)", note.path, note.error)
    return len(orphans), files_deleted, notes


def run(config: Settings = settings, *, now: datetime | None = None, handle: StoreHandle | None = None) -> RetentionResult:
    engine = (handle or db.store).acquire()
    now = now or datetime.now(timezone.utc)
    result = RetentionResult()

    with engine.connect() as conn:
        rooms = conn.execute(
            text(
                """
                SELECT id, name, message_retention_mode, message_retention_days
                FROM rooms
                WHERE is_temporary = 0
                """
            )
        ).all()
    result.rooms_evaluated = len(rooms)

    for room in rooms:
        keep_days = effective_retention_days(
            room.message_retention_mode,
            room.message_retention_days,
            config.message_retention_days,
        )
        if keep_days <= 0:
            continue
        result.rooms_with_retention += 1
        try:
            cutoff = _sqlite_timestamp(now - timedelta(days=keep_days))
        except OverflowError:
            # Cutoff falls before datetime.min; no message can be that old.
            continue
        # One transaction per room: a failure here leaves other rooms' deletions intact.
        try:
            with engine.begin() as conn:
                deleted = conn.execute(_DELETE_EXPIRED_SQL, {"room_id": room.id, "cutoff": cutoff}).rowcount
        except SQLAlchemyError:
            logger.warning("Retention delete failed for room %s (%s)", room.id, room.name, exc_info=True)
            result.failed_rooms.append(room.id)
            continue
        if deleted:
            logger.info("Retention: pruned %s messages from room %s (keep %s days)", deleted, room.id, keep_days)
        result.messages_deleted += deleted

    orphan_rows, orphan_files, notes = sweep_orphan_attachments(engine, config.attachment_root)
    result.orphan_attachments_deleted = orphan_rows
    result.orphan_files_deleted = orphan_files
    result.cleanup = notes

    logger.info(
        "Retention run: rooms=%s with_retention=%s messages_deleted=%s orphan_attachments=%s orphan_files=%s",
        result.rooms_evaluated,
        result.rooms_with_retention,
        result.messages_deleted,
        result.orphan_attachments_deleted,
        result.orphan_files_deleted,
    )
    return result
