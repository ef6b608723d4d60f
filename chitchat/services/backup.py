from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy.engine import Engine

from chitchat import db
from chitchat.db import StoreHandle
from chitchat.errors import CleanupNote, FilesystemError, StoreBusyError
from chitchat.services import backup_codec

logger = logging.getLogger(__name__)

SIDECAR_SUFFIXES = ("-wal", "-shm")


@dataclass(frozen=True)
class BackupSnapshot:
    payload: bytes
    suggested_file_name: str
    created_at: str


@dataclass
class RestoreResult:
    # None when there was no database file to preserve.
    rollback_file_path: str | None
    cleanup: list[CleanupNote] = field(default_factory=list)


def _checkpoint(engine: Engine) -> None:
    raw = engine.raw_connection()
    try:
        cursor = raw.cursor()
        busy, _log_frames, _checkpointed = cursor.execute("PRAGMA wal_checkpoint(FULL)").fetchone()
        cursor.close()
    finally:
        raw.close()
    if busy:
        raise StoreBusyError("WAL checkpoint did not complete; the store is in use by another connection")


def snapshot(passphrase: str, *, handle: StoreHandle | None = None) -> BackupSnapshot:
    """Encrypt a consistent image of the live database."""
    handle = handle or db.store
    backup_codec.require_passphrase(passphrase)

    engine = handle.acquire()
    _checkpoint(engine)
    raw = handle.path.read_bytes()

    moment = datetime.now(timezone.utc)
    payload = backup_codec.encode(passphrase, raw, created_at=moment)
    created_at = backup_codec.format_created_at(moment)
    file_name = backup_codec.suggested_file_name(created_at)
    logger.info("Created encrypted backup %s (%s database bytes)", file_name, len(raw))
    return BackupSnapshot(payload=payload, suggested_file_name=file_name, created_at=created_at)


def _write_safety_copy(path: Path) -> Path | None:
    if not path.exists():
        return None
    rollback = path.with_name(f"{path.name}.pre-restore-{int(time.time() * 1000)}.bak")
    shutil.copy2(path, rollback)
    return rollback


def _replace_file(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".restore.tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise


def _remove_stale_sidecars(path: Path) -> list[CleanupNote]:
    notes: list[CleanupNote] = []
    for suffix in SIDECAR_SUFFIXES:
        sidecar = path.with_name(f"{path.name}{suffix}")
        try:
            sidecar.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            notes.append(CleanupNote(path=str(sidecar), error=str(exc)))
            logger.warning("Could not remove stale journal file %s: %s", sidecar, exc)
    return notes


def restore(payload: bytes, passphrase: str, *, handle: StoreHandle | None = None) -> RestoreResult:
    """Replace the live database with the contents of an encrypted backup.

    The backup is fully decoded and verified before anything on disk changes.
    The previous database is copied to ``<db>.pre-restore-<epoch ms>.bak`` and
    left in place for a manual rollback.
    """
    handle = handle or db.store
    raw = backup_codec.decode(passphrase, payload)

    path = handle.path
    handle.release()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        rollback = _write_safety_copy(path)
        _replace_file(path, raw)
    except OSError as exc:
        # The primary file is unchanged; bring the store back before failing.
        handle.acquire()
        raise FilesystemError(f"Restore aborted before the database was replaced: {exc}") from exc

    cleanup = _remove_stale_sidecars(path)
    logger.info("Restored database %s from backup; previous copy kept at %s", path, rollback)
    handle.acquire()
    return RestoreResult(rollback_file_path=str(rollback) if rollback else None, cleanup=cleanup)
