from __future__ import annotations

import logging
import threading
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session

from chitchat.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _install_sqlite_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # pysqlite would otherwise defer BEGIN until the first DML statement,
        # which leaves DDL outside the transaction.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_store_engine(path: Path) -> Engine:
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False},
    )
    _install_sqlite_hooks(engine)
    return engine


class StoreHandle:
    """Process-wide handle on the SQLite store.

    The engine is opened lazily on the first ``acquire()``, which also brings the
    schema up to date. ``release()`` disposes it so that the file can be replaced
    on disk; the next ``acquire()`` reopens it. Components must call
    ``acquire()`` every time rather than keeping the engine around.
    """

    def __init__(self, path: Path | None = None):
        self._path = path
        self._engine: Engine | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path if self._path is not None else settings.database_file

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def acquire(self) -> Engine:
        with self._lock:
            if self._engine is None:
                self._engine = self._open()
            return self._engine

    def release(self) -> None:
        with self._lock:
            if self._engine is None:
                return
            self._engine.dispose()
            self._engine = None
            logger.info("Closed store %s", self.path)

    def session(self) -> Session:
        return Session(self.acquire())

    def _open(self) -> Engine:
        from chitchat.db_init import ensure_current

        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_store_engine(path)
        try:
            status = ensure_current(engine)
        except Exception:
            engine.dispose()
            raise
        logger.info("Opened store %s (%s)", path, status)
        return engine


store = StoreHandle()
