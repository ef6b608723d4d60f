import sqlite3

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError

from chitchat.db import Base, create_store_engine
from chitchat.db_init import (
    EXPECTED_COLUMNS,
    LEDGER_TABLE,
    MIGRATIONS,
    Migration,
    SchemaStatus,
    apply_migrations,
    ensure_current,
)
from chitchat.errors import FatalStartupError

LEGACY_SCHEMA = """
CREATE TABLE users (
  id TEXT PRIMARY KEY,
  username TEXT UNIQUE NOT NULL,
  email TEXT UNIQUE NOT NULL,
  password_hash TEXT NOT NULL,
  avatar_url TEXT,
  status TEXT DEFAULT 'offline',
  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now'))
);
CREATE TABLE rooms (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  type TEXT NOT NULL CHECK (type IN ('text', 'voice')),
  created_by TEXT DEFAULT 'system',
  created_at TEXT DEFAULT (datetime('now'))
);
CREATE TABLE messages (
  id TEXT PRIMARY KEY,
  room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
  user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  content TEXT NOT NULL,
  created_at TEXT DEFAULT (datetime('now'))
);
INSERT INTO users (id, username, email, password_hash) VALUES ('u1', 'alice', 'alice@example.com', 'x');
INSERT INTO rooms (id, name, type, created_at) VALUES ('r1', 'general', 'text', '2023-01-01 00:00:00');
INSERT INTO rooms (id, name, type, created_at) VALUES ('r2', 'Lobby', 'voice', '2023-01-02 00:00:00');
INSERT INTO messages (id, room_id, user_id, content) VALUES ('m1', 'r1', 'u1', 'hello');
"""

# Every migration already recorded, but columns added after them are missing.
DRIFTED_SCHEMA = """
CREATE TABLE _migrations (name TEXT PRIMARY KEY, applied_at TEXT DEFAULT (datetime('now')));
CREATE TABLE users (
  id TEXT PRIMARY KEY,
  username TEXT UNIQUE NOT NULL,
  email TEXT UNIQUE NOT NULL,
  password_hash TEXT NOT NULL,
  avatar_url TEXT,
  about TEXT,
  status TEXT DEFAULT 'offline',
  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now'))
);
CREATE TABLE room_categories (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  position INTEGER NOT NULL DEFAULT 0,
  enforce_type_order INTEGER NOT NULL DEFAULT 1,
  created_at TEXT DEFAULT (datetime('now'))
);
CREATE TABLE rooms (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  type TEXT NOT NULL CHECK (type IN ('text', 'voice', 'dm')),
  created_by TEXT DEFAULT 'system',
  created_at TEXT DEFAULT (datetime('now')),
  category_id TEXT REFERENCES room_categories(id) ON DELETE SET NULL,
  position INTEGER NOT NULL DEFAULT 0,
  is_temporary INTEGER NOT NULL DEFAULT 0,
  owner_user_id TEXT REFERENCES users(id) ON DELETE SET NULL
);
INSERT INTO room_categories (id, name) VALUES ('default', 'Channels');
INSERT INTO rooms (id, name, type, category_id, position) VALUES ('r1', 'general', 'text', 'default', 3);
INSERT INTO users (id, username, email, password_hash, about) VALUES ('u1', 'alice', 'alice@example.com', 'x', 'hi');
"""


def _build(path, script):
    conn = sqlite3.connect(path)
    try:
        conn.executescript(script)
        conn.commit()
    finally:
        conn.close()


def _query(path, sql):
    conn = sqlite3.connect(path)
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


def _columns(engine, table):
    return {c["name"] for c in inspect(engine).get_columns(table)}


@pytest.fixture
def engine(tmp_path):
    engine = create_store_engine(tmp_path / "store.db")
    yield engine
    engine.dispose()


def test_fresh_store_gets_full_schema(engine):
    status = ensure_current(engine, default_rooms=[])

    assert status.migrations_applied == [m.name for m in MIGRATIONS]
    for table in Base.metadata.tables:
        assert table in inspect(engine).get_table_names()
    assert {"message_retention_mode", "message_retention_days", "is_temporary"} <= _columns(engine, "rooms")


def test_second_run_changes_nothing(engine, tmp_path):
    ensure_current(engine, default_rooms=[])
    schema_before = _query(tmp_path / "store.db", "SELECT type, name, sql FROM sqlite_master ORDER BY type, name")

    status = ensure_current(engine, default_rooms=[])

    assert not status.changed
    assert str(status) == "schema ok"
    assert _query(tmp_path / "store.db", "SELECT type, name, sql FROM sqlite_master ORDER BY type, name") == schema_before
    assert _query(tmp_path / "store.db", f"SELECT COUNT(*) FROM {LEDGER_TABLE}") == [(len(MIGRATIONS),)]


def test_legacy_store_is_upgraded_without_losing_rows(tmp_path):
    path = tmp_path / "legacy.db"
    _build(path, LEGACY_SCHEMA)
    engine = create_store_engine(path)
    try:
        ensure_current(engine, default_rooms=[])
        with engine.connect() as conn:
            rooms = conn.execute(
                text(
                    "SELECT id, name, type, created_at, category_id, is_temporary, message_retention_mode "
                    "FROM rooms ORDER BY id"
                )
            ).all()
            messages = conn.execute(text("SELECT id, room_id, content FROM messages")).all()
        users = _columns(engine, "users")
    finally:
        engine.dispose()

    assert [tuple(r) for r in rooms] == [
        ("r1", "general", "text", "2023-01-01 00:00:00", "default", 0, "inherit"),
        ("r2", "Lobby", "voice", "2023-01-02 00:00:00", "default", 0, "inherit"),
    ]
    assert [tuple(m) for m in messages] == [("m1", "r1", "hello")]
    assert {"about", "activity_game"} <= users


def test_drifted_store_gains_exactly_the_missing_columns(tmp_path):
    path = tmp_path / "drifted.db"
    _build(path, DRIFTED_SCHEMA)
    conn = sqlite3.connect(path)
    conn.executemany("INSERT INTO _migrations (name) VALUES (?)", [(m.name,) for m in MIGRATIONS])
    conn.commit()
    conn.close()
    rooms_before = _query(path, "SELECT id, name, type, category_id, position FROM rooms")

    engine = create_store_engine(path)
    try:
        status = ensure_current(engine, default_rooms=[])
    finally:
        engine.dispose()

    assert status.migrations_applied == []
    assert status.columns_added == [
        "users.activity_game",
        "rooms.message_retention_mode",
        "rooms.message_retention_days",
    ]
    assert _query(path, "SELECT id, name, type, category_id, position FROM rooms") == rooms_before
    assert _query(path, "SELECT about, activity_game FROM users") == [("hi", None)]
    assert _query(path, "SELECT message_retention_mode, message_retention_days FROM rooms") == [("inherit", None)]


def test_failed_migration_is_rolled_back_and_not_recorded(engine, tmp_path):
    migrations = (
        Migration(name="900_ok", statements=("CREATE TABLE t_ok (id INTEGER)",)),
        Migration(
            name="901_broken",
            statements=("CREATE TABLE t_bad (id INTEGER)", "INSERT INTO no_such_table VALUES (1)"),
        ),
        Migration(name="902_never_reached", statements=("CREATE TABLE t_later (id INTEGER)",)),
    )

    with pytest.raises(FatalStartupError, match="901_broken"):
        apply_migrations(engine, migrations)

    path = tmp_path / "store.db"
    assert _query(path, f"SELECT name FROM {LEDGER_TABLE}") == [("900_ok",)]
    tables = {row[0] for row in _query(path, "SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert "t_ok" in tables
    assert "t_bad" not in tables
    assert "t_later" not in tables


def test_failed_migration_is_retried_on_next_start(engine):
    broken = (Migration(name="900_flaky", statements=("INSERT INTO missing_table VALUES (1)",)),)
    with pytest.raises(FatalStartupError):
        apply_migrations(engine, broken)

    fixed = (Migration(name="900_flaky", statements=("CREATE TABLE t_fixed (id INTEGER)",)),)
    assert apply_migrations(engine, fixed) == ["900_flaky"]
    assert apply_migrations(engine, fixed) == []


def test_default_rooms_are_seeded_once(engine):
    from chitchat.config import DefaultRoom

    rooms = [DefaultRoom(id="general", name="general"), DefaultRoom(id="voice-lobby", name="Lobby", type="voice")]
    ensure_current(engine, default_rooms=rooms)
    ensure_current(engine, default_rooms=rooms)

    with engine.connect() as conn:
        rows = conn.execute(text("SELECT id, type, category_id FROM rooms ORDER BY id")).all()
    assert [tuple(r) for r in rows] == [("general", "text", "default"), ("voice-lobby", "voice", "default")]


def test_expected_columns_match_the_models():
    for table, columns in EXPECTED_COLUMNS.items():
        model_columns = set(Base.metadata.tables[table].columns.keys())
        for column, _ddl in columns:
            assert column in model_columns


def test_schema_status_summary():
    status = SchemaStatus(migrations_applied=["001_allow_dm_room_type"], columns_added=["rooms.message_retention_days"])
    assert status.changed
    assert str(status) == (
        "schema updated; migrations applied=001_allow_dm_room_type; columns added=rooms.message_retention_days"
    )


@pytest.mark.parametrize("schema", [None, LEGACY_SCHEMA], ids=["fresh", "legacy"])
def test_retention_mode_check_survives_room_rewrites(tmp_path, schema):
    path = tmp_path / "store.db"
    if schema is not None:
        _build(path, schema)
    engine = create_store_engine(path)
    try:
        ensure_current(engine, default_rooms=[])
        with pytest.raises(IntegrityError):
            with engine.begin() as conn:
                conn.execute(
                    text(
                        "INSERT INTO rooms (id, name, type, message_retention_mode) "
                        "VALUES ('odd', 'odd', 'text', 'sometimes')"
                    )
                )
    finally:
        engine.dispose()
