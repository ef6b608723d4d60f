from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from chitchat.config import DefaultRoom, settings
from chitchat.db import Base
from chitchat.errors import FatalStartupError
from chitchat.models import core as _core  # noqa: F401  (register models)

logger = logging.getLogger(__name__)

LEDGER_TABLE = "_migrations"


@dataclass(frozen=True)
class Migration:
    name: str
    statements: tuple[str, ...]
    # Table rewrites run with foreign keys off so DROP TABLE does not cascade.
    rewrites_tables: bool = False


_ROOMS_V3_DDL = """
    CREATE TABLE rooms_new (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      type TEXT NOT NULL CHECK (type IN ('text', 'voice', 'dm')),
      created_by TEXT DEFAULT 'system',
      created_at TEXT DEFAULT (datetime('now')),
      category_id TEXT REFERENCES room_categories(id) ON DELETE SET NULL,
      position INTEGER NOT NULL DEFAULT 0,
      is_temporary INTEGER NOT NULL DEFAULT 0,
      owner_user_id TEXT REFERENCES users(id) ON DELETE SET NULL
    )
"""

# Append-only. Never reorder, rename or edit an entry once it has shipped.
MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        name="001_allow_dm_room_type",
        statements=(
            "DROP TABLE IF EXISTS rooms_new",
            """
            CREATE TABLE rooms_new (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              type TEXT NOT NULL CHECK (type IN ('text', 'voice', 'dm')),
              created_by TEXT DEFAULT 'system',
              created_at TEXT DEFAULT (datetime('now'))
            )
            """,
            """
            INSERT OR IGNORE INTO rooms_new (id, name, type, created_by, created_at)
            SELECT id, name, type, created_by, created_at FROM rooms
            """,
            "DROP TABLE rooms",
            "ALTER TABLE rooms_new RENAME TO rooms",
        ),
        rewrites_tables=True,
    ),
    Migration(
        name="002_user_room_notification_prefs",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS user_room_notification_prefs (
              user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
              room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
              mode TEXT NOT NULL CHECK (mode IN ('all', 'mentions', 'mute')),
              updated_at TEXT DEFAULT (datetime('now')),
              PRIMARY KEY (user_id, room_id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_user_room_notification_prefs_user_id "
            "ON user_room_notification_prefs(user_id)",
        ),
    ),
    Migration(
        name="003_room_categories_layout",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS room_categories (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              position INTEGER NOT NULL DEFAULT 0,
              enforce_type_order INTEGER NOT NULL DEFAULT 1,
              created_at TEXT DEFAULT (datetime('now'))
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_room_categories_position ON room_categories(position)",
            """
            INSERT OR IGNORE INTO room_categories (id, name, position, enforce_type_order)
            VALUES ('default', 'Channels', 0, 1)
            """,
            "DROP TABLE IF EXISTS rooms_new",
            _ROOMS_V3_DDL,
            """
            INSERT OR IGNORE INTO rooms_new (
              id, name, type, created_by, created_at, category_id, position, is_temporary, owner_user_id
            )
            SELECT
              id,
              name,
              type,
              created_by,
              created_at,
              CASE WHEN type = 'dm' THEN NULL ELSE 'default' END,
              0,
              0,
              NULL
            FROM rooms
            """,
            "DROP TABLE rooms",
            "ALTER TABLE rooms_new RENAME TO rooms",
        ),
        rewrites_tables=True,
    ),
    Migration(
        name="004_temporary_call_rooms",
        statements=(
            "DROP TABLE IF EXISTS rooms_new",
            _ROOMS_V3_DDL,
            """
            INSERT OR IGNORE INTO rooms_new (
              id, name, type, created_by, created_at, category_id, position, is_temporary, owner_user_id
            )
            SELECT id, name, type, created_by, created_at, category_id, position, 0, NULL
            FROM rooms
            """,
            "DROP TABLE rooms",
            "ALTER TABLE rooms_new RENAME TO rooms",
        ),
        rewrites_tables=True,
    ),
    Migration(
        name="005_message_reactions",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS message_reactions (
              message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
              user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
              emoji TEXT NOT NULL,
              created_at TEXT DEFAULT (datetime('now')),
              PRIMARY KEY (message_id, user_id, emoji)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_message_reactions_message_id ON message_reactions(message_id)",
        ),
    ),
    Migration(
        name="006_pinned_messages",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS pinned_messages (
              message_id TEXT PRIMARY KEY REFERENCES messages(id) ON DELETE CASCADE,
              room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
              pinned_by TEXT REFERENCES users(id) ON DELETE SET NULL,
              pinned_at TEXT DEFAULT (datetime('now'))
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_pinned_messages_room_id ON pinned_messages(room_id)",
        ),
    ),
)

# Additive drift healed on every start: table -> ((column, column DDL), ...).
# ADD COLUMN cannot take a non-constant default, so timestamps are nullable here.
EXPECTED_COLUMNS: dict[str, tuple[tuple[str, str], ...]] = {
    "users": (
        ("about", "TEXT"),
        ("activity_game", "TEXT"),
    ),
    "room_categories": (
        ("enforce_type_order", "INTEGER NOT NULL DEFAULT 1"),
    ),
    "rooms": (
        (
            "message_retention_mode",
            "TEXT NOT NULL DEFAULT 'inherit' CHECK (message_retention_mode IN ('inherit', 'never', 'days'))",
        ),
        ("message_retention_days", "INTEGER"),
    ),
}

EXPECTED_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_messages_room_id ON messages (room_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages (created_at)",
    "CREATE INDEX IF NOT EXISTS idx_message_attachments_attachment_id ON message_attachments (attachment_id)",
    "CREATE INDEX IF NOT EXISTS idx_pinned_messages_room_id ON pinned_messages (room_id)",
)


@dataclass
class SchemaStatus:
    migrations_applied: list[str] = field(default_factory=list)
    columns_added: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.migrations_applied or self.columns_added)

    def __str__(self) -> str:
        if not self.changed:
            return "schema ok"
        parts = []
        if self.migrations_applied:
            parts.append(f"migrations applied={', '.join(self.migrations_applied)}")
        if self.columns_added:
            parts.append(f"columns added={', '.join(self.columns_added)}")
        return f"schema updated; {'; '.join(parts)}"


def _ensure_ledger(engine: Engine) -> set[str]:
    with engine.begin() as conn:
        conn.execute(
            text(
                f"""
                CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
                  name TEXT PRIMARY KEY,
                  applied_at TEXT DEFAULT (datetime('now'))
                )
                """
            )
        )
        rows = conn.execute(text(f"SELECT name FROM {LEDGER_TABLE}")).scalars().all()
    return set(rows)


def _run_migration(engine: Engine, migration: Migration) -> None:
    # PRAGMA foreign_keys is a no-op inside a transaction, so this drives the
    # DBAPI connection directly instead of going through engine.begin().
    raw = engine.raw_connection()
    try:
        cursor = raw.cursor()
        if migration.rewrites_tables:
            cursor.execute("PRAGMA foreign_keys=OFF")
        try:
            cursor.execute("BEGIN")
            for statement in migration.statements:
                cursor.execute(statement)
            if migration.rewrites_tables:
                violations = cursor.execute("PRAGMA foreign_key_check").fetchall()
                if violations:
                    raise FatalStartupError(
                        f"Migration {migration.name} left {len(violations)} foreign key violation(s)"
                    )
            cursor.execute(f"INSERT INTO {LEDGER_TABLE} (name) VALUES (?)", (migration.name,))
            raw.commit()
        except Exception:
            raw.rollback()
            raise
        finally:
            if migration.rewrites_tables:
                cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    finally:
        raw.close()


def apply_migrations(engine: Engine, migrations: tuple[Migration, ...] = MIGRATIONS) -> list[str]:
    applied = _ensure_ledger(engine)
    newly_applied: list[str] = []
    for migration in migrations:
        if migration.name in applied:
            continue
        logger.info("Running migration: %s", migration.name)
        try:
            _run_migration(engine, migration)
        except FatalStartupError:
            raise
        except Exception as exc:
            raise FatalStartupError(f"Migration {migration.name} failed: {exc}") from exc
        applied.add(migration.name)
        newly_applied.append(migration.name)
    return newly_applied


def reconcile_columns(
    engine: Engine,
    expected: dict[str, tuple[tuple[str, str], ...]] = EXPECTED_COLUMNS,
) -> list[str]:
    insp = inspect(engine)
    table_names = set(insp.get_table_names())

    stmts: list[str] = []
    added: list[str] = []
    for table, columns in expected.items():
        if table not in table_names:
            continue
        live = {c["name"] for c in insp.get_columns(table)}
        for column, ddl in columns:
            if column not in live:
                stmts.append(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
                added.append(f"{table}.{column}")

    try:
        with engine.begin() as conn:
            for stmt in stmts:
                conn.execute(text(stmt))
            for stmt in EXPECTED_INDEXES:
                conn.execute(text(stmt))
    except SQLAlchemyError as exc:
        raise FatalStartupError(f"Column reconciliation failed: {exc}") from exc

    for name in added:
        logger.info("Added missing column %s", name)
    return added


def _seed_defaults(engine: Engine, default_rooms: list[DefaultRoom]) -> None:
    try:
        with engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT OR IGNORE INTO room_categories (id, name, position, enforce_type_order)
                    VALUES ('default', 'Channels', 0, 1)
                    """
                )
            )
            for room in default_rooms:
                conn.execute(
                    text(
                        """
                        INSERT OR IGNORE INTO rooms (id, name, type, created_by, category_id)
                        VALUES (:id, :name, :type, 'system', :category_id)
                        """
                    ),
                    {
                        "id": room.id,
                        "name": room.name,
                        "type": room.type,
                        "category_id": None if room.type == "dm" else "default",
                    },
                )
    except SQLAlchemyError as exc:
        raise FatalStartupError(f"Seeding default rooms failed: {exc}") from exc


def ensure_current(engine: Engine, *, default_rooms: list[DefaultRoom] | None = None) -> SchemaStatus:
    """Bring the store to the current schema. Safe to call on every start."""
    try:
        Base.metadata.create_all(engine)
    except SQLAlchemyError as exc:
        raise FatalStartupError(f"Creating tables failed: {exc}") from exc

    status = SchemaStatus()
    status.migrations_applied = apply_migrations(engine)
    status.columns_added = reconcile_columns(engine)
    _seed_defaults(engine, settings.default_rooms if default_rooms is None else default_rooms)
    return status
