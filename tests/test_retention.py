from datetime import timedelta

import pytest
from sqlalchemy import text

from chitchat.config import Settings
from chitchat.services import retention
from chitchat.services.retention import effective_retention_days


@pytest.mark.parametrize(
    "mode, room_days, default_days, expected",
    [
        ("never", 5, 30, 0),
        ("days", 3, 30, 3),
        ("days", None, 30, 0),
        ("days", -1, 30, 0),
        ("days", 2.7, 0, 2),
        ("inherit", None, 30, 30),
        ("inherit", 10, 30, 30),
        ("inherit", None, 0, 0),
        (None, None, 7, 7),
        (" NEVER ", None, 7, 0),
        ("bogus", None, 7, 7),
    ],
)
def test_effective_retention_days(mode, room_days, default_days, expected):
    assert effective_retention_days(mode, room_days, default_days) == expected


@pytest.fixture
def config(storage_root):
    return Settings(message_retention_days=30, attachment_storage_path=str(storage_root))


def _message_ids(handle):
    with handle.acquire().connect() as conn:
        return set(conn.execute(text("SELECT id FROM messages")).scalars().all())


def _attachment_ids(handle):
    with handle.acquire().connect() as conn:
        return set(conn.execute(text("SELECT id FROM attachments")).scalars().all())


def test_pinned_messages_survive(seed, store_handle, config):
    user = seed.user()
    seed.room("short", mode="days", days=1)
    pinned = seed.message("short", user, age=timedelta(days=3), pinned=True)
    seed.message("short", user, age=timedelta(days=3))

    result = retention.run(config)

    assert result.messages_deleted == 1
    assert _message_ids(store_handle) == {pinned}


def test_room_modes(seed, store_handle, config):
    user = seed.user()
    seed.room("keep-forever", mode="never")
    seed.room("three-days", mode="days", days=3)
    seed.room("inherits", mode="inherit")
    ancient = seed.message("keep-forever", user, age=timedelta(days=100))
    seed.message("three-days", user, age=timedelta(days=5))
    recent = seed.message("three-days", user, age=timedelta(days=2))
    seed.message("inherits", user, age=timedelta(days=31))
    inherited_recent = seed.message("inherits", user, age=timedelta(days=29))

    result = retention.run(config)

    assert result.messages_deleted == 2
    assert result.rooms_evaluated == 3
    assert result.rooms_with_retention == 2
    assert result.failed_rooms == []
    assert _message_ids(store_handle) == {ancient, recent, inherited_recent}


def test_zero_default_disables_inherited_pruning(seed, store_handle, storage_root):
    user = seed.user()
    seed.room("inherits")
    old = seed.message("inherits", user, age=timedelta(days=400))

    result = retention.run(Settings(message_retention_days=0, attachment_storage_path=str(storage_root)))

    assert result.messages_deleted == 0
    assert result.rooms_with_retention == 0
    assert _message_ids(store_handle) == {old}


def test_temporary_rooms_are_skipped(seed, store_handle, config):
    user = seed.user()
    seed.room("call", temporary=True)
    kept = seed.message("call", user, age=timedelta(days=90))

    result = retention.run(config)

    assert result.rooms_evaluated == 0
    assert _message_ids(store_handle) == {kept}


def test_orphan_attachments_are_swept(seed, store_handle, config, storage_root):
    user = seed.user()
    seed.room("general", mode="days", days=1)
    live_message = seed.message("general", user, age=timedelta(hours=1))
    expired_message = seed.message("general", user, age=timedelta(days=2))

    (storage_root / "orphan.bin").write_bytes(b"x")
    (storage_root / "linked.bin").write_bytes(b"x")
    (storage_root / "expired.bin").write_bytes(b"x")
    seed.attachment(user, "orphan.bin")
    linked = seed.attachment(user, "linked.bin", message_id=live_message)
    seed.attachment(user, "expired.bin", message_id=expired_message)

    result = retention.run(config)

    assert result.messages_deleted == 1
    assert result.orphan_attachments_deleted == 2
    assert result.orphan_files_deleted == 2
    assert _attachment_ids(store_handle) == {linked}
    assert (storage_root / "linked.bin").exists()
    assert not (storage_root / "orphan.bin").exists()
    assert not (storage_root / "expired.bin").exists()


def test_orphan_outside_storage_root_is_reported_not_deleted(seed, store_handle, config, storage_root):
    user = seed.user()
    outside = storage_root.parent / "outside.bin"
    outside.write_bytes(b"keep")
    seed.attachment(user, "../outside.bin")
    seed.attachment(user, "already-gone.bin")

    result = retention.run(config)

    assert result.orphan_attachments_deleted == 2
    assert result.orphan_files_deleted == 0
    assert [note.path for note in result.cleanup] == ["../outside.bin"]
    assert outside.read_bytes() == b"keep"
    assert _attachment_ids(store_handle) == set()


def test_failed_room_does_not_block_others(seed, store_handle, config):
    user = seed.user()
    seed.room("locked", mode="days", days=1)
    seed.room("open", mode="days", days=1)
    stuck = seed.message("locked", user, age=timedelta(days=2))
    seed.message("open", user, age=timedelta(days=2))
    with store_handle.acquire().begin() as conn:
        conn.execute(
            text(
                """
                CREATE TRIGGER block_locked_room BEFORE DELETE ON messages
                WHEN OLD.room_id = 'locked'
                BEGIN SELECT RAISE(ABORT, 'room is locked'); END
                """
            )
        )

    result = retention.run(config)

    assert result.failed_rooms == ["locked"]
    assert result.messages_deleted == 1
    assert _message_ids(store_handle) == {stuck}


def test_retention_longer_than_the_calendar_keeps_everything(seed, store_handle, config):
    user = seed.user()
    seed.room("forever-ish", mode="days", days=1_000_000)
    seed.room("short", mode="days", days=1)
    kept = seed.message("forever-ish", user, age=timedelta(days=3))
    seed.message("short", user, age=timedelta(days=3))

    result = retention.run(config)

    assert result.messages_deleted == 1
    assert result.failed_rooms == []
    assert result.rooms_with_retention == 2
    assert _message_ids(store_handle) == {kept}
