from datetime import datetime, timedelta, timezone

import pytest

from chitchat import db
from chitchat.config import settings
from chitchat.db import StoreHandle
from chitchat.models.core import Attachment, Message, MessageAttachment, PinnedMessage, Room, User

PASSPHRASE = "correct horse battery staple"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Seeder:
    """Inserts chat rows through the ORM for tests."""

    def __init__(self, handle: StoreHandle):
        self.handle = handle

    def _add(self, row):
        with self.handle.session() as session:
            session.add(row)
            session.flush()
            pk = getattr(row, "id", None)
            session.commit()
        return pk

    def user(self, username: str = "alice") -> str:
        return self._add(User(username=username, email=f"{username}@example.com", password_hash="x"))

    def room(self, room_id: str, *, mode: str = "inherit", days: int | None = None, temporary: bool = False) -> str:
        self._add(
            Room(
                id=room_id,
                name=room_id,
                type="text",
                is_temporary=temporary,
                message_retention_mode=mode,
                message_retention_days=days,
            )
        )
        return room_id

    def message(self, room_id: str, user_id: str, *, age: timedelta, pinned: bool = False) -> str:
        message_id = self._add(Message(room_id=room_id, user_id=user_id, content="hi", created_at=utcnow() - age))
        if pinned:
            with self.handle.session() as session:
                session.add(PinnedMessage(message_id=message_id, room_id=room_id, pinned_by=user_id))
                session.commit()
        return message_id

    def attachment(self, user_id: str, storage_path: str, *, message_id: str | None = None) -> str:
        attachment_id = self._add(
            Attachment(
                uploaded_by=user_id,
                original_name=storage_path.rsplit("/", 1)[-1],
                mime_type="application/octet-stream",
                size_bytes=1,
                storage_path=storage_path,
            )
        )
        if message_id is not None:
            with self.handle.session() as session:
                session.add(MessageAttachment(message_id=message_id, attachment_id=attachment_id))
                session.commit()
        return attachment_id


@pytest.fixture
def store_handle(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "default_rooms", [])
    handle = StoreHandle(tmp_path / "chitchat.db")
    monkeypatch.setattr(db, "store", handle)
    yield handle
    handle.release()


@pytest.fixture
def seed(store_handle):
    return Seeder(store_handle)


@pytest.fixture
def storage_root(tmp_path, monkeypatch):
    root = tmp_path / "uploads"
    root.mkdir()
    monkeypatch.setattr(settings, "attachment_storage_path", str(root))
    return root
