import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from chitchat.db import Base

_NOW = text("(datetime('now'))")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("status IN ('online', 'offline', 'away', 'dnd')", name="ck_users_status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String, unique=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    password_hash: Mapped[str] = mapped_column(String)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    about: Mapped[str | None] = mapped_column(Text, nullable=True)
    activity_game: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="offline", server_default="offline")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)


class RoomCategory(Base):
    __tablename__ = "room_categories"
    __table_args__ = (Index("idx_room_categories_position", "position"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    position: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    enforce_type_order: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)


class Room(Base):
    __tablename__ = "rooms"
    __table_args__ = (
        CheckConstraint("type IN ('text', 'voice', 'dm')", name="ck_rooms_type"),
        CheckConstraint(
            "message_retention_mode IN ('inherit', 'never', 'days')",
            name="ck_rooms_message_retention_mode",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String)
    created_by: Mapped[str] = mapped_column(String, default="system", server_default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)
    category_id: Mapped[str | None] = mapped_column(
        ForeignKey("room_categories.id", ondelete="SET NULL"), nullable=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    is_temporary: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    owner_user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    message_retention_mode: Mapped[str] = mapped_column(String, default="inherit", server_default="inherit")
    message_retention_days: Mapped[int | None] = mapped_column(Integer, nullable=True)


class RoomMember(Base):
    __tablename__ = "room_members"

    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_room_id", "room_id"),
        Index("idx_messages_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)


class MessageReaction(Base):
    __tablename__ = "message_reactions"
    __table_args__ = (Index("idx_message_reactions_message_id", "message_id"),)

    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    emoji: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)


class PinnedMessage(Base):
    __tablename__ = "pinned_messages"
    __table_args__ = (Index("idx_pinned_messages_room_id", "room_id"),)

    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"))
    pinned_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    pinned_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)


class Attachment(Base):
    __tablename__ = "attachments"
    __table_args__ = (Index("idx_attachments_uploaded_by", "uploaded_by"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    uploaded_by: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    original_name: Mapped[str] = mapped_column(String)
    mime_type: Mapped[str] = mapped_column(String)
    size_bytes: Mapped[int] = mapped_column(Integer)
    # Relative to the configured attachment storage root.
    storage_path: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)


class MessageAttachment(Base):
    __tablename__ = "message_attachments"
    __table_args__ = (Index("idx_message_attachments_attachment_id", "attachment_id"),)

    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    attachment_id: Mapped[str] = mapped_column(ForeignKey("attachments.id", ondelete="CASCADE"), primary_key=True)


class Friend(Base):
    __tablename__ = "friends"
    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", name="uq_friends_pair"),
        CheckConstraint("status IN ('pending', 'accepted', 'blocked')", name="ck_friends_status"),
        Index("idx_friends_user_id", "user_id"),
        Index("idx_friends_friend_id", "friend_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    friend_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    status: Mapped[str] = mapped_column(String, default="pending", server_default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)


class UserRoomNotificationPref(Base):
    __tablename__ = "user_room_notification_prefs"
    __table_args__ = (
        CheckConstraint("mode IN ('all', 'mentions', 'mute')", name="ck_notification_prefs_mode"),
        Index("idx_user_room_notification_prefs_user_id", "user_id"),
    )

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), primary_key=True)
    mode: Mapped[str] = mapped_column(String)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, server_default=_NOW)
