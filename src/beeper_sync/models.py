"""Local mirror of the Beeper hub: chats, messages, participants, contacts and sync state."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY.
PKType = BigInteger().with_variant(Integer, "sqlite")

CHAT_LIST_SYNC_KEY = "global"
CHAT_SYNC_LOCK_KEY = "chat_sync"
HISTORICAL_BACKFILL_KEY = "historical"


class Base(DeclarativeBase):
    pass


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    first_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    instagram: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    whatsapp: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    phones: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    phone_index: Mapped[list["ContactPhone"]] = relationship(
        back_populates="contact", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str | None:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else None


class ContactPhone(Base):
    """Precomputed normalized phone numbers so matching is an indexed lookup."""

    __tablename__ = "contact_phones"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    normalized_phone: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    contact: Mapped["Contact"] = relationship(back_populates="phone_index")

    __table_args__ = (
        UniqueConstraint("contact_id", "normalized_phone", name="uq_contact_phones_contact_phone"),
    )


class Chat(Base):
    __tablename__ = "chats"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    local_chat_id: Mapped[str] = mapped_column(String(512), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False, default="Unknown")
    network: Mapped[str] = mapped_column(String(128), nullable=False, default="Unknown")
    account_id: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="single")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Counterpart of a single chat
    username: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    phone_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    participant_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    participant_full_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    participant_img_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    cannot_message: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    participant_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_activity: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_muted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    last_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_from: Mapped[str | None] = mapped_column(String(8), nullable=True)  # "user" | "them"
    needs_reply: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    last_read_message_sort_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    newest_message_sort_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    oldest_message_sort_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    has_complete_history: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_full_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_messages_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_source: Mapped[str | None] = mapped_column(String(32), nullable=True)

    contact_id: Mapped[int | None] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )
    contact_manually_linked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    contact: Mapped["Contact | None"] = relationship()
    messages: Mapped[list["Message"]] = relationship(
        back_populates="chat", cascade="all, delete-orphan"
    )
    participants: Mapped[list["Participant"]] = relationship(
        back_populates="chat", cascade="all, delete-orphan"
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(
        ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    message_id: Mapped[str] = mapped_column(String(512), nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sort_key: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    sender_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_from_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_unread: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    attachments: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    reactions: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)

    # Only locally sent messages leave "sent"
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="sent")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    reply_to_message_id: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    chat: Mapped["Chat"] = relationship(back_populates="messages")

    __table_args__ = (
        UniqueConstraint("chat_id", "message_id", name="uq_messages_chat_message_id"),
    )


class Participant(Base):
    __tablename__ = "participants"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(
        ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    participant_id: Mapped[str] = mapped_column(String(512), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    username: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    img_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_self: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cannot_message: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    contact_id: Mapped[int | None] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    chat: Mapped["Chat"] = relationship(back_populates="participants")

    __table_args__ = (
        UniqueConstraint("chat_id", "participant_id", name="uq_participants_chat_participant"),
    )


class ChatListSync(Base):
    """Cursor boundaries of the global chat list window."""

    __tablename__ = "chat_list_sync"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    newest_cursor: Mapped[str | None] = mapped_column(String(512), nullable=True)
    oldest_cursor: Mapped[str | None] = mapped_column(String(512), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    total_chats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class SyncLock(Base):
    __tablename__ = "sync_locks"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    holder: Mapped[str | None] = mapped_column(String(64), nullable=True)
    acquired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BackfillStatus(Base):
    """Progress of the historical backfill; is_running doubles as the stop flag."""

    __tablename__ = "backfill_status"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    is_running: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    chats_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_chats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    messages_loaded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_chat: Mapped[str | None] = mapped_column(String(512), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
