"""initial_schema: contacts, chats, messages, participants and sync state.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("first_name", sa.String(256), nullable=True),
        sa.Column("last_name", sa.String(256), nullable=True),
        sa.Column("instagram", sa.String(256), nullable=True),
        sa.Column("whatsapp", sa.String(64), nullable=True),
        sa.Column("phones", JSONB, nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contacts_instagram", "contacts", ["instagram"])
    op.create_index("ix_contacts_whatsapp", "contacts", ["whatsapp"])

    op.create_table(
        "contact_phones",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("contact_id", sa.BigInteger(), nullable=False),
        sa.Column("normalized_phone", sa.String(32), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contact_id", "normalized_phone", name="uq_contact_phones_contact_phone"),
    )
    op.create_index("ix_contact_phones_normalized_phone", "contact_phones", ["normalized_phone"])

    op.create_table(
        "chats",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("chat_id", sa.String(512), nullable=False),
        sa.Column("local_chat_id", sa.String(512), nullable=False),
        sa.Column("title", sa.String(512), nullable=False, server_default="Unknown"),
        sa.Column("network", sa.String(128), nullable=False, server_default="Unknown"),
        sa.Column("account_id", sa.String(256), nullable=False, server_default=""),
        sa.Column("type", sa.String(16), nullable=False, server_default="single"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("username", sa.String(256), nullable=True),
        sa.Column("phone_number", sa.String(64), nullable=True),
        sa.Column("email", sa.String(256), nullable=True),
        sa.Column("participant_id", sa.String(512), nullable=True),
        sa.Column("participant_full_name", sa.String(512), nullable=True),
        sa.Column("participant_img_url", sa.Text(), nullable=True),
        sa.Column("cannot_message", sa.Boolean(), nullable=True),
        sa.Column("participant_count", sa.Integer(), nullable=True),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_muted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("last_message", sa.Text(), nullable=True),
        sa.Column("last_message_from", sa.String(8), nullable=True),
        sa.Column("needs_reply", sa.Boolean(), nullable=True),
        sa.Column("last_read_message_sort_key", sa.String(128), nullable=True),
        sa.Column("newest_message_sort_key", sa.String(128), nullable=True),
        sa.Column("oldest_message_sort_key", sa.String(128), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("has_complete_history", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("last_full_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_messages_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_source", sa.String(32), nullable=True),
        sa.Column("contact_id", sa.BigInteger(), nullable=True),
        sa.Column("contact_manually_linked", sa.Boolean(), nullable=False, server_default="false"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_chats_chat_id", "chats", ["chat_id"], unique=True)
    op.create_index("ix_chats_username", "chats", ["username"])
    op.create_index("ix_chats_last_activity", "chats", ["last_activity"])

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("message_id", sa.String(512), nullable=False),
        sa.Column("account_id", sa.String(256), nullable=True),
        sa.Column("text", sa.Text(), nullable=False, server_default=""),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sort_key", sa.String(128), nullable=False),
        sa.Column("sender_id", sa.String(512), nullable=True),
        sa.Column("sender_name", sa.String(512), nullable=True),
        sa.Column("is_from_user", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_unread", sa.Boolean(), nullable=True),
        sa.Column("attachments", JSONB, nullable=True),
        sa.Column("reactions", JSONB, nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="sent"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("reply_to_message_id", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chat_id", "message_id", name="uq_messages_chat_message_id"),
    )
    op.create_index("ix_messages_chat_timestamp", "messages", ["chat_id", "timestamp"])
    op.create_index(
        "ix_messages_failed",
        "messages",
        ["status"],
        postgresql_where=sa.text("status <> 'sent'"),
    )

    op.create_table(
        "participants",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("participant_id", sa.String(512), nullable=False),
        sa.Column("full_name", sa.String(512), nullable=True),
        sa.Column("username", sa.String(256), nullable=True),
        sa.Column("phone_number", sa.String(64), nullable=True),
        sa.Column("email", sa.String(256), nullable=True),
        sa.Column("img_url", sa.Text(), nullable=True),
        sa.Column("is_self", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("cannot_message", sa.Boolean(), nullable=True),
        sa.Column("contact_id", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chat_id", "participant_id", name="uq_participants_chat_participant"),
    )

    op.create_table(
        "chat_list_sync",
        sa.Column("key", sa.String(32), nullable=False),
        sa.Column("newest_cursor", sa.String(512), nullable=True),
        sa.Column("oldest_cursor", sa.String(512), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_source", sa.String(32), nullable=True),
        sa.Column("total_chats", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "sync_locks",
        sa.Column("key", sa.String(32), nullable=False),
        sa.Column("holder", sa.String(64), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "backfill_status",
        sa.Column("key", sa.String(32), nullable=False),
        sa.Column("is_running", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("chats_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_chats", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("messages_loaded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_chat", sa.String(512), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("backfill_status")
    op.drop_table("sync_locks")
    op.drop_table("chat_list_sync")
    op.drop_table("participants")
    op.drop_index("ix_messages_failed", table_name="messages")
    op.drop_index("ix_messages_chat_timestamp", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_chats_last_activity", table_name="chats")
    op.drop_index("ix_chats_username", table_name="chats")
    op.drop_index("ix_chats_chat_id", table_name="chats")
    op.drop_table("chats")
    op.drop_index("ix_contact_phones_normalized_phone", table_name="contact_phones")
    op.drop_table("contact_phones")
    op.drop_index("ix_contacts_whatsapp", table_name="contacts")
    op.drop_index("ix_contacts_instagram", table_name="contacts")
    op.drop_table("contacts")
