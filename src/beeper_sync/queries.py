"""Read operations over the local mirror: chat list, message pages, chat details."""

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from beeper_sync.exceptions import ChatNotFoundError
from beeper_sync.models import CHAT_LIST_SYNC_KEY, Chat, ChatListSync, Message
from beeper_sync.normalize import as_utc
from beeper_sync.reconcile import get_chat_by_remote_id

CHAT_FILTERS = ("all", "unreplied", "unread", "archived")


def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def chat_to_dict(chat: Chat) -> dict[str, Any]:
    """Chat row enriched with its contact: contact name beats title, participant avatar beats contact image."""
    contact = chat.contact
    name = contact.display_name if contact and contact.display_name else chat.title
    return {
        "id": chat.id,
        "chat_id": chat.chat_id,
        "local_chat_id": chat.local_chat_id,
        "name": name,
        "title": chat.title,
        "network": chat.network,
        "account_id": chat.account_id,
        "type": chat.type,
        "username": chat.username,
        "phone_number": chat.phone_number,
        "avatar_url": chat.participant_img_url or (contact.image_url if contact else None),
        "contact_id": chat.contact_id,
        "contact_manually_linked": chat.contact_manually_linked,
        "last_activity": _iso(chat.last_activity),
        "unread_count": chat.unread_count,
        "is_archived": chat.is_archived,
        "is_muted": chat.is_muted,
        "is_pinned": chat.is_pinned,
        "last_message": chat.last_message,
        "last_message_from": chat.last_message_from,
        "needs_reply": chat.needs_reply,
        "message_count": chat.message_count,
        "has_complete_history": chat.has_complete_history,
    }


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "message_id": message.message_id,
        "text": message.text,
        "timestamp": _iso(message.timestamp),
        "sort_key": message.sort_key,
        "sender_id": message.sender_id,
        "sender_name": message.sender_name,
        "is_from_user": message.is_from_user,
        "is_unread": message.is_unread,
        "attachments": message.attachments or [],
        "reactions": message.reactions or [],
        "status": message.status,
        "error": message.error,
        "reply_to_message_id": message.reply_to_message_id,
    }


def list_chats(db: Session, filter: str = "all", limit: int = 50, offset: int = 0) -> dict[str, Any]:
    """Single chats by last activity, newest first. continue_cursor is the next offset."""
    if filter not in CHAT_FILTERS:
        raise ValueError(f"filter must be one of {CHAT_FILTERS}, got {filter!r}")
    limit = min(max(1, limit), 200)
    offset = max(0, offset)

    stmt = select(Chat).options(joinedload(Chat.contact)).where(Chat.type == "single")
    if filter == "archived":
        stmt = stmt.where(Chat.is_archived.is_(True))
    else:
        stmt = stmt.where(Chat.is_archived.is_(False))
    if filter == "unreplied":
        stmt = stmt.where(Chat.needs_reply.is_(True))
    elif filter == "unread":
        stmt = stmt.where(Chat.unread_count > 0)

    stmt = stmt.order_by(Chat.last_activity.desc().nulls_last(), Chat.id.desc())
    rows = db.scalars(stmt.offset(offset).limit(limit + 1)).unique().all()
    is_done = len(rows) <= limit
    page = [chat_to_dict(c) for c in rows[:limit]]
    return {
        "page": page,
        "is_done": is_done,
        "continue_cursor": None if is_done else str(offset + limit),
    }


def list_messages(
    db: Session, chat_id: str, limit: int = 50, before_sort_key: str | None = None
) -> dict[str, Any]:
    """Newest page first in the query, returned oldest-first for display."""
    chat = get_chat_by_remote_id(db, chat_id)
    if chat is None:
        raise ChatNotFoundError(f"Chat {chat_id} not found")
    limit = min(max(1, limit), 200)

    stmt = select(Message).where(Message.chat_id == chat.id)
    if before_sort_key is not None:
        anchor = db.scalars(
            select(Message.timestamp)
            .where(Message.chat_id == chat.id)
            .where(Message.sort_key == before_sort_key)
            .limit(1)
        ).first()
        if anchor is not None:
            stmt = stmt.where(Message.timestamp < anchor)
    rows = db.scalars(stmt.order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit + 1)).all()
    has_more = len(rows) > limit or not chat.has_complete_history
    messages = [message_to_dict(m) for m in reversed(rows[:limit])]
    return {"chat_id": chat_id, "messages": messages, "has_more": has_more}


def get_chat(db: Session, chat_id: str) -> dict[str, Any]:
    chat = db.scalars(
        select(Chat).options(joinedload(Chat.contact)).where(Chat.chat_id == chat_id)
    ).first()
    if chat is None:
        raise ChatNotFoundError(f"Chat {chat_id} not found")
    return chat_to_dict(chat)


def get_chat_info(db: Session) -> dict[str, Any]:
    total = db.scalar(select(func.count()).select_from(Chat)) or 0
    messages = db.scalar(select(func.count()).select_from(Message)) or 0
    state = db.get(ChatListSync, CHAT_LIST_SYNC_KEY)
    latest = db.scalar(select(func.max(Chat.last_synced_at)))
    return {
        "chat_count": total,
        "message_count": messages,
        "last_synced_at": _iso(state.last_synced_at if state else latest),
        "last_sync_source": state.sync_source if state else None,
    }
