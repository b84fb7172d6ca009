"""User actions on a chat: archive, read state, focus in the desktop app."""

import logging
from typing import Any

from beeper_sync.client import BeeperClient
from beeper_sync.database import db_session
from beeper_sync.exceptions import ChatNotFoundError
from beeper_sync.reconcile import get_chat_by_remote_id

logger = logging.getLogger(__name__)


def _set_local(chat_id: str, **values: Any) -> None:
    with db_session() as db:
        chat = get_chat_by_remote_id(db, chat_id)
        if chat is None:
            raise ChatNotFoundError(f"Chat {chat_id} not found")
        for name, value in values.items():
            setattr(chat, name, value)


async def archive_chat(client: BeeperClient, chat_id: str, archived: bool = True) -> dict[str, Any]:
    """Local state changes first; the hub is updated best-effort."""
    _set_local(chat_id, is_archived=archived)
    try:
        await client.archive_chat(chat_id, archived)
    except Exception as e:
        logger.warning("Archive state for %s not pushed to hub: %s", chat_id, e)
        return {"success": True, "chat_id": chat_id, "is_archived": archived, "remote_synced": False, "error": str(e)}
    return {"success": True, "chat_id": chat_id, "is_archived": archived, "remote_synced": True, "error": None}


async def unarchive_chat(client: BeeperClient, chat_id: str) -> dict[str, Any]:
    return await archive_chat(client, chat_id, archived=False)


def mark_chat_read(chat_id: str) -> dict[str, Any]:
    _set_local(chat_id, unread_count=0)
    return {"success": True, "chat_id": chat_id, "unread_count": 0}


def mark_chat_unread(chat_id: str) -> dict[str, Any]:
    _set_local(chat_id, unread_count=1)
    return {"success": True, "chat_id": chat_id, "unread_count": 1}


async def focus_chat(client: BeeperClient, chat_id: str, draft_text: str | None = None) -> dict[str, Any]:
    await client.focus_chat(chat_id, draft_text)
    return {"success": True, "chat_id": chat_id}
