"""Outgoing messages: optimistic local insert, remote send, id swap or failure record.

A locally created message carries a synthetic ``local_<ms>_<hex>`` id and
status "sending" until the hub answers. On success the synthetic id becomes the
hub's pending id; if a sync pass already inserted that id, the local copy is
dropped instead. On failure the row keeps status "failed" and the error text so
it can be retried.
"""

import logging
import time
from typing import Any
from uuid import uuid4

from sqlalchemy import select

from beeper_sync.client import BeeperClient
from beeper_sync.database import db_session
from beeper_sync.exceptions import ChatNotFoundError, classify_error
from beeper_sync.models import Message
from beeper_sync.normalize import utcnow
from beeper_sync.reconcile import get_chat_by_remote_id

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local_"


def new_local_message_id() -> str:
    return f"{LOCAL_ID_PREFIX}{int(time.time() * 1000)}_{uuid4().hex[:8]}"


def _result(message_id: str, status: str, error: str | None = None) -> dict[str, Any]:
    return {"success": status != "failed", "message_id": message_id, "status": status, "error": error}


async def _deliver(
    client: BeeperClient, pk: int, chat_id: str, text: str, reply_to_message_id: str | None
) -> dict[str, Any]:
    try:
        sent = await client.send_message(chat_id, text, reply_to_message_id)
    except Exception as e:
        with db_session() as db:
            message = db.get(Message, pk)
            message.status = "failed"
            message.error = str(e)
            local_id = message.message_id
        if classify_error(e) == "unavailable":
            logger.info("Send to %s deferred, backend unavailable: %s", chat_id, e)
        else:
            logger.warning("Send to %s failed: %s", chat_id, e)
        return _result(local_id, "failed", str(e))

    with db_session() as db:
        message = db.get(Message, pk)
        existing = db.scalars(
            select(Message)
            .where(Message.chat_id == message.chat_id)
            .where(Message.message_id == sent.pending_message_id)
        ).first()
        if existing is not None:
            # A sync pass got there first; keep the synced row.
            db.delete(message)
        else:
            message.message_id = sent.pending_message_id
            message.status = "sent"
            message.error = None
    return _result(sent.pending_message_id, "sent")


async def send_message(
    client: BeeperClient, chat_id: str, text: str, reply_to_message_id: str | None = None
) -> dict[str, Any]:
    if not text or not text.strip():
        raise ValueError("Message text must not be empty")
    now = utcnow()
    local_id = new_local_message_id()
    with db_session() as db:
        chat = get_chat_by_remote_id(db, chat_id)
        if chat is None:
            raise ChatNotFoundError(f"Chat {chat_id} not found")
        message = Message(
            chat_id=chat.id,
            message_id=local_id,
            account_id=chat.account_id,
            text=text,
            timestamp=now,
            sort_key=local_id,
            is_from_user=True,
            status="sending",
            reply_to_message_id=reply_to_message_id,
        )
        db.add(message)
        chat.last_message = text
        chat.last_message_from = "user"
        chat.needs_reply = False
        chat.last_activity = now
        db.flush()
        pk = message.id
    logger.info("Queued %s for chat %s", local_id, chat_id)
    return await _deliver(client, pk, chat_id, text, reply_to_message_id)


async def retry_message(client: BeeperClient, message_id: str) -> dict[str, Any]:
    """Re-send a message whose previous attempt failed."""
    with db_session() as db:
        message = db.scalars(select(Message).where(Message.message_id == message_id)).first()
        if message is None:
            raise ValueError(f"Message {message_id} not found")
        if message.status != "failed":
            raise ValueError(f"Message {message_id} has status {message.status!r}; only failed messages can be retried")
        message.status = "sending"
        message.error = None
        pk, text, reply_to = message.id, message.text, message.reply_to_message_id
        chat_id = message.chat.chat_id
    logger.info("Retrying %s in chat %s", message_id, chat_id)
    return await _deliver(client, pk, chat_id, text, reply_to)
