import asyncio
import logging
from datetime import datetime
from typing import Any

from mcp.server.fastmcp import FastMCP

from beeper_sync import chat_actions, messaging, queries, reconcile
from beeper_sync.consistency import run_consistency_checks
from beeper_sync.database import db_session
from beeper_sync.sync import SyncOrchestrator

logger = logging.getLogger("mcp_server")

mcp = FastMCP("Lilith Beeper", json_response=True)

_orchestrator: SyncOrchestrator | None = None
_background: set[asyncio.Task] = set()


def get_orchestrator() -> SyncOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: SyncOrchestrator | None) -> None:
    """Swap the orchestrator (tests inject one backed by a fake client)."""
    global _orchestrator
    _orchestrator = orchestrator


def _failure(e: Exception, **extra: Any) -> dict:
    return {"success": False, "error": str(e), **extra}


@mcp.tool()
def list_chats(filter: str = "all", limit: int = 50, offset: int = 0) -> dict:
    """List single chats by last activity. filter: all | unreplied | unread | archived."""
    try:
        with db_session() as db:
            out = queries.list_chats(db, filter=filter, limit=limit, offset=offset)
        return {"success": True, "error": None, **out}
    except Exception as e:
        logger.exception("list_chats failed")
        return _failure(e, page=[], is_done=True, continue_cursor=None)


@mcp.tool()
def get_chat(chat_id: str) -> dict:
    """One chat with its resolved contact name and avatar."""
    try:
        with db_session() as db:
            return {"success": True, "error": None, "chat": queries.get_chat(db, chat_id)}
    except Exception as e:
        logger.exception("get_chat failed")
        return _failure(e, chat=None)


@mcp.tool()
def mark_chat_read(chat_id: str, read: bool = True) -> dict:
    """Set a chat's local unread state (read -> 0, unread -> 1)."""
    try:
        if read:
            return {"error": None, **chat_actions.mark_chat_read(chat_id)}
        return {"error": None, **chat_actions.mark_chat_unread(chat_id)}
    except Exception as e:
        logger.exception("mark_chat_read failed")
        return _failure(e)


@mcp.tool()
async def focus_chat(chat_id: str, draft_text: str | None = None) -> dict:
    """Open the chat in the Beeper desktop app, optionally with a draft."""
    try:
        return {"error": None, **await chat_actions.focus_chat(get_orchestrator().client, chat_id, draft_text)}
    except Exception as e:
        logger.exception("focus_chat failed")
        return _failure(e)


@mcp.tool()
def link_chat_contact(chat_id: str, contact_id: int | None = None) -> dict:
    """Link a chat to a contact by hand; omit contact_id to remove the link."""
    try:
        with db_session() as db:
            if contact_id is None:
                chat = reconcile.unlink_chat_contact(db, chat_id)
            else:
                chat = reconcile.link_chat_to_contact(db, chat_id, contact_id)
            return {
                "success": True,
                "error": None,
                "chat_id": chat.chat_id,
                "contact_id": chat.contact_id,
                "contact_manually_linked": chat.contact_manually_linked,
            }
    except Exception as e:
        logger.exception("link_chat_contact failed")
        return _failure(e)


@mcp.tool()
def upsert_contact(
    first_name: str | None = None,
    last_name: str | None = None,
    instagram: str | None = None,
    whatsapp: str | None = None,
    phones: list[str] | None = None,
    image_url: str | None = None,
    contact_id: int | None = None,
) -> dict:
    """Create a contact, or replace one when contact_id is given. Chats pick it up the next time they are reconciled."""
    try:
        with db_session() as db:
            contact = reconcile.upsert_contact(
                db,
                contact_id=contact_id,
                first_name=first_name,
                last_name=last_name,
                instagram=instagram,
                whatsapp=whatsapp,
                phones=phones,
                image_url=image_url,
            )
            return {
                "success": True,
                "error": None,
                "contact_id": contact.id,
                "whatsapp": contact.whatsapp,
                "phones": contact.phones or [],
            }
    except Exception as e:
        logger.exception("upsert_contact failed")
        return _failure(e, contact_id=None)


@mcp.tool()
def get_chat_messages(chat_id: str, limit: int = 50, before_sort_key: str | None = None) -> dict:
    """Messages of one chat, oldest first. Pass before_sort_key to page back."""
    try:
        with db_session() as db:
            out = queries.list_messages(db, chat_id, limit=limit, before_sort_key=before_sort_key)
        return {"success": True, "error": None, **out}
    except Exception as e:
        logger.exception("get_chat_messages failed")
        return _failure(e, chat_id=chat_id, messages=[], has_more=False)


@mcp.tool()
async def send_message(chat_id: str, text: str, reply_to_message_id: str | None = None) -> dict:
    """Send a text message. A failed send is stored and can be retried with retry_message."""
    try:
        return await messaging.send_message(get_orchestrator().client, chat_id, text, reply_to_message_id)
    except Exception as e:
        logger.exception("send_message failed")
        return _failure(e)


@mcp.tool()
async def retry_message(message_id: str) -> dict:
    """Re-send a message whose status is failed."""
    try:
        return await messaging.retry_message(get_orchestrator().client, message_id)
    except Exception as e:
        logger.exception("retry_message failed")
        return _failure(e)


@mcp.tool()
async def archive_chat(chat_id: str, archived: bool = True) -> dict:
    """Archive (or unarchive) a chat locally and on the hub."""
    try:
        client = get_orchestrator().client
        if archived:
            return await chat_actions.archive_chat(client, chat_id)
        return await chat_actions.unarchive_chat(client, chat_id)
    except Exception as e:
        logger.exception("archive_chat failed")
        return _failure(e)


@mcp.tool()
async def sync_chats(source: str = "manual", force_full: bool = False, force_message_sync: bool = False) -> dict:
    """Run one chat-list catch-up pass. skipped=true means another sync holds the lock."""
    try:
        result = await get_orchestrator().run_sync(
            source, force_full=force_full, force_message_sync=force_message_sync
        )
        return result.to_dict()
    except Exception as e:
        logger.exception("sync_chats failed")
        return _failure(e)


@mcp.tool()
async def load_newer_messages(chat_id: str) -> dict:
    """Fetch messages newer than the newest stored one for a chat."""
    try:
        result = await get_orchestrator().load_newer_messages(chat_id)
        return {"success": True, "error": None, **result.to_dict()}
    except Exception as e:
        logger.exception("load_newer_messages failed")
        return _failure(e)


@mcp.tool()
async def load_older_messages(chat_id: str, limit: int | None = None) -> dict:
    """Fetch one page of messages older than the oldest stored one for a chat."""
    try:
        result = await get_orchestrator().load_older_messages(chat_id, limit)
        return {"success": True, "error": None, **result.to_dict()}
    except Exception as e:
        logger.exception("load_older_messages failed")
        return _failure(e)


@mcp.tool()
async def start_historical_sync(days: int | None = None, stop_at: str | None = None) -> dict:
    """Start the historical backfill in the background. stop_at is an ISO date."""
    try:
        stop_at_dt = datetime.fromisoformat(stop_at) if stop_at else None
        orchestrator = get_orchestrator()
        task = asyncio.create_task(orchestrator.run_historical_backfill(stop_at=stop_at_dt, days=days))
        _background.add(task)
        task.add_done_callback(_background.discard)
        return {"success": True, "error": None, "started": True}
    except Exception as e:
        logger.exception("start_historical_sync failed")
        return _failure(e, started=False)


@mcp.tool()
def stop_historical_sync() -> dict:
    """Ask a running historical backfill to stop at its next checkpoint."""
    try:
        return {"success": True, "error": None, "status": get_orchestrator().stop_backfill()}
    except Exception as e:
        logger.exception("stop_historical_sync failed")
        return _failure(e)


@mcp.tool()
def sync_status() -> dict:
    """Chat and message counts, chat-list cursors, lock holder and backfill progress."""
    try:
        with db_session() as db:
            summary = queries.get_chat_info(db)
        return {"success": True, "error": None, "summary": summary, **get_orchestrator().sync_status()}
    except Exception as e:
        logger.exception("sync_status failed")
        return _failure(e)


@mcp.tool()
def detect_gaps() -> dict:
    """Run the read-only consistency checks over the sync state."""
    try:
        results = run_consistency_checks()
        return {
            "success": True,
            "error": None,
            "consistent": all(r.passed and r.error_count == 0 for r in results),
            "checks": [r.to_dict() for r in results],
        }
    except Exception as e:
        logger.exception("detect_gaps failed")
        return _failure(e, checks=[])
