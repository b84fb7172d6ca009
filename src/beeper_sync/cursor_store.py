"""Durable pagination boundaries, the chat-sync lock and backfill status.

Everything here survives restarts and is shared by every trigger source, so two
processes agree on where the chat list window ends and who is syncing.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from beeper_sync.config import settings
from beeper_sync.database import db_session
from beeper_sync.models import (
    CHAT_LIST_SYNC_KEY,
    CHAT_SYNC_LOCK_KEY,
    HISTORICAL_BACKFILL_KEY,
    BackfillStatus,
    Chat,
    ChatListSync,
    SyncLock,
)
from beeper_sync.normalize import as_utc, compare_sort_keys, utcnow

logger = logging.getLogger(__name__)


def _short(cursor: str | None) -> str:
    return f"{cursor[:13]}..." if cursor else "None"


# ---------------------------------------------------------------------------
# Chat list window
# ---------------------------------------------------------------------------


def get_chat_list_sync(db: Session) -> ChatListSync | None:
    return db.get(ChatListSync, CHAT_LIST_SYNC_KEY)


def update_chat_list_sync(
    db: Session,
    *,
    sync_source: str,
    newest_cursor: str | None = None,
    oldest_cursor: str | None = None,
    total_chats: int | None = None,
    reset: bool = False,
) -> ChatListSync:
    """Store cursor boundaries. A boundary passed as None is preserved unless reset."""
    state = db.get(ChatListSync, CHAT_LIST_SYNC_KEY)
    if state is None:
        state = ChatListSync(key=CHAT_LIST_SYNC_KEY, total_chats=0)
        db.add(state)
        created = True
    else:
        created = False

    if reset or newest_cursor is not None:
        state.newest_cursor = newest_cursor
    if reset or oldest_cursor is not None:
        state.oldest_cursor = oldest_cursor
    if total_chats is not None:
        state.total_chats = total_chats
    state.sync_source = sync_source
    state.last_synced_at = utcnow()
    db.flush()
    logger.info(
        "%s chat list sync state: newest=%s oldest=%s total=%s",
        "Created" if created else "Updated",
        _short(state.newest_cursor),
        _short(state.oldest_cursor),
        state.total_chats,
    )
    return state


# ---------------------------------------------------------------------------
# Per-chat message window
# ---------------------------------------------------------------------------


def update_chat_message_cursors(
    db: Session,
    chat: Chat,
    *,
    newest: str | None = None,
    oldest: str | None = None,
    has_complete_history: bool | None = None,
    inserted: int = 0,
    reset: bool = False,
) -> None:
    """Widen a chat's message window. Newest only moves forward, oldest only backward."""
    if newest is not None and (
        reset or chat.newest_message_sort_key is None
        or compare_sort_keys(newest, chat.newest_message_sort_key) > 0
    ):
        chat.newest_message_sort_key = newest
    if oldest is not None and (
        reset or chat.oldest_message_sort_key is None
        or compare_sort_keys(oldest, chat.oldest_message_sort_key) < 0
    ):
        chat.oldest_message_sort_key = oldest
    if inserted:
        chat.message_count = (chat.message_count or 0) + inserted
    if has_complete_history is not None:
        chat.has_complete_history = has_complete_history
        if has_complete_history:
            chat.last_full_sync_at = utcnow()
    db.flush()
    logger.debug(
        "Message cursors for %s: newest=%s oldest=%s count=%s complete=%s",
        chat.chat_id,
        chat.newest_message_sort_key,
        chat.oldest_message_sort_key,
        chat.message_count,
        chat.has_complete_history,
    )


# ---------------------------------------------------------------------------
# Sync lock
# ---------------------------------------------------------------------------


def _ensure_lock_row(key: str) -> None:
    with db_session() as db:
        if db.get(SyncLock, key) is not None:
            return
    try:
        with db_session() as db:
            db.add(SyncLock(key=key))
    except IntegrityError:
        # Another process created the row between our read and insert.
        logger.debug("Lock row %s created concurrently", key)


def acquire_sync_lock(holder: str, *, key: str = CHAT_SYNC_LOCK_KEY, ttl_seconds: int | None = None) -> bool:
    """Single atomic conditional UPDATE. False means someone else holds the lock.

    A lock older than the TTL is treated as abandoned by a crashed run and taken over.
    """
    _ensure_lock_row(key)
    ttl = settings.SYNC_LOCK_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    now = utcnow()
    with db_session() as db:
        result = db.execute(
            update(SyncLock)
            .where(SyncLock.key == key)
            .where(or_(SyncLock.holder.is_(None), SyncLock.acquired_at < now - timedelta(seconds=ttl)))
            .values(holder=holder, acquired_at=now)
        )
        acquired = result.rowcount == 1
    if acquired:
        logger.info("Sync lock %s acquired by %s", key, holder)
    else:
        logger.info("Sync lock %s busy; %s skipped", key, holder)
    return acquired


def release_sync_lock(holder: str, *, key: str = CHAT_SYNC_LOCK_KEY) -> bool:
    with db_session() as db:
        result = db.execute(
            update(SyncLock)
            .where(SyncLock.key == key)
            .where(SyncLock.holder == holder)
            .values(holder=None, acquired_at=None)
        )
        released = result.rowcount == 1
    if released:
        logger.info("Sync lock %s released by %s", key, holder)
    else:
        logger.warning("Sync lock %s was not held by %s at release", key, holder)
    return released


def get_sync_lock(db: Session, key: str = CHAT_SYNC_LOCK_KEY) -> SyncLock | None:
    return db.execute(select(SyncLock).where(SyncLock.key == key)).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Historical backfill status (also the cooperative stop flag)
# ---------------------------------------------------------------------------

_UNSET: Any = object()


def backfill_status_dict(status: BackfillStatus | None) -> dict[str, Any]:
    if status is None:
        return {
            "is_running": False,
            "chats_processed": 0,
            "total_chats": 0,
            "messages_loaded": 0,
            "current_chat": None,
            "started_at": None,
            "last_updated": None,
            "error": None,
        }
    started_at = as_utc(status.started_at)
    last_updated = as_utc(status.last_updated)
    return {
        "is_running": status.is_running,
        "chats_processed": status.chats_processed,
        "total_chats": status.total_chats,
        "messages_loaded": status.messages_loaded,
        "current_chat": status.current_chat,
        "started_at": started_at.isoformat() if started_at else None,
        "last_updated": last_updated.isoformat() if last_updated else None,
        "error": status.error,
    }


def get_backfill_status(db: Session) -> dict[str, Any]:
    return backfill_status_dict(db.get(BackfillStatus, HISTORICAL_BACKFILL_KEY))


def is_backfill_running(db: Session) -> bool:
    status = db.get(BackfillStatus, HISTORICAL_BACKFILL_KEY)
    return bool(status and status.is_running)


def update_backfill_status(
    db: Session,
    *,
    is_running: Any = _UNSET,
    chats_processed: int | None = None,
    total_chats: int | None = None,
    messages_loaded: int | None = None,
    current_chat: Any = _UNSET,
    started_at: Any = _UNSET,
    error: Any = _UNSET,
) -> None:
    """Merge the given fields into the stored status; omitted fields keep their value.

    is_running doubles as the stop flag, so progress writes must leave it out.
    """
    status = db.get(BackfillStatus, HISTORICAL_BACKFILL_KEY)
    if status is None:
        status = BackfillStatus(
            key=HISTORICAL_BACKFILL_KEY,
            is_running=False,
            chats_processed=0,
            total_chats=0,
            messages_loaded=0,
        )
        db.add(status)
    if is_running is not _UNSET:
        status.is_running = is_running
    if chats_processed is not None:
        status.chats_processed = chats_processed
    if total_chats is not None:
        status.total_chats = total_chats
    if messages_loaded is not None:
        status.messages_loaded = messages_loaded
    if current_chat is not _UNSET:
        status.current_chat = current_chat
    if started_at is not _UNSET:
        status.started_at = started_at
    if error is not _UNSET:
        status.error = error
    status.last_updated = utcnow()
    db.flush()


def request_backfill_stop() -> None:
    with db_session() as db:
        update_backfill_status(db, is_running=False, error="Stopped by user")
    logger.info("Historical backfill stop requested")


def backfill_stop_requested() -> bool:
    """Checked at the top of every backfill loop iteration."""
    with db_session() as db:
        return not is_backfill_running(db)
