"""Sync orchestration: catch-up of the chat list, per-chat message loads and historical backfill.

Remote calls are awaited; database work happens in short synchronous sessions
between them, one transaction per upsert. Only the full catch-up pass takes the
durable sync lock. Backfill is guarded by its own status row so a multi-hour
backfill does not starve the periodic sync.

Sessions are synchronous and run on the event loop. Each one is a single short
transaction, so the loop only blocks for one round trip to the database; the
remote fetches are the awaited suspension points. The backfill stop flag is
re-read after every fetch, which keeps a stop within one page of latency.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import func, select

from beeper_sync.client import BeeperClient
from beeper_sync.config import settings
from beeper_sync.cursor_store import (
    acquire_sync_lock,
    backfill_stop_requested,
    get_backfill_status,
    get_chat_list_sync,
    get_sync_lock,
    is_backfill_running,
    release_sync_lock,
    request_backfill_stop,
    update_backfill_status,
    update_chat_list_sync,
    update_chat_message_cursors,
)
from beeper_sync.database import db_session
from beeper_sync.exceptions import BackendUnavailableError, ChatNotFoundError, classify_error
from beeper_sync.models import Chat
from beeper_sync.normalize import (
    MessageRecord,
    as_utc,
    compare_sort_keys,
    normalize_chat,
    normalize_messages,
    utcnow,
)
from beeper_sync.reconcile import (
    CursorCycleGuard,
    MessageBatchResult,
    backfill_contact_phone_index,
    get_chat_by_remote_id,
    upsert_chat,
    upsert_messages,
    upsert_participants,
)
from beeper_sync.schemas import RemoteChat

logger = logging.getLogger(__name__)

SYNC_SOURCES = ("cron", "manual", "page_load", "full")
BACKFILL_SOURCE = "backfill"


@dataclass
class SyncResult:
    source: str
    run_id: str | None = None
    success: bool = True
    skipped: bool = False
    transient: bool = False
    error: str | None = None
    pages: int = 0
    chats_synced: int = 0
    chats_created: int = 0
    chats_updated: int = 0
    messages_synced: int = 0
    chats_with_new_messages: int = 0
    failed_chats: list[str] = field(default_factory=list)
    stop_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PageLoadResult:
    chat_id: str
    inserted: int = 0
    skipped: int = 0
    has_more: bool = False
    newest_sort_key: str | None = None
    oldest_sort_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class OlderChatsResult:
    loaded: int = 0
    created: int = 0
    has_more: bool = False
    oldest_cursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BackfillResult:
    success: bool = True
    skipped: bool = False
    chats_processed: int = 0
    total_chats: int = 0
    messages_loaded: int = 0
    older_chats_loaded: int = 0
    has_more_chats: bool = False
    has_more_messages: bool = False
    reached_date_limit: bool = False
    stopped_by_user: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _ChatPageOutcome:
    created: int = 0
    updated: int = 0
    needs_messages: list[tuple[int, str]] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class SyncOrchestrator:
    """Entry point for every sync trigger: cron, manual, page_load and full."""

    def __init__(
        self,
        client: BeeperClient | None = None,
        *,
        max_pages: int | None = None,
        recent_messages: int | None = None,
        initial_messages: int | None = None,
        message_concurrency: int | None = None,
        backfill_page_size: int | None = None,
        lock_ttl_seconds: int | None = None,
        denylist: Iterable[str] | None = None,
    ) -> None:
        self._client = client
        self.max_pages = max_pages or settings.SYNC_MAX_PAGES
        self.recent_messages = recent_messages or settings.SYNC_RECENT_MESSAGES
        self.initial_messages = initial_messages or settings.SYNC_INITIAL_MESSAGES
        self.message_concurrency = message_concurrency or settings.SYNC_MESSAGE_CONCURRENCY
        self.backfill_page_size = backfill_page_size or settings.BACKFILL_MESSAGES_PER_REQUEST
        self.lock_ttl_seconds = lock_ttl_seconds
        self.denylist = list(denylist) if denylist is not None else list(settings.BOT_PARTICIPANT_DENYLIST)

    @property
    def client(self) -> BeeperClient:
        if self._client is None:
            self._client = BeeperClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    # -- chat list -----------------------------------------------------------

    def _upsert_chat_page(self, items: list[RemoteChat], sync_source: str) -> _ChatPageOutcome:
        outcome = _ChatPageOutcome()
        for remote in items:
            try:
                record = normalize_chat(remote, self.denylist)
                with db_session() as db:
                    up = upsert_chat(db, record, sync_source=sync_source)
                if up.created or up.updated:
                    with db_session() as db:
                        chat = db.get(Chat, up.chat_pk)
                        upsert_participants(db, chat, record.participants, denylist=self.denylist)
            except Exception as e:
                logger.warning("Failed to reconcile chat %s: %s", remote.id, e, exc_info=True)
                outcome.failed.append(remote.id)
                continue
            outcome.created += int(up.created)
            outcome.updated += int(up.updated and not up.created)
            if up.needs_message_sync:
                outcome.needs_messages.append((up.chat_pk, up.chat_id))
        return outcome

    async def run_sync(
        self, source: str = "cron", *, force_full: bool = False, force_message_sync: bool = False
    ) -> SyncResult:
        """One catch-up pass. Returns skipped=True without side effects when the lock is held."""
        if source not in SYNC_SOURCES:
            raise ValueError(f"Unknown sync source {source!r}; expected one of {SYNC_SOURCES}")
        full = force_full or source == "full"
        run_id = f"{source}-{uuid4().hex[:12]}"
        result = SyncResult(source=source, run_id=run_id)

        if not acquire_sync_lock(run_id, ttl_seconds=self.lock_ttl_seconds):
            result.skipped = True
            return result
        try:
            await self._catch_up(result, full=full, force_message_sync=force_message_sync)
        except Exception as e:
            self._record_failure(result, e)
        finally:
            release_sync_lock(run_id)
        logger.info(
            "Sync %s done: success=%s chats=%d (+%d ~%d) messages=%d pages=%d",
            run_id, result.success, result.chats_synced, result.chats_created,
            result.chats_updated, result.messages_synced, result.pages,
        )
        return result

    def _record_failure(self, result: SyncResult, exc: BaseException) -> None:
        result.success = False
        result.error = str(exc)
        if classify_error(exc) == "unavailable":
            result.transient = True
            logger.info("Beeper backend unavailable, deferring to next run: %s", exc)
        else:
            logger.error("Sync %s failed: %s", result.run_id, exc, exc_info=exc)

    async def _catch_up(self, result: SyncResult, *, full: bool, force_message_sync: bool) -> None:
        with db_session() as db:
            # Unindexed contacts would otherwise only match through the slow scan.
            backfill_contact_phone_index(db)
            state = get_chat_list_sync(db)
            stored_newest = state.newest_cursor if state else None
            stored_oldest = state.oldest_cursor if state else None

        cursor = None if full else stored_newest
        direction = "after" if cursor else None
        guard = CursorCycleGuard(self.max_pages)
        newest_cursor: str | None = None
        oldest_cursor: str | None = None
        pending: dict[int, str] = {}

        while True:
            page = await self.client.fetch_chats_page(cursor=cursor, direction=direction)
            result.pages += 1
            outcome = self._upsert_chat_page(page.items, result.source)
            result.chats_synced += len(page.items) - len(outcome.failed)
            result.chats_created += outcome.created
            result.chats_updated += outcome.updated
            result.failed_chats.extend(outcome.failed)
            for pk, chat_id in outcome.needs_messages:
                pending[pk] = chat_id

            if page.newest_cursor:
                newest_cursor = page.newest_cursor
            if cursor is None and page.oldest_cursor:
                oldest_cursor = page.oldest_cursor

            if guard.should_stop(cursor, direction, page.newest_cursor):
                result.stop_reason = guard.stop_reason
                break
            # The initial page is the newest window; there is nothing "after" it yet.
            if cursor is None or not page.has_more:
                break
            cursor, direction = page.newest_cursor, "after"

        with db_session() as db:
            update_chat_list_sync(
                db,
                sync_source=result.source,
                newest_cursor=newest_cursor,
                oldest_cursor=oldest_cursor if (full or stored_oldest is None) else None,
                total_chats=db.scalar(select(func.count()).select_from(Chat)),
                reset=full,
            )

        if result.source == "page_load" and not force_message_sync:
            if pending:
                logger.info("page_load sync: %d chats left for on-demand message loads", len(pending))
            return
        if force_message_sync:
            with db_session() as db:
                for pk, chat_id in db.execute(select(Chat.id, Chat.chat_id)).all():
                    pending.setdefault(pk, chat_id)
        await self._sync_messages_for(pending, result)

    async def _sync_messages_for(self, pending: dict[int, str], result: SyncResult) -> None:
        if not pending:
            return
        semaphore = asyncio.Semaphore(self.message_concurrency)

        async def one(pk: int, chat_id: str) -> int:
            async with semaphore:
                try:
                    loaded = await self._load_newer(pk, chat_id, self.recent_messages)
                except Exception as e:
                    if classify_error(e) == "unavailable":
                        result.transient = True
                        logger.info("Messages for %s deferred, backend unavailable: %s", chat_id, e)
                    else:
                        logger.warning("Message sync for %s failed: %s", chat_id, e, exc_info=e)
                    result.failed_chats.append(chat_id)
                    return 0
                return loaded.inserted

        counts = await asyncio.gather(*(one(pk, chat_id) for pk, chat_id in pending.items()))
        result.messages_synced += sum(counts)
        result.chats_with_new_messages += sum(1 for c in counts if c)

    # -- messages ------------------------------------------------------------

    def _store_messages(
        self, pk: int, records: list[MessageRecord], *, complete: bool | None = None
    ) -> MessageBatchResult:
        with db_session() as db:
            chat = db.get(Chat, pk)
            if chat is None:
                raise ChatNotFoundError(f"Chat {pk} disappeared during sync")
            batch = upsert_messages(db, chat, records)
            update_chat_message_cursors(
                db,
                chat,
                newest=batch.newest_sort_key,
                oldest=batch.oldest_sort_key,
                has_complete_history=complete,
                inserted=batch.inserted,
            )
        return batch

    def _lookup(self, chat_id: str) -> tuple[int, str | None, str | None, bool]:
        with db_session() as db:
            chat = get_chat_by_remote_id(db, chat_id)
            if chat is None:
                raise ChatNotFoundError(f"Chat {chat_id} not found")
            return chat.id, chat.newest_message_sort_key, chat.oldest_message_sort_key, chat.has_complete_history

    async def _load_newer(self, pk: int, chat_id: str, limit: int) -> PageLoadResult:
        with db_session() as db:
            newest = db.get(Chat, pk).newest_message_sort_key
        result = PageLoadResult(chat_id=chat_id)

        if newest is None:
            page = await self.client.fetch_messages_page(chat_id, limit=self.initial_messages)
            batch = self._store_messages(
                pk, normalize_messages(page.items), complete=None if page.has_more else True
            )
            result.inserted, result.skipped, result.has_more = batch.inserted, batch.skipped, page.has_more
            result.newest_sort_key, result.oldest_sort_key = batch.newest_sort_key, batch.oldest_sort_key
            return result

        cursor = newest
        guard = CursorCycleGuard(self.max_pages)
        while True:
            page = await self.client.fetch_messages_page(chat_id, cursor=cursor, direction="after", limit=limit)
            batch = self._store_messages(pk, normalize_messages(page.items))
            result.inserted += batch.inserted
            result.skipped += batch.skipped
            result.has_more = page.has_more
            if batch.newest_sort_key:
                result.newest_sort_key = batch.newest_sort_key
            if guard.should_stop(cursor, "after", batch.newest_sort_key) or not page.has_more:
                break
            cursor = batch.newest_sort_key
        return result

    async def load_newer_messages(self, chat_id: str, limit: int | None = None) -> PageLoadResult:
        """On-demand forward load for one chat (e.g. when the conversation is opened)."""
        pk, *_ = self._lookup(chat_id)
        return await self._load_newer(pk, chat_id, limit or self.recent_messages)

    async def load_older_messages(self, chat_id: str, limit: int | None = None) -> PageLoadResult:
        """One backward page before the chat's oldest known message."""
        pk, _, oldest, complete = self._lookup(chat_id)
        result = PageLoadResult(chat_id=chat_id, oldest_sort_key=oldest)
        if complete:
            return result
        page = await self.client.fetch_messages_page(
            chat_id,
            cursor=oldest,
            direction="before" if oldest else None,
            limit=limit or self.backfill_page_size,
        )
        batch = self._store_messages(
            pk, normalize_messages(page.items), complete=False if page.has_more else True
        )
        result.inserted, result.skipped, result.has_more = batch.inserted, batch.skipped, page.has_more
        result.newest_sort_key = batch.newest_sort_key
        if batch.oldest_sort_key:
            result.oldest_sort_key = batch.oldest_sort_key
        return result

    async def load_older_chats(self) -> OlderChatsResult:
        """One backward page of the chat list; only the oldest boundary moves."""
        with db_session() as db:
            state = get_chat_list_sync(db)
            oldest = state.oldest_cursor if state else None
        page = await self.client.fetch_chats_page(
            cursor=oldest, direction="before" if oldest else None
        )
        outcome = self._upsert_chat_page(page.items, BACKFILL_SOURCE)
        with db_session() as db:
            state = update_chat_list_sync(
                db,
                sync_source=BACKFILL_SOURCE,
                oldest_cursor=page.oldest_cursor,
                newest_cursor=page.newest_cursor if oldest is None else None,
                total_chats=db.scalar(select(func.count()).select_from(Chat)),
            )
            stored_oldest = state.oldest_cursor
        return OlderChatsResult(
            loaded=len(page.items),
            created=outcome.created,
            has_more=page.has_more and page.oldest_cursor not in (None, oldest),
            oldest_cursor=stored_oldest,
        )

    # -- historical backfill -------------------------------------------------

    async def run_historical_backfill(
        self,
        *,
        stop_at: datetime | None = None,
        days: int | None = None,
        load_older_chats: bool = True,
        messages_per_request: int | None = None,
    ) -> BackfillResult:
        """Page every chat back to its first message (or to stop_at).

        The stop flag in backfill_status is checked before every chat-list page,
        every chat and every message page.
        """
        if stop_at is None and days is not None:
            stop_at = utcnow() - timedelta(days=days)
        stop_at = as_utc(stop_at)
        per_request = messages_per_request or self.backfill_page_size
        result = BackfillResult()

        with db_session() as db:
            if is_backfill_running(db):
                logger.info("Historical backfill already running; skipped")
                result.skipped = True
                return result
            update_backfill_status(
                db,
                is_running=True,
                chats_processed=0,
                total_chats=0,
                messages_loaded=0,
                current_chat=None,
                started_at=utcnow(),
                error=None,
            )
        logger.info("Historical backfill started (stop_at=%s)", stop_at.isoformat() if stop_at else None)

        try:
            if load_older_chats:
                await self._backfill_chat_list(result)
            if not result.stopped_by_user:
                await self._backfill_messages(result, stop_at, per_request)
        except Exception as e:
            result.success = False
            result.error = str(e)
            if classify_error(e) == "unavailable":
                logger.info("Historical backfill paused, backend unavailable: %s", e)
            else:
                logger.error("Historical backfill failed: %s", e, exc_info=e)
        finally:
            with db_session() as db:
                # A stop that lands after the last check still wins; keep its error text.
                if not is_backfill_running(db):
                    result.stopped_by_user = True
                    update_backfill_status(
                        db,
                        chats_processed=result.chats_processed,
                        messages_loaded=result.messages_loaded,
                        current_chat=None,
                    )
                else:
                    update_backfill_status(
                        db,
                        is_running=False,
                        chats_processed=result.chats_processed,
                        messages_loaded=result.messages_loaded,
                        current_chat=None,
                        error=result.error,
                    )

        with db_session() as db:
            result.has_more_messages = bool(
                db.scalar(select(func.count()).select_from(Chat).where(Chat.has_complete_history.is_(False)))
            )
        logger.info(
            "Historical backfill finished: chats=%d/%d messages=%d older_chats=%d stopped=%s",
            result.chats_processed, result.total_chats, result.messages_loaded,
            result.older_chats_loaded, result.stopped_by_user,
        )
        return result

    async def _backfill_chat_list(self, result: BackfillResult) -> None:
        seen: set[str] = set()
        while True:
            if backfill_stop_requested():
                result.stopped_by_user = True
                return
            page = await self.load_older_chats()
            result.older_chats_loaded += page.loaded
            result.has_more_chats = page.has_more
            if not page.has_more or page.oldest_cursor in seen:
                break
            seen.add(page.oldest_cursor)
        if backfill_stop_requested():
            result.stopped_by_user = True

    async def _backfill_messages(
        self, result: BackfillResult, stop_at: datetime | None, per_request: int
    ) -> None:
        with db_session() as db:
            chats = db.execute(
                select(Chat.id, Chat.chat_id, Chat.title)
                .where(Chat.has_complete_history.is_(False))
                .order_by(Chat.message_count.asc(), Chat.id.asc())
            ).all()
            result.total_chats = len(chats)
            update_backfill_status(db, total_chats=len(chats))

        for pk, chat_id, title in chats:
            if backfill_stop_requested():
                result.stopped_by_user = True
                return
            with db_session() as db:
                update_backfill_status(db, current_chat=title)
            try:
                loaded, reached = await self._backfill_chat(pk, chat_id, stop_at, per_request, result)
            except BackendUnavailableError:
                raise
            except Exception as e:
                logger.warning("Backfill of chat %s failed: %s", chat_id, e, exc_info=e)
                continue
            result.messages_loaded += loaded
            result.reached_date_limit = result.reached_date_limit or reached
            if not result.stopped_by_user:
                result.chats_processed += 1
            with db_session() as db:
                update_backfill_status(
                    db,
                    chats_processed=result.chats_processed,
                    messages_loaded=result.messages_loaded,
                )
            if result.stopped_by_user or backfill_stop_requested():
                result.stopped_by_user = True
                return

    async def _backfill_chat(
        self,
        pk: int,
        chat_id: str,
        stop_at: datetime | None,
        per_request: int,
        result: BackfillResult,
    ) -> tuple[int, bool]:
        """Older pages for one chat. Returns (messages inserted, reached stop_at)."""
        loaded = 0
        while True:
            if backfill_stop_requested():
                result.stopped_by_user = True
                return loaded, False
            with db_session() as db:
                chat = db.get(Chat, pk)
                if chat is None or chat.has_complete_history:
                    return loaded, False
                oldest = chat.oldest_message_sort_key
            page = await self.client.fetch_messages_page(
                chat_id, cursor=oldest, direction="before" if oldest else None, limit=per_request
            )
            records = normalize_messages(page.items)
            batch = self._store_messages(pk, records, complete=None if page.has_more else True)
            loaded += batch.inserted
            if stop_at is not None and records and records[0].timestamp < stop_at:
                return loaded, True
            if not page.has_more:
                return loaded, False
            if batch.oldest_sort_key is None or (
                oldest is not None and compare_sort_keys(batch.oldest_sort_key, oldest) >= 0
            ):
                logger.warning("Backfill of %s made no progress past %s; moving on", chat_id, oldest)
                return loaded, False

    def stop_backfill(self) -> dict[str, Any]:
        request_backfill_stop()
        with db_session() as db:
            return get_backfill_status(db)

    def sync_status(self) -> dict[str, Any]:
        with db_session() as db:
            state = get_chat_list_sync(db)
            lock = get_sync_lock(db)
            last_synced = as_utc(state.last_synced_at) if state else None
            acquired = as_utc(lock.acquired_at) if lock else None
            return {
                "chat_list": {
                    "newest_cursor": state.newest_cursor if state else None,
                    "oldest_cursor": state.oldest_cursor if state else None,
                    "total_chats": state.total_chats if state else 0,
                    "last_synced_at": last_synced.isoformat() if last_synced else None,
                    "sync_source": state.sync_source if state else None,
                },
                "lock": {
                    "holder": lock.holder if lock else None,
                    "acquired_at": acquired.isoformat() if acquired and lock.holder else None,
                },
                "backfill": get_backfill_status(db),
            }
