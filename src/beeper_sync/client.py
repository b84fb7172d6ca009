"""Async client for the Beeper Desktop API (chats, messages, send, focus).

Every paginated endpoint answers with items plus cursor/hasMore; the client turns
those into validated pages and owns the bounded retry policy.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator
from urllib.parse import quote

import httpx

from beeper_sync.config import settings
from beeper_sync.exceptions import (
    AuthenticationError,
    BackendUnavailableError,
    BeeperAPIError,
    BeeperConnectionError,
    ConfigurationError,
    NotFoundError,
    RateLimitError,
    ServerError,
    is_unavailable_signature,
)
from beeper_sync.normalize import as_utc, sort_key_order
from beeper_sync.schemas import (
    ChatsPage,
    MessagesPage,
    RemoteChat,
    RemoteMessage,
    SendResult,
    parse_chats_page,
    parse_messages_page,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 409, 429}
MAX_AUTO_PAGES = 200


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)[:500]
    return str(data)[:500]


class BeeperClient:
    """Thin async wrapper over the hub's HTTP API.

    Retries 408/409/429/5xx and transport errors up to ``max_retries`` times with
    exponential backoff. Gateway/tunnel outages surface as BackendUnavailableError
    so callers can treat them as expected.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.BEEPER_API_URL or "").rstrip("/")
        token = token if token is not None else settings.BEEPER_TOKEN
        if not token:
            raise ConfigurationError("BEEPER_TOKEN is not set. Set it in .env or environment.")
        if not self.base_url:
            raise ConfigurationError("BEEPER_API_URL is not set.")
        self.max_retries = settings.BEEPER_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.BEEPER_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout or settings.BEEPER_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> "BeeperClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        attempt = 0
        while True:
            try:
                response = await self._http.request(method, path, params=params, json=json)
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    delay = self.retry_base_delay * 2**attempt
                    logger.warning(
                        "%s %s transport error (%s), retrying in %.1fs (attempt %d)",
                        method, path, e.__class__.__name__, delay, attempt + 1,
                    )
                    attempt += 1
                    await asyncio.sleep(delay)
                    continue
                message = str(e) or e.__class__.__name__
                if isinstance(e, httpx.ConnectError) or is_unavailable_signature(None, message):
                    raise BackendUnavailableError(f"Beeper API unreachable: {message}") from e
                raise BeeperConnectionError(f"{method} {path} failed: {message}") from e

            status = response.status_code
            if status < 400:
                if status == 204 or not response.content:
                    return {}
                return response.json()

            retryable = status in RETRYABLE_STATUS or status >= 500
            if retryable and attempt < self.max_retries:
                delay = _retry_after(response)
                if delay is None:
                    delay = self.retry_base_delay * 2**attempt
                logger.warning(
                    "%s %s returned %d, retrying in %.1fs (attempt %d)",
                    method, path, status, delay, attempt + 1,
                )
                attempt += 1
                await asyncio.sleep(delay)
                continue
            self._raise_for_status(status, _error_message(response))

    @staticmethod
    def _raise_for_status(status: int, message: str) -> None:
        if status in (401, 403):
            raise AuthenticationError(status, message)
        if status == 404:
            raise NotFoundError(status, message)
        if is_unavailable_signature(status, message):
            raise BackendUnavailableError(f"Beeper backend unavailable (HTTP {status}): {message}", status)
        if status == 429:
            raise RateLimitError(status, message)
        if status >= 500:
            raise ServerError(status, message)
        raise BeeperAPIError(status, message)

    # -- chats ---------------------------------------------------------------

    async def fetch_chats_page(
        self,
        cursor: str | None = None,
        direction: str | None = None,
        limit: int | None = None,
    ) -> ChatsPage:
        """Without a cursor the hub returns its most recent page."""
        if direction not in (None, "after", "before"):
            raise ValueError(f"direction must be 'after' or 'before', got {direction!r}")
        data = await self._request(
            "GET",
            "/v1/chats",
            params={"cursor": cursor, "direction": direction if cursor else None, "limit": limit},
        )
        return parse_chats_page(data or {})

    async def get_chat(self, chat_id: str) -> RemoteChat:
        data = await self._request("GET", f"/v1/chats/{quote(chat_id, safe='')}")
        return RemoteChat.model_validate(data)

    async def archive_chat(self, chat_id: str, archived: bool = True) -> None:
        await self._request("POST", f"/v1/chats/{quote(chat_id, safe='')}/archive", json={"archived": archived})

    # -- messages ------------------------------------------------------------

    async def fetch_messages_page(
        self,
        chat_id: str,
        cursor: str | None = None,
        direction: str | None = None,
        limit: int | None = None,
    ) -> MessagesPage:
        if direction not in (None, "after", "before"):
            raise ValueError(f"direction must be 'after' or 'before', got {direction!r}")
        data = await self._request(
            "GET",
            f"/v1/chats/{quote(chat_id, safe='')}/messages",
            params={"cursor": cursor, "direction": direction if cursor else None, "limit": limit},
        )
        return parse_messages_page(data or {})

    async def iter_messages_since(
        self, chat_id: str, date_after: datetime, *, page_size: int = 50
    ) -> AsyncIterator[RemoteMessage]:
        """Yield every message newer than date_after, newest pages first."""
        cutoff = as_utc(date_after)
        cursor: str | None = None
        seen: set[str] = set()
        for _ in range(MAX_AUTO_PAGES):
            page = await self.fetch_messages_page(
                chat_id, cursor=cursor, direction="before" if cursor else None, limit=page_size
            )
            reached_cutoff = False
            for msg in page.items:
                ts = as_utc(msg.timestamp)
                if ts is not None and ts <= cutoff:
                    reached_cutoff = True
                    continue
                yield msg
            keys = [m.sort_key for m in page.items if m.sort_key]
            if reached_cutoff or not page.has_more or not keys:
                return
            next_cursor = min(keys, key=sort_key_order)
            if next_cursor in seen:
                return
            seen.add(next_cursor)
            cursor = next_cursor

    async def send_message(
        self, chat_id: str, text: str, reply_to_message_id: str | None = None
    ) -> SendResult:
        body: dict[str, Any] = {"text": text}
        if reply_to_message_id:
            body["replyToMessageID"] = reply_to_message_id
        data = await self._request("POST", f"/v1/chats/{quote(chat_id, safe='')}/messages", json=body)
        result = SendResult.model_validate(data)
        logger.info("Sent message to %s; pending id %s", chat_id, result.pending_message_id)
        return result

    async def focus_chat(self, chat_id: str, draft_text: str | None = None) -> None:
        body: dict[str, Any] = {"chatID": chat_id}
        if draft_text:
            body["draftText"] = draft_text
        await self._request("POST", "/v1/focus", json=body)
