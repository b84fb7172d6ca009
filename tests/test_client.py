"""Tests for BeeperClient against httpx.MockTransport."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from beeper_sync.client import BeeperClient
from beeper_sync.exceptions import (
    AuthenticationError,
    BackendUnavailableError,
    BeeperConnectionError,
    ConfigurationError,
    NotFoundError,
    ServerError,
)


def make_client(handler, **kwargs) -> BeeperClient:
    return BeeperClient(
        "http://hub.test",
        "token-123",
        retry_base_delay=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_missing_token_is_configuration_error():
    with pytest.raises(ConfigurationError):
        BeeperClient("http://hub.test", "")


@pytest.mark.asyncio
async def test_fetch_chats_page_sends_cursor_and_parses():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "items": [{"id": "chat-1", "title": "Alice", "unreadCount": None}],
                "newestCursor": "n2",
                "oldestCursor": "o1",
                "hasMore": True,
            },
        )

    async with make_client(handler) as client:
        page = await client.fetch_chats_page(cursor="n1", direction="after", limit=25)

    assert seen[0].url.path == "/v1/chats"
    assert dict(seen[0].url.params) == {"cursor": "n1", "direction": "after", "limit": "25"}
    assert seen[0].headers["authorization"] == "Bearer token-123"
    assert page.items[0].id == "chat-1"
    assert page.items[0].unread_count == 0
    assert (page.newest_cursor, page.oldest_cursor, page.has_more) == ("n2", "o1", True)


@pytest.mark.asyncio
async def test_direction_is_dropped_without_cursor():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"items": [], "hasMore": False})

    async with make_client(handler) as client:
        await client.fetch_messages_page("!room:beeper.com", direction="before")

    assert seen[0].url.path == "/v1/chats/!room:beeper.com/messages"
    assert "direction" not in seen[0].url.params


@pytest.mark.asyncio
async def test_invalid_direction_rejected():
    async with make_client(lambda r: httpx.Response(200, json={})) as client:
        with pytest.raises(ValueError):
            await client.fetch_chats_page(cursor="x", direction="sideways")


@pytest.mark.asyncio
async def test_retries_rate_limit_then_succeeds():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(429, json={"message": "slow down"}, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"items": [], "hasMore": False})

    async with make_client(handler, max_retries=2) as client:
        page = await client.fetch_chats_page()
    assert calls["n"] == 3
    assert page.items == []


@pytest.mark.asyncio
async def test_auth_error_not_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(401, json={"message": "token expired"})

    async with make_client(handler) as client:
        with pytest.raises(AuthenticationError) as exc:
            await client.fetch_chats_page()
    assert calls["n"] == 1
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_not_found():
    async with make_client(lambda r: httpx.Response(404, json={"message": "nope"})) as client:
        with pytest.raises(NotFoundError):
            await client.get_chat("missing")


@pytest.mark.asyncio
async def test_gateway_errors_classified_unavailable():
    async with make_client(lambda r: httpx.Response(530, text="origin is unreachable"), max_retries=1) as client:
        with pytest.raises(BackendUnavailableError) as exc:
            await client.fetch_chats_page()
    assert exc.value.status_code == 530


@pytest.mark.asyncio
async def test_plain_server_error_after_retries():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(500, json={"message": "boom"})

    async with make_client(handler, max_retries=2) as client:
        with pytest.raises(ServerError):
            await client.fetch_chats_page()
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_connection_refused_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(handler, max_retries=0) as client:
        with pytest.raises(BackendUnavailableError):
            await client.fetch_chats_page()


@pytest.mark.asyncio
async def test_read_timeout_is_connection_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with make_client(handler, max_retries=1) as client:
        with pytest.raises(BeeperConnectionError):
            await client.fetch_chats_page()


@pytest.mark.asyncio
async def test_send_message_and_focus_bodies():
    bodies = []

    def handler(request):
        bodies.append((request.method, request.url.path, json.loads(request.content or b"{}")))
        if request.url.path == "/v1/focus":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(200, json={"chatID": "chat-1", "pendingMessageID": "p-1"})

    async with make_client(handler) as client:
        sent = await client.send_message("chat-1", "hello", reply_to_message_id="m0")
        await client.focus_chat("chat-1", draft_text="draft")

    assert sent.pending_message_id == "p-1"
    assert bodies[0] == ("POST", "/v1/chats/chat-1/messages", {"text": "hello", "replyToMessageID": "m0"})
    assert bodies[1] == ("POST", "/v1/focus", {"chatID": "chat-1", "draftText": "draft"})


@pytest.mark.asyncio
async def test_iter_messages_since_pages_back_to_cutoff():
    pages = {
        None: {
            "items": [
                {"id": "m4", "sortKey": "4", "timestamp": "2026-01-04T00:00:00Z"},
                {"id": "m3", "sortKey": "3", "timestamp": "2026-01-03T00:00:00Z"},
            ],
            "hasMore": True,
        },
        "3": {
            "items": [
                {"id": "m2", "sortKey": "2", "timestamp": "2026-01-02T00:00:00Z"},
                {"id": "m1", "sortKey": "1", "timestamp": "2026-01-01T00:00:00Z"},
            ],
            "hasMore": True,
        },
    }
    requested = []

    def handler(request):
        cursor = request.url.params.get("cursor")
        requested.append((cursor, request.url.params.get("direction")))
        return httpx.Response(200, json=pages[cursor])

    cutoff = datetime(2026, 1, 1, 12, tzinfo=timezone.utc)
    async with make_client(handler) as client:
        ids = [m.id async for m in client.iter_messages_since("chat-1", cutoff, page_size=2)]

    assert ids == ["m4", "m3", "m2"]
    assert requested == [(None, None), ("3", "before")]
