"""Tests for the read side: chat list filters and paging, message pages, chat info."""

from datetime import timedelta

import pytest

from beeper_sync.cursor_store import update_chat_list_sync, update_chat_message_cursors
from beeper_sync.exceptions import ChatNotFoundError
from beeper_sync.normalize import normalize_chat, normalize_messages
from beeper_sync.queries import get_chat, get_chat_info, list_chats, list_messages
from beeper_sync.reconcile import get_chat_by_remote_id, link_chat_to_contact, upsert_chat, upsert_contact, upsert_messages

from fakes import BASE_TIME, remote_chat, remote_message


def _add(db, chat_id, hours=0, **kwargs):
    record = normalize_chat(remote_chat(chat_id, last_activity=BASE_TIME + timedelta(hours=hours), **kwargs))
    upsert_chat(db, record, sync_source="cron")
    return get_chat_by_remote_id(db, chat_id)


@pytest.fixture
def inbox(db):
    _add(db, "quiet", hours=1)
    _add(db, "unread", hours=3, unread=2)
    _add(db, "asked", hours=2, preview={"text": "you there?", "isSender": False, "sortKey": "1"})
    _add(db, "archived", hours=5, isArchived=True)
    _add(db, "group", hours=4, chat_type="group")
    return db


def _ids(result):
    return [c["chat_id"] for c in result["page"]]


def test_list_chats_orders_single_chats_by_activity(inbox):
    result = list_chats(inbox)
    assert _ids(result) == ["unread", "asked", "quiet"]
    assert result["is_done"] is True
    assert result["continue_cursor"] is None


@pytest.mark.parametrize(
    "name, expected",
    [
        ("unreplied", ["asked"]),
        ("unread", ["unread"]),
        ("archived", ["archived"]),
    ],
)
def test_list_chats_filters(inbox, name, expected):
    assert _ids(list_chats(inbox, filter=name)) == expected


def test_list_chats_pages_with_offset_cursor(inbox):
    first = list_chats(inbox, limit=2)
    assert _ids(first) == ["unread", "asked"]
    assert first["is_done"] is False
    assert first["continue_cursor"] == "2"

    second = list_chats(inbox, limit=2, offset=int(first["continue_cursor"]))
    assert _ids(second) == ["quiet"]
    assert second["is_done"] is True


def test_list_chats_rejects_unknown_filter(db):
    with pytest.raises(ValueError):
        list_chats(db, filter="starred")


def test_contact_name_wins_over_title(db):
    _add(db, "chat-1", title="+61 412 345 678")
    contact = upsert_contact(db, first_name="Alice", last_name="Example", image_url="http://contact.img")
    link_chat_to_contact(db, "chat-1", contact.id)

    chat = get_chat(db, "chat-1")
    assert chat["name"] == "Alice Example"
    assert chat["title"] == "+61 412 345 678"
    assert chat["avatar_url"] == "http://contact.img"
    assert chat["contact_manually_linked"] is True

    with pytest.raises(ChatNotFoundError):
        get_chat(db, "nope")


def test_list_messages_pages_backwards(db):
    chat = _add(db, "chat-1")
    records = normalize_messages([remote_message(f"m{i}", str(i)) for i in range(1, 6)])
    batch = upsert_messages(db, chat, records)
    update_chat_message_cursors(
        db, chat, newest=batch.newest_sort_key, oldest=batch.oldest_sort_key,
        inserted=batch.inserted, has_complete_history=True,
    )

    latest = list_messages(db, "chat-1", limit=2)
    assert [m["message_id"] for m in latest["messages"]] == ["m4", "m5"]
    assert latest["has_more"] is True

    older = list_messages(db, "chat-1", limit=2, before_sort_key="4")
    assert [m["message_id"] for m in older["messages"]] == ["m2", "m3"]

    oldest = list_messages(db, "chat-1", limit=2, before_sort_key="2")
    assert [m["message_id"] for m in oldest["messages"]] == ["m1"]
    assert oldest["has_more"] is False


def test_list_messages_reports_more_until_history_complete(db):
    chat = _add(db, "chat-1")
    upsert_messages(db, chat, normalize_messages([remote_message("m1", "1")]))
    result = list_messages(db, "chat-1")
    assert len(result["messages"]) == 1
    assert result["has_more"] is True

    with pytest.raises(ChatNotFoundError):
        list_messages(db, "missing")


def test_get_chat_info(db):
    assert get_chat_info(db) == {
        "chat_count": 0,
        "message_count": 0,
        "last_synced_at": None,
        "last_sync_source": None,
    }
    chat = _add(db, "chat-1")
    upsert_messages(db, chat, normalize_messages([remote_message("m1", "1")]))
    update_chat_list_sync(db, sync_source="manual", newest_cursor="n1")

    info = get_chat_info(db)
    assert (info["chat_count"], info["message_count"]) == (1, 1)
    assert info["last_sync_source"] == "manual"
    assert info["last_synced_at"] is not None
