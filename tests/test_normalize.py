"""Tests for the pure normalization helpers and hub payload validation."""

from datetime import timezone

import pytest

from beeper_sync.normalize import (
    compare_sort_keys,
    extract_message_text,
    format_phone_for_storage,
    is_bot_participant,
    is_name_improvement,
    looks_like_raw_identifier,
    normalize_chat,
    normalize_message,
    normalize_messages,
    normalize_phone,
    resolve_counterpart,
    ParticipantRecord,
)
from beeper_sync.schemas import RemoteMessage, parse_chats_page, parse_messages_page

from fakes import remote_chat, remote_message


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, ""),
        ("", ""),
        ("hello", "hello"),
        ('{"text": "wrapped"}', "wrapped"),
        ('{"text": 42}', "42"),
        ('{"text": "broken"', '{"text": "broken"'),
        ('{"other": 1}', '{"other": 1}'),
        ({"text": "structured"}, "structured"),
        ({"text": None}, ""),
        (123, "123"),
    ],
)
def test_extract_message_text(raw, expected):
    """String, JSON-in-string and structured text all reduce to plain text without raising."""
    assert extract_message_text(raw) == expected


def test_normalize_phone_equivalent_formats():
    """Trunk-zero, international, 00-prefixed and bare subscriber forms agree."""
    forms = ["0412 345 678", "+61 412 345 678", "0061412345678", "412345678", "+61 (0) 412 345 678"]
    assert {normalize_phone(f) for f in forms} == {"61412345678"}


@pytest.mark.parametrize(
    "raw", ["", "0412345678", "+61412345678", "00 44 20 7946 0958", "12345", "abc", "0000412345678"]
)
def test_normalize_phone_idempotent(raw):
    once = normalize_phone(raw)
    assert normalize_phone(once) == once


def test_normalize_phone_leaves_other_countries_alone():
    assert normalize_phone("+1 (415) 555-0100") == "14155550100"


def test_format_phone_for_storage():
    assert format_phone_for_storage("0412 345 678") == "+61412345678"
    assert format_phone_for_storage("+61 412 345 678") == "+61412345678"


@pytest.mark.parametrize(
    "a, b, sign",
    [
        ("99", "100", -1),
        ("100", "99", 1),
        ("1700000000000", "5", 1),
        ("10", "10", 0),
        ("1.5", "2", -1),
        ("abc", "abd", -1),
        ("b", "a", 1),
        (None, "1", -1),
        ("1", None, 1),
    ],
)
def test_compare_sort_keys(a, b, sign):
    """Numeric keys compare numerically regardless of length; others lexically."""
    result = compare_sort_keys(a, b)
    assert (result > 0) - (result < 0) == sign


def test_is_bot_participant_uses_denylist():
    assert is_bot_participant("Meta AI", None)
    assert is_bot_participant(None, "meta.ai")
    assert not is_bot_participant("Alice", "alice")
    assert is_bot_participant("Support Bot", None, denylist=["support bot"])
    assert not is_bot_participant("Meta AI", None, denylist=[])


@pytest.mark.parametrize(
    "name, raw",
    [
        (None, True),
        ("", True),
        ("Unknown", True),
        ("@alice:beeper.com", True),
        ("alice@example.com", True),
        ("+61 412 345 678", True),
        ("(02) 9876-5432", True),
        ("Alice Example", False),
        ("Agent 007", False),
    ],
)
def test_looks_like_raw_identifier(name, raw):
    assert looks_like_raw_identifier(name) is raw


def test_is_name_improvement():
    """Good names are never replaced by raw ones; raw ones are replaced by good ones."""
    assert not is_name_improvement("Alice Example", "+61 412 345 678")
    assert is_name_improvement("+61 412 345 678", "Alice Example")
    assert is_name_improvement(None, "+61 412 345 678")
    assert is_name_improvement("Alice", "Alice Example")
    assert not is_name_improvement("Alice", "Alice")
    assert not is_name_improvement("Alice", None)
    assert not is_name_improvement("Alice", "Unknown")


def test_resolve_counterpart_skips_bots_then_falls_back():
    me = ParticipantRecord("me", full_name="Me", is_self=True)
    bot = ParticipantRecord("bot", full_name="Meta AI")
    alice = ParticipantRecord("alice", full_name="Alice")
    assert resolve_counterpart([me, bot, alice]).participant_id == "alice"
    assert resolve_counterpart([me, bot]).participant_id == "bot"
    assert resolve_counterpart([me]) is None


def test_normalize_chat_takes_counterpart_and_preview():
    chat = remote_chat(
        "chat-1",
        title="Alice",
        participants=[
            {"id": "me", "fullName": "Me", "isSelf": True},
            {"id": "bot", "fullName": "Meta AI"},
            {"id": "alice", "fullName": "Alice", "username": "alice", "phoneNumber": "0412345678"},
        ],
        preview={"text": '{"text": "see you"}', "isSender": False, "sortKey": 42},
    )
    record = normalize_chat(chat)
    assert record.participant_id == "alice"
    assert record.username == "alice"
    assert record.phone_number == "0412345678"
    assert record.participant_count == 3
    assert record.last_message == "see you"
    assert record.last_message_from == "them"
    assert record.needs_reply is True
    assert record.preview_sort_key == "42"
    assert record.last_activity.tzinfo == timezone.utc


def test_normalize_chat_group_has_no_counterpart():
    record = normalize_chat(remote_chat("group-1", chat_type="group", title="Team"))
    assert record.type == "group"
    assert record.participant_id is None
    assert record.phone_number is None


def test_normalize_chat_defaults_missing_fields():
    record = normalize_chat(remote_chat("chat-x", title="", chat_type="weird", network=None))
    assert record.title == "Unknown"
    assert record.type == "single"
    assert record.network == "whatsapp"


def test_normalize_message_skips_unorderable():
    assert normalize_message(RemoteMessage.model_validate({"id": "m1", "text": "x"})) is None
    assert normalize_message(RemoteMessage.model_validate({"sortKey": "1", "text": "x"})) is None


def test_normalize_message_shapes_attachments_and_reactions():
    msg = RemoteMessage.model_validate(
        {
            "id": "m1",
            "sortKey": 7,
            "timestamp": "2026-01-01T10:00:00Z",
            "senderID": "peer",
            "text": "photo",
            "attachments": [{"srcURL": "mxc://x", "size": {"width": 10, "height": 20}}],
            "reactions": [{"id": "r1", "participantID": "me", "reactionKey": "👍", "emoji": True}],
        }
    )
    record = normalize_message(msg)
    assert record.sort_key == "7"
    assert record.sender_name == "peer"
    assert record.attachments[0]["type"] == "unknown"
    assert record.attachments[0]["width"] == 10
    assert record.reactions[0]["reactionKey"] == "👍"


def test_normalize_messages_sorts_ascending():
    records = normalize_messages(
        [remote_message("c", "100"), remote_message("a", "9"), remote_message("b", "10")]
    )
    assert [r.sort_key for r in records] == ["9", "10", "100"]


def test_parse_pages_drop_malformed_items():
    """One bad item is dropped and logged; the rest of the page survives."""
    chats = parse_chats_page(
        {
            "items": [{"id": "ok", "title": "A"}, {"title": "no id"}],
            "newestCursor": "n",
            "oldestCursor": "o",
            "hasMore": True,
        }
    )
    assert [c.id for c in chats.items] == ["ok"]
    assert chats.newest_cursor == "n" and chats.has_more is True

    messages = parse_messages_page({"items": [{"id": "m1", "sortKey": "1"}, "garbage"]})
    assert [m.id for m in messages.items] == ["m1"]
    assert messages.has_more is False
