"""Tests for chat/message/participant upserts, contact matching and the cursor cycle guard."""

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from beeper_sync.cursor_store import update_chat_message_cursors
from beeper_sync.exceptions import ChatNotFoundError
from beeper_sync.models import Chat, ContactPhone, Message, Participant
from beeper_sync.normalize import MessageRecord, normalize_chat, normalize_messages
from beeper_sync.reconcile import (
    CursorCycleGuard,
    backfill_contact_phone_index,
    link_chat_to_contact,
    resolve_contact,
    unlink_chat_contact,
    upsert_chat,
    upsert_contact,
    upsert_messages,
    upsert_participants,
)

from fakes import BASE_TIME, remote_chat, remote_message


def _chat_snapshot(db, chat_id):
    chat = db.scalars(select(Chat).where(Chat.chat_id == chat_id)).one()
    skip = {"updated_at", "created_at", "last_synced_at"}
    return {c.name: getattr(chat, c.name) for c in Chat.__table__.columns if c.name not in skip}


def _message(message_id, sort_key, text="", is_from_user=False):
    return MessageRecord(
        message_id=message_id,
        sort_key=sort_key,
        timestamp=BASE_TIME + timedelta(minutes=int(sort_key)),
        text=text or f"message {sort_key}",
        is_from_user=is_from_user,
    )


def _chat(db, record):
    upsert_chat(db, record, sync_source="cron")
    return db.scalars(select(Chat).where(Chat.chat_id == record.chat_id)).one()


# -- chats -------------------------------------------------------------------


def test_upsert_chat_is_idempotent(db):
    """The same payload twice: second call reports not updated and nothing changes."""
    record = normalize_chat(
        remote_chat("chat-1", preview={"text": "hi", "isSender": False, "sortKey": "10"})
    )
    first = upsert_chat(db, record, sync_source="cron")
    assert first.created and first.updated and first.needs_message_sync
    before = _chat_snapshot(db, "chat-1")

    second = upsert_chat(db, record, sync_source="cron")
    assert second.created is False
    assert second.updated is False
    assert second.changed_fields == ()
    assert _chat_snapshot(db, "chat-1") == before


def test_upsert_chat_detects_tracked_changes(db):
    record = normalize_chat(remote_chat("chat-1"))
    upsert_chat(db, record, sync_source="cron")

    changed = replace(record, unread_count=3, is_pinned=True)
    result = upsert_chat(db, changed, sync_source="manual")
    assert result.updated
    assert set(result.changed_fields) == {"unread_count", "is_pinned"}
    chat = db.scalars(select(Chat).where(Chat.chat_id == "chat-1")).one()
    assert chat.unread_count == 3
    assert chat.sync_source == "manual"


def test_upsert_chat_protects_good_names(db):
    """A raw identifier never replaces a real name; a real name replaces a raw one."""
    raw = normalize_chat(remote_chat("chat-1", title="+61 412 345 678"))
    upsert_chat(db, raw, sync_source="cron")

    upsert_chat(db, replace(raw, title="Alice Example"), sync_source="cron")
    chat = db.scalars(select(Chat).where(Chat.chat_id == "chat-1")).one()
    assert chat.title == "Alice Example"

    result = upsert_chat(db, replace(raw, title="+61 412 345 678"), sync_source="cron")
    assert result.updated is False
    assert chat.title == "Alice Example"


def test_upsert_chat_keeps_fresher_preview(db):
    """Older activity (backward pagination) must not overwrite the live preview."""
    live = normalize_chat(
        remote_chat(
            "chat-1",
            last_activity=BASE_TIME + timedelta(hours=2),
            preview={"text": "latest", "isSender": True, "sortKey": "200"},
        )
    )
    chat = _chat(db, live)
    stale = normalize_chat(
        remote_chat(
            "chat-1",
            last_activity=BASE_TIME,
            unread=5,
            preview={"text": "old", "isSender": False, "sortKey": "100"},
        )
    )
    result = upsert_chat(db, stale, sync_source="backfill")
    assert result.updated  # unread changed
    assert chat.last_message == "latest"
    assert chat.last_message_from == "user"
    assert chat.needs_reply is False
    assert chat.last_activity.replace(tzinfo=None) == (BASE_TIME + timedelta(hours=2)).replace(tzinfo=None)


def test_needs_message_sync_follows_newest_cursor(db):
    record = normalize_chat(
        remote_chat("chat-1", preview={"text": "hi", "isSender": False, "sortKey": "10"})
    )
    chat = _chat(db, record)
    update_chat_message_cursors(db, chat, newest="10", oldest="1")
    assert upsert_chat(db, record, sync_source="cron").needs_message_sync is False

    newer = replace(record, preview_sort_key="11")
    assert upsert_chat(db, newer, sync_source="cron").needs_message_sync is True


def test_needs_message_sync_without_cursor_uses_activity(db):
    record = normalize_chat(remote_chat("chat-1"))
    chat = _chat(db, record)
    upsert_messages(db, chat, [], synced_at=BASE_TIME + timedelta(minutes=5))
    assert upsert_chat(db, record, sync_source="cron").needs_message_sync is False

    later = replace(record, last_activity=BASE_TIME + timedelta(minutes=10))
    assert upsert_chat(db, later, sync_source="cron").needs_message_sync is True


# -- messages ----------------------------------------------------------------


def test_messages_are_immutable(db):
    """A message seen again with different text is skipped, never patched."""
    chat = _chat(db, normalize_chat(remote_chat("chat-1")))
    upsert_messages(db, chat, [_message("m1", "1", "original")])

    result = upsert_messages(db, chat, [_message("m1", "1", "edited"), _message("m2", "2")])
    assert result.inserted == 1
    assert result.skipped == 1
    stored = db.scalars(select(Message).where(Message.message_id == "m1")).one()
    assert stored.text == "original"


def test_reply_tracking_follows_last_message(db):
    """Two messages "5" then "10": the chat preview is the "10" message."""
    chat = _chat(db, normalize_chat(remote_chat("chat-1")))
    records = normalize_messages(
        [remote_message("m10", "10", "how are you?"), remote_message("m5", "5", "hey")]
    )
    result = upsert_messages(db, chat, records)
    assert result.inserted == 2
    assert (result.oldest_sort_key, result.newest_sort_key) == ("5", "10")
    assert chat.last_message == "how are you?"
    assert chat.last_message_from == "them"
    assert chat.needs_reply is True


def test_older_batch_does_not_touch_preview(db):
    chat = _chat(db, normalize_chat(remote_chat("chat-1")))
    upsert_messages(db, chat, [_message("m100", "100", "newest", is_from_user=True)])
    update_chat_message_cursors(db, chat, newest="100", oldest="100")

    upsert_messages(db, chat, [_message("m10", "10", "old"), _message("m20", "20", "older reply")])
    assert chat.last_message == "newest"
    assert chat.needs_reply is False
    assert db.scalar(select(func.count()).select_from(Message)) == 3


def test_empty_batch_keeps_reply_tracking(db):
    chat = _chat(db, normalize_chat(remote_chat("chat-1")))
    upsert_messages(db, chat, [_message("m1", "1", "question?")])
    chat.last_message = None
    upsert_messages(db, chat, [])
    assert chat.last_message == "question?"
    assert chat.needs_reply is True
    assert chat.last_messages_synced_at is not None


# -- participants ------------------------------------------------------------


def test_upsert_participants_backfills_chat_fields(db):
    """Networks that only expose the phone in the participant list still fill the chat."""
    record = normalize_chat(
        remote_chat(
            "chat-1",
            title="+61 412 345 678",
            participants=[{"id": "me", "isSelf": True}, {"id": "p1"}],
        )
    )
    chat = _chat(db, record)
    contact = upsert_contact(db, first_name="Alice", last_name="Example", phones=["0412 345 678"])

    richer = normalize_chat(
        remote_chat(
            "chat-1",
            participants=[
                {"id": "me", "isSelf": True},
                {"id": "bot", "fullName": "Meta AI"},
                {"id": "p1", "fullName": "Alice Example", "phoneNumber": "+61412345678", "imgURL": "http://img"},
            ],
        )
    )
    result = upsert_participants(db, chat, richer.participants)
    assert result.inserted == 3
    assert chat.phone_number == "+61412345678"
    assert chat.participant_img_url == "http://img"
    assert chat.contact_id == contact.id
    assert chat.title == "Alice Example"
    assert "contact_id" in result.backfilled

    again = upsert_participants(db, chat, richer.participants)
    assert (again.inserted, again.updated, again.unchanged) == (0, 0, 3)
    assert db.scalar(select(func.count()).select_from(Participant)) == 3


# -- contacts ----------------------------------------------------------------


def test_resolve_contact_precedence(db):
    by_handle = upsert_contact(db, first_name="Insta", instagram="@alice")
    by_whatsapp = upsert_contact(db, first_name="Wa", whatsapp="+61412345678")
    by_phone = upsert_contact(db, first_name="Phone", phones=["(02) 9876 5432"])

    assert resolve_contact(db, instagram="alice", phone="+61412345678").id == by_handle.id
    assert resolve_contact(db, instagram="ALICE").id == by_handle.id
    assert resolve_contact(db, phone="+61412345678").id == by_whatsapp.id
    assert resolve_contact(db, phone="+61 2 9876 5432").id == by_phone.id
    assert resolve_contact(db, phone="0400000000") is None
    assert resolve_contact(db) is None


def test_upsert_contact_reindexes_phones(db):
    contact = upsert_contact(db, first_name="A", phones=["0412 345 678", "+61 412 345 678"])
    assert [p.normalized_phone for p in contact.phone_index] == ["61412345678"]

    upsert_contact(db, contact_id=contact.id, first_name="A", phones=["0298765432"])
    phones = db.scalars(select(ContactPhone.normalized_phone)).all()
    assert phones == ["61298765432"]


def test_upsert_contact_stores_e164_phones(db):
    contact = upsert_contact(db, first_name="A", whatsapp="0412 345 678", phones=["(02) 9876 5432", "02 9876 5432", " "])
    assert contact.whatsapp == "+61412345678"
    assert contact.phones == ["+61298765432"]
    assert sorted(p.normalized_phone for p in contact.phone_index) == ["61298765432", "61412345678"]

    with pytest.raises(ValueError):
        upsert_contact(db, contact_id=999, first_name="Ghost")


def test_legacy_contacts_are_found_then_indexed(db):
    """Contacts written without index rows match through the fallback scan until indexed."""
    contact = upsert_contact(db, first_name="Legacy")
    contact.phones = ["0412 345 678"]
    db.flush()

    assert resolve_contact(db, phone="+61 412 345 678").id == contact.id
    assert backfill_contact_phone_index(db) == 1
    assert backfill_contact_phone_index(db) == 0
    assert [p.normalized_phone for p in contact.phone_index] == ["61412345678"]


def test_manual_link_beats_auto_matching(db):
    record = normalize_chat(
        remote_chat("chat-1", participants=[{"id": "me", "isSelf": True}, {"id": "p", "username": "alice"}])
    )
    auto = upsert_contact(db, first_name="Auto", instagram="alice")
    manual = upsert_contact(db, first_name="Manual")
    chat = _chat(db, record)
    assert chat.contact_id == auto.id

    link_chat_to_contact(db, "chat-1", manual.id)
    upsert_chat(db, replace(record, unread_count=9), sync_source="cron")
    assert chat.contact_id == manual.id
    assert chat.contact_manually_linked is True

    unlink_chat_contact(db, "chat-1")
    assert chat.contact_id is None
    assert chat.contact_manually_linked is False

    with pytest.raises(ChatNotFoundError):
        link_chat_to_contact(db, "missing", manual.id)


# -- cycle guard -------------------------------------------------------------


def test_cycle_guard_stops_on_echoed_cursor():
    guard = CursorCycleGuard(max_pages=20)
    assert guard.should_stop("C0", "after", "C1") is False
    assert guard.should_stop("C1", "after", "C1") is True
    assert guard.stop_reason == "cursor did not advance"
    assert guard.pages == 2


def test_cycle_guard_stops_on_revisited_cursor():
    guard = CursorCycleGuard(max_pages=20)
    assert not guard.should_stop(None, None, "A")
    assert not guard.should_stop("A", "after", "B")
    assert guard.should_stop("B", "after", "A")
    assert guard.stop_reason == "cursor cycle detected"


def test_cycle_guard_page_budget():
    guard = CursorCycleGuard(max_pages=3)
    assert not guard.should_stop(None, None, "1")
    assert not guard.should_stop("1", "after", "2")
    assert guard.should_stop("2", "after", "3")
    assert guard.stop_reason == "page budget exhausted"
