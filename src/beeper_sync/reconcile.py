"""Reconcile normalized hub records with the local database.

Writes are change-detected: a chat whose tracked fields did not change is not
written at all, messages are insert-only, and preview/reply-tracking fields are
only ever moved forward in time so a historical page cannot overwrite a fresher
live preview.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from beeper_sync.exceptions import ChatNotFoundError
from beeper_sync.models import Chat, Contact, ContactPhone, Message, Participant
from beeper_sync.normalize import (
    ChatRecord,
    MessageRecord,
    ParticipantRecord,
    as_utc,
    compare_sort_keys,
    format_phone_for_storage,
    is_bot_participant,
    is_name_improvement,
    looks_like_raw_identifier,
    normalize_phone,
    sort_messages,
    utcnow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


def _contact_phone_set(contact: Contact) -> set[str]:
    raw = list(contact.phones or [])
    if contact.whatsapp:
        raw.append(contact.whatsapp)
    return {n for n in (normalize_phone(p) for p in raw) if n}


def reindex_contact_phones(db: Session, contact: Contact) -> None:
    """Bring contact_phones in line with the contact's phones and whatsapp number."""
    wanted = _contact_phone_set(contact)
    current = {row.normalized_phone: row for row in contact.phone_index}
    for phone, row in current.items():
        if phone not in wanted:
            contact.phone_index.remove(row)
    for phone in wanted - current.keys():
        contact.phone_index.append(ContactPhone(normalized_phone=phone))
    db.flush()


def upsert_contact(
    db: Session,
    *,
    contact_id: int | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    instagram: str | None = None,
    whatsapp: str | None = None,
    phones: list[str] | None = None,
    image_url: str | None = None,
) -> Contact:
    """Create or replace a contact. Phones are stored in E.164 and indexed normalized."""
    if contact_id is not None:
        contact = db.get(Contact, contact_id)
        if contact is None:
            raise ValueError(f"Contact {contact_id} not found")
    else:
        contact = Contact()
        db.add(contact)
    contact.first_name = first_name
    contact.last_name = last_name
    contact.instagram = instagram.lstrip("@") if instagram else None
    contact.whatsapp = format_phone_for_storage(whatsapp) if whatsapp else None
    stored = [format_phone_for_storage(p) for p in phones or [] if p and p.strip()]
    contact.phones = list(dict.fromkeys(stored)) or None
    contact.image_url = image_url
    db.flush()
    reindex_contact_phones(db, contact)
    return contact


def backfill_contact_phone_index(db: Session) -> int:
    """Index contacts written before contact_phones existed. Returns contacts indexed."""
    contacts = db.scalars(
        select(Contact)
        .where(~Contact.phone_index.any())
        .where((Contact.phones.isnot(None)) | (Contact.whatsapp.isnot(None)))
    ).all()
    for contact in contacts:
        reindex_contact_phones(db, contact)
    if contacts:
        logger.info("Indexed phones for %d legacy contacts", len(contacts))
    return len(contacts)


def _legacy_phone_scan(db: Session, normalized: str) -> Contact | None:
    """Fallback for contacts with phones but no index rows yet: O(n) normalize-and-compare."""
    candidates = db.scalars(
        select(Contact)
        .where(~Contact.phone_index.any())
        .where((Contact.phones.isnot(None)) | (Contact.whatsapp.isnot(None)))
    ).all()
    for contact in candidates:
        if normalized in _contact_phone_set(contact):
            logger.debug("Contact %s matched by legacy phone scan", contact.id)
            return contact
    return None


def resolve_contact(
    db: Session, *, instagram: str | None = None, phone: str | None = None
) -> Contact | None:
    """Instagram handle, then exact phone, then normalized-phone index, then legacy scan."""
    if instagram:
        handle = instagram.lstrip("@")
        contact = db.scalars(select(Contact).where(Contact.instagram == handle).limit(1)).first()
        if contact is None:
            contact = db.scalars(
                select(Contact).where(func.lower(Contact.instagram) == handle.lower()).limit(1)
            ).first()
        if contact is not None:
            return contact
    if phone:
        contact = db.scalars(select(Contact).where(Contact.whatsapp == phone).limit(1)).first()
        if contact is not None:
            return contact
        normalized = normalize_phone(phone)
        if normalized:
            contact = db.scalars(
                select(Contact)
                .join(ContactPhone, ContactPhone.contact_id == Contact.id)
                .where(ContactPhone.normalized_phone == normalized)
                .limit(1)
            ).first()
            if contact is not None:
                return contact
            return _legacy_phone_scan(db, normalized)
    return None


def get_chat_by_remote_id(db: Session, chat_id: str) -> Chat | None:
    return db.scalars(select(Chat).where(Chat.chat_id == chat_id)).first()


def _require_chat(db: Session, chat_id: str) -> Chat:
    chat = get_chat_by_remote_id(db, chat_id)
    if chat is None:
        raise ChatNotFoundError(f"Chat {chat_id} not found")
    return chat


def link_chat_to_contact(db: Session, chat_id: str, contact_id: int) -> Chat:
    """Explicit user link. Auto-matching never touches this chat's contact again."""
    chat = _require_chat(db, chat_id)
    contact = db.get(Contact, contact_id)
    if contact is None:
        raise ValueError(f"Contact {contact_id} not found")
    chat.contact = contact
    chat.contact_manually_linked = True
    db.flush()
    return chat


def unlink_chat_contact(db: Session, chat_id: str) -> Chat:
    chat = _require_chat(db, chat_id)
    chat.contact = None
    chat.contact_manually_linked = False
    db.flush()
    return chat


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------


@dataclass
class ChatUpsertResult:
    chat_pk: int
    chat_id: str
    created: bool
    updated: bool
    needs_message_sync: bool
    changed_fields: tuple[str, ...] = ()


def _needs_message_sync(chat: Chat, record: ChatRecord) -> bool:
    if record.preview_sort_key is not None:
        return chat.newest_message_sort_key is None or (
            compare_sort_keys(record.preview_sort_key, chat.newest_message_sort_key) > 0
        )
    synced_at = as_utc(chat.last_messages_synced_at)
    if synced_at is None:
        return True
    return record.last_activity is not None and record.last_activity > synced_at


def _tracked_changes(chat: Chat, record: ChatRecord, contact_id: int | None) -> dict[str, object]:
    changes: dict[str, object] = {}

    existing_activity = as_utc(chat.last_activity)
    if record.last_activity is not None and (
        existing_activity is None or record.last_activity > existing_activity
    ):
        changes["last_activity"] = record.last_activity
    if record.unread_count != chat.unread_count:
        changes["unread_count"] = record.unread_count
    if contact_id is not None and contact_id != chat.contact_id and not chat.contact_manually_linked:
        changes["contact_id"] = contact_id
    if record.username and record.username != chat.username:
        changes["username"] = record.username
    if record.phone_number and record.phone_number != chat.phone_number:
        changes["phone_number"] = record.phone_number
    for flag in ("is_archived", "is_muted", "is_pinned"):
        if getattr(record, flag) != getattr(chat, flag):
            changes[flag] = getattr(record, flag)
    if is_name_improvement(chat.title, record.title):
        changes["title"] = record.title
    if is_name_improvement(chat.participant_full_name, record.participant_full_name):
        changes["participant_full_name"] = record.participant_full_name
    return changes


def _new_chat(record: ChatRecord, contact_id: int | None, sync_source: str, now: datetime) -> Chat:
    return Chat(
        chat_id=record.chat_id,
        local_chat_id=record.local_chat_id,
        title=record.title,
        network=record.network,
        account_id=record.account_id,
        type=record.type,
        description=record.description,
        username=record.username,
        phone_number=record.phone_number,
        email=record.email,
        participant_id=record.participant_id,
        participant_full_name=record.participant_full_name,
        participant_img_url=record.participant_img_url,
        cannot_message=record.cannot_message,
        participant_count=record.participant_count,
        last_activity=record.last_activity,
        unread_count=record.unread_count,
        is_archived=record.is_archived,
        is_muted=record.is_muted,
        is_pinned=record.is_pinned,
        last_message=record.last_message,
        last_message_from=record.last_message_from,
        needs_reply=record.needs_reply,
        last_read_message_sort_key=record.last_read_message_sort_key,
        message_count=0,
        has_complete_history=False,
        contact_id=contact_id,
        contact_manually_linked=False,
        last_synced_at=now,
        sync_source=sync_source,
    )


def upsert_chat(
    db: Session, record: ChatRecord, *, sync_source: str, now: datetime | None = None
) -> ChatUpsertResult:
    """Insert or change-detect-update one chat.

    needs_message_sync is computed whether or not the metadata write happened.
    """
    now = now or utcnow()
    chat = get_chat_by_remote_id(db, record.chat_id)

    contact_id: int | None = None
    if chat is None or not chat.contact_manually_linked:
        contact = resolve_contact(db, instagram=record.username, phone=record.phone_number)
        contact_id = contact.id if contact else None

    if chat is None:
        chat = _new_chat(record, contact_id, sync_source, now)
        db.add(chat)
        db.flush()
        logger.info("New chat %s (%s): will sync messages", record.chat_id, record.title)
        return ChatUpsertResult(chat.id, chat.chat_id, True, True, True, ("created",))

    needs_sync = _needs_message_sync(chat, record)
    changes = _tracked_changes(chat, record, contact_id)
    if not changes:
        logger.debug("Chat %s unchanged; needs_message_sync=%s", record.chat_id, needs_sync)
        return ChatUpsertResult(chat.id, chat.chat_id, False, False, needs_sync)

    # Preview only moves forward; older activity comes from backward pagination.
    existing_activity = as_utc(chat.last_activity)
    preview_is_fresh = record.last_activity is not None and (
        existing_activity is None or record.last_activity >= existing_activity
    )

    for name, value in changes.items():
        setattr(chat, name, value)
    if preview_is_fresh and record.last_message_from is not None:
        chat.last_message = record.last_message
        chat.last_message_from = record.last_message_from
        chat.needs_reply = record.needs_reply

    # Untracked fields ride along with a write but never cause one.
    for name in (
        "email",
        "participant_id",
        "participant_img_url",
        "cannot_message",
        "participant_count",
        "description",
        "last_read_message_sort_key",
    ):
        value = getattr(record, name)
        if value is not None:
            setattr(chat, name, value)
    chat.network = record.network
    chat.account_id = record.account_id
    chat.type = record.type
    chat.last_synced_at = now
    chat.sync_source = sync_source
    db.flush()

    logger.debug("Chat %s updated: %s", record.chat_id, ", ".join(sorted(changes)))
    return ChatUpsertResult(chat.id, chat.chat_id, False, True, needs_sync, tuple(sorted(changes)))


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class MessageBatchResult:
    inserted: int = 0
    skipped: int = 0
    newest_sort_key: str | None = None
    oldest_sort_key: str | None = None


def _apply_reply_tracking(chat: Chat, *, text: str, is_from_user: bool, timestamp: datetime | None) -> None:
    chat.last_message = text
    chat.last_message_from = "user" if is_from_user else "them"
    chat.needs_reply = not is_from_user
    ts = as_utc(timestamp)
    if ts is not None and (chat.last_activity is None or ts > as_utc(chat.last_activity)):
        chat.last_activity = ts


def upsert_messages(
    db: Session, chat: Chat, records: Iterable[MessageRecord], *, synced_at: datetime | None = None
) -> MessageBatchResult:
    """Insert unseen messages; existing ones are never touched.

    Reply tracking follows the batch's last message unless it is older than the
    chat's newest known sort key. An empty batch re-derives tracking from the most
    recent stored message instead of clearing it.
    """
    batch = sort_messages(records)
    result = MessageBatchResult()
    ids = [r.message_id for r in batch]
    known: set[str] = set()
    if ids:
        known = set(
            db.scalars(
                select(Message.message_id)
                .where(Message.chat_id == chat.id)
                .where(Message.message_id.in_(ids))
            ).all()
        )

    for r in batch:
        if r.message_id in known:
            result.skipped += 1
            continue
        db.add(
            Message(
                chat_id=chat.id,
                message_id=r.message_id,
                account_id=r.account_id,
                text=r.text,
                timestamp=r.timestamp,
                sort_key=r.sort_key,
                sender_id=r.sender_id,
                sender_name=r.sender_name,
                is_from_user=r.is_from_user,
                is_unread=r.is_unread,
                attachments=r.attachments,
                reactions=r.reactions,
                status="sent",
            )
        )
        known.add(r.message_id)
        result.inserted += 1

    if batch:
        result.newest_sort_key = batch[-1].sort_key
        result.oldest_sort_key = batch[0].sort_key
        last = batch[-1]
        if chat.newest_message_sort_key is None or (
            compare_sort_keys(last.sort_key, chat.newest_message_sort_key) >= 0
        ):
            _apply_reply_tracking(chat, text=last.text, is_from_user=last.is_from_user, timestamp=last.timestamp)
        else:
            logger.debug(
                "Chat %s: batch ends at %s, older than newest %s; preview kept",
                chat.chat_id, last.sort_key, chat.newest_message_sort_key,
            )
    else:
        db.flush()
        latest = db.scalars(
            select(Message)
            .where(Message.chat_id == chat.id)
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(1)
        ).first()
        if latest is not None:
            _apply_reply_tracking(
                chat, text=latest.text, is_from_user=latest.is_from_user, timestamp=latest.timestamp
            )

    chat.last_messages_synced_at = synced_at or utcnow()
    db.flush()
    logger.info(
        "Chat %s: inserted %d, skipped %d messages", chat.chat_id, result.inserted, result.skipped
    )
    return result


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------


@dataclass
class ParticipantUpsertResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    backfilled: tuple[str, ...] = field(default_factory=tuple)


_PARTICIPANT_FIELDS = (
    "full_name",
    "username",
    "phone_number",
    "email",
    "img_url",
    "is_self",
    "cannot_message",
)

# participant attribute -> chat attribute filled when the chat summary lacked it
_CHAT_BACKFILL = (
    ("phone_number", "phone_number"),
    ("username", "username"),
    ("email", "email"),
    ("full_name", "participant_full_name"),
    ("img_url", "participant_img_url"),
    ("participant_id", "participant_id"),
)


def upsert_participants(
    db: Session,
    chat: Chat,
    records: Iterable[ParticipantRecord],
    *,
    denylist: Iterable[str] | None = None,
) -> ParticipantUpsertResult:
    """Upsert a chat's participants and backfill the chat's counterpart fields.

    Some networks only expose phone/handle in the participant list, not in the chat
    summary; the first non-self, non-bot participant fills those gaps.
    """
    result = ParticipantUpsertResult()
    existing = {
        p.participant_id: p
        for p in db.scalars(select(Participant).where(Participant.chat_id == chat.id)).all()
    }
    counterpart: ParticipantRecord | None = None
    counterpart_contact_id: int | None = None

    for r in records:
        contact = None
        if not r.is_self:
            contact = resolve_contact(db, instagram=r.username, phone=r.phone_number)
        values = {name: getattr(r, name) for name in _PARTICIPANT_FIELDS}
        if contact is not None:
            values["contact_id"] = contact.id

        row = existing.get(r.participant_id)
        if row is None:
            row = Participant(chat_id=chat.id, participant_id=r.participant_id, **values)
            db.add(row)
            existing[r.participant_id] = row
            result.inserted += 1
        else:
            changed = {k: v for k, v in values.items() if getattr(row, k) != v}
            if changed:
                for k, v in changed.items():
                    setattr(row, k, v)
                result.updated += 1
            else:
                result.unchanged += 1

        if (
            counterpart is None
            and not r.is_self
            and not is_bot_participant(r.full_name, r.username, denylist)
        ):
            counterpart = r
            counterpart_contact_id = contact.id if contact else None

    backfilled: list[str] = []
    if chat.type == "single" and counterpart is not None:
        for source, target in _CHAT_BACKFILL:
            value = getattr(counterpart, source)
            if value and not getattr(chat, target):
                setattr(chat, target, value)
                backfilled.append(target)
        if (
            counterpart_contact_id is not None
            and chat.contact_id is None
            and not chat.contact_manually_linked
        ):
            chat.contact_id = counterpart_contact_id
            backfilled.append("contact_id")
        if (
            counterpart.full_name
            and looks_like_raw_identifier(chat.title)
            and not looks_like_raw_identifier(counterpart.full_name)
        ):
            chat.title = counterpart.full_name
            backfilled.append("title")
    result.backfilled = tuple(backfilled)
    db.flush()

    if result.inserted or result.updated or backfilled:
        logger.debug(
            "Chat %s participants: +%d ~%d =%d backfilled=%s",
            chat.chat_id, result.inserted, result.updated, result.unchanged, backfilled,
        )
    return result


# ---------------------------------------------------------------------------
# Pagination safety
# ---------------------------------------------------------------------------


class CursorCycleGuard:
    """Stops forward pagination that is not making progress.

    A loop ends when the hub hands back a cursor seen earlier in this run, echoes
    the request cursor on an "after" request, returns no cursor, or the page budget
    is spent.
    """

    def __init__(self, max_pages: int) -> None:
        self.max_pages = max_pages
        self.pages = 0
        self.seen: set[str] = set()
        self.stop_reason: str | None = None

    def should_stop(self, request_cursor: str | None, direction: str | None, returned_cursor: str | None) -> bool:
        self.pages += 1
        if request_cursor:
            self.seen.add(request_cursor)
        if returned_cursor is None:
            self.stop_reason = "no cursor returned"
        elif direction == "after" and returned_cursor == request_cursor:
            self.stop_reason = "cursor did not advance"
        elif returned_cursor in self.seen:
            self.stop_reason = "cursor cycle detected"
        elif self.pages >= self.max_pages:
            self.stop_reason = "page budget exhausted"
        else:
            self.seen.add(returned_cursor)
            return False
        if self.stop_reason != "no cursor returned":
            logger.warning("Stopping pagination after %d pages: %s", self.pages, self.stop_reason)
        return True
