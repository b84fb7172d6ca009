"""Turn validated hub payloads into the local canonical shape.

Also home of the small pure helpers every other module leans on: text extraction
for the dual-format text field, phone normalization, sort-key ordering and bot
detection for injected pseudo-participants.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any, Iterable

from beeper_sync.config import settings
from beeper_sync.schemas import RemoteChat, RemoteMessage, RemoteParticipant

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_PHONE_PUNCTUATION = re.compile(r"[\s+\-().]")
_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")

UNKNOWN_TITLE = "Unknown"


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_message_text(raw: Any) -> str:
    """Plain text from a text field that is either a string or a {"text": ...} structure.

    Strings that look like a JSON object with a "text" key are unwrapped. Malformed
    JSON falls back to the raw string; this never raises.
    """
    if raw is None:
        return ""
    if isinstance(raw, str):
        trimmed = raw.strip()
        if not trimmed:
            return ""
        if trimmed.startswith("{") and trimmed.endswith("}"):
            try:
                parsed = json.loads(trimmed)
            except ValueError:
                return raw
            if isinstance(parsed, dict) and "text" in parsed:
                value = parsed["text"]
                return value if isinstance(value, str) else str(value)
        return raw
    if isinstance(raw, dict) and "text" in raw:
        value = raw["text"]
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)
    return str(raw)


def normalize_phone(raw: str | None) -> str:
    """Canonical digits-only form used for matching (country-coded, AU rules).

    normalize_phone(normalize_phone(x)) == normalize_phone(x) for every input.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    while digits.startswith("00"):
        digits = digits[2:]
    if len(digits) == 12 and digits.startswith("610"):
        # +61 0412 ...: trunk zero kept after the country code
        return "61" + digits[3:]
    if len(digits) == 10 and digits.startswith("0"):
        return "61" + digits[1:]
    if len(digits) == 9 and digits[0] in "23478":
        return "61" + digits
    return digits


def format_phone_for_storage(raw: str) -> str:
    """E.164 form for display/storage; matching always goes through normalize_phone."""
    has_plus = raw.strip().startswith("+")
    digits = _NON_DIGITS.sub("", raw)
    if has_plus and len(digits) >= 10:
        return "+" + normalize_phone(digits)
    normalized = normalize_phone(digits)
    if normalized != digits or normalized.startswith("61"):
        return "+" + normalized
    return raw.strip()


def _is_number(value: str) -> bool:
    return bool(_NUMERIC.match(value))


def compare_sort_keys(a: str | None, b: str | None) -> int:
    """Negative/zero/positive. Numeric keys compare as numbers, otherwise lexically.

    None sorts before everything.
    """
    if a == b:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    if _is_number(a) and _is_number(b):
        if "." not in a and "." not in b:
            ia, ib = int(a), int(b)
            return (ia > ib) - (ia < ib)
        fa, fb = float(a), float(b)
        return (fa > fb) - (fa < fb)
    return (a > b) - (a < b)


sort_key_order = cmp_to_key(compare_sort_keys)


def sort_messages(records: Iterable["MessageRecord"]) -> list["MessageRecord"]:
    """Ascending by sort key, so the last element is the most recent message."""
    return sorted(records, key=lambda r: sort_key_order(r.sort_key))


def is_bot_participant(
    name: str | None, username: str | None, denylist: Iterable[str] | None = None
) -> bool:
    terms = [t.lower() for t in (denylist if denylist is not None else settings.BOT_PARTICIPANT_DENYLIST)]
    n = (name or "").lower()
    u = (username or "").lower()
    return any(term in n or (u and term == u) for term in terms)


def looks_like_raw_identifier(name: str | None) -> bool:
    """True for names that are really handles, matrix ids or bare phone numbers."""
    if not name or not name.strip():
        return True
    if name.strip().lower() == UNKNOWN_TITLE.lower():
        return True
    if "@" in name or ":" in name:
        return True
    compact = _PHONE_PUNCTUATION.sub("", name)
    if not compact:
        return True
    digit_count = sum(ch.isdigit() for ch in compact)
    return digit_count >= 6 and digit_count / len(compact) >= 0.7


def is_name_improvement(existing: str | None, incoming: str | None) -> bool:
    """Whether replacing existing with incoming should count as a change.

    Filling an empty name always counts. After that only a real name counts: raw
    identifiers (handles, phone numbers, "Unknown") never replace a stored name,
    while a real name replaces either a raw one or a different real one.
    """
    if not incoming or incoming == existing:
        return False
    if not existing:
        return True
    return not looks_like_raw_identifier(incoming)


@dataclass(frozen=True)
class ParticipantRecord:
    participant_id: str
    full_name: str | None = None
    username: str | None = None
    phone_number: str | None = None
    email: str | None = None
    img_url: str | None = None
    is_self: bool = False
    cannot_message: bool | None = None

    @property
    def is_bot(self) -> bool:
        return is_bot_participant(self.full_name, self.username)


@dataclass(frozen=True)
class ChatRecord:
    chat_id: str
    local_chat_id: str
    title: str
    network: str
    account_id: str
    type: str
    last_activity: datetime | None
    unread_count: int = 0
    is_archived: bool = False
    is_muted: bool = False
    is_pinned: bool = False
    description: str | None = None
    username: str | None = None
    phone_number: str | None = None
    email: str | None = None
    participant_id: str | None = None
    participant_full_name: str | None = None
    participant_img_url: str | None = None
    cannot_message: bool | None = None
    participant_count: int | None = None
    last_message: str | None = None
    last_message_from: str | None = None
    needs_reply: bool | None = None
    preview_sort_key: str | None = None
    last_read_message_sort_key: str | None = None
    participants: tuple[ParticipantRecord, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    sort_key: str
    timestamp: datetime
    text: str = ""
    account_id: str | None = None
    sender_id: str | None = None
    sender_name: str | None = None
    is_from_user: bool = False
    is_unread: bool | None = None
    attachments: list[dict[str, Any]] | None = None
    reactions: list[dict[str, Any]] | None = None


def normalize_participant(p: RemoteParticipant) -> ParticipantRecord:
    return ParticipantRecord(
        participant_id=p.id,
        full_name=p.full_name,
        username=p.username,
        phone_number=p.phone_number,
        email=p.email,
        img_url=p.img_url,
        is_self=p.is_self,
        cannot_message=p.cannot_message,
    )


def resolve_counterpart(
    participants: Iterable[ParticipantRecord], denylist: Iterable[str] | None = None
) -> ParticipantRecord | None:
    """The real other person of a single chat.

    Bot pseudo-participants are skipped; if only bots remain the first non-self
    participant is used so a single chat always has a counterpart.
    """
    others = [p for p in participants if not p.is_self]
    if not others:
        return None
    real = [p for p in others if not is_bot_participant(p.full_name, p.username, denylist)]
    return real[0] if real else others[0]


def normalize_chat(chat: RemoteChat, denylist: Iterable[str] | None = None) -> ChatRecord:
    participants = tuple(
        normalize_participant(p) for p in (chat.participants.items if chat.participants else [])
    )
    chat_type = chat.type if chat.type in ("single", "group") else "single"

    counterpart = resolve_counterpart(participants, denylist) if chat_type == "single" else None

    last_message = last_message_from = needs_reply = preview_sort_key = None
    if chat.preview is not None:
        last_message = extract_message_text(chat.preview.text) or None
        last_message_from = "user" if chat.preview.is_sender else "them"
        needs_reply = not chat.preview.is_sender
        preview_sort_key = chat.preview.sort_key

    return ChatRecord(
        chat_id=chat.id,
        local_chat_id=chat.local_chat_id or chat.id,
        title=chat.title or UNKNOWN_TITLE,
        network=chat.network or chat.account_id or "Unknown",
        account_id=chat.account_id or "",
        type=chat_type,
        last_activity=as_utc(chat.last_activity),
        unread_count=chat.unread_count or 0,
        is_archived=chat.is_archived,
        is_muted=chat.is_muted,
        is_pinned=chat.is_pinned,
        description=chat.description,
        username=counterpart.username if counterpart else None,
        phone_number=counterpart.phone_number if counterpart else None,
        email=counterpart.email if counterpart else None,
        participant_id=counterpart.participant_id if counterpart else None,
        participant_full_name=counterpart.full_name if counterpart else None,
        participant_img_url=counterpart.img_url if counterpart else None,
        cannot_message=counterpart.cannot_message if counterpart else None,
        participant_count=chat.participants.total if chat.participants else None,
        last_message=last_message,
        last_message_from=last_message_from,
        needs_reply=needs_reply,
        preview_sort_key=preview_sort_key,
        last_read_message_sort_key=chat.last_read_message_sort_key,
        participants=participants,
    )


def _attachment_dict(att) -> dict[str, Any]:
    return {
        "type": att.type or "unknown",
        "srcURL": att.src_url,
        "mimeType": att.mime_type,
        "fileName": att.file_name,
        "fileSize": att.file_size,
        "isGif": att.is_gif,
        "isSticker": att.is_sticker,
        "isVoiceNote": att.is_voice_note,
        "posterImg": att.poster_img,
        "width": att.size.width if att.size else None,
        "height": att.size.height if att.size else None,
    }


def _reaction_dict(r) -> dict[str, Any]:
    return {
        "id": r.id,
        "participantID": r.participant_id,
        "reactionKey": r.reaction_key,
        "emoji": r.emoji,
        "imgURL": r.img_url,
    }


def normalize_message(msg: RemoteMessage) -> MessageRecord | None:
    """None when the record cannot be ordered or deduplicated (no id or sort key)."""
    if not msg.id or not msg.sort_key:
        logger.warning("Skipping message without id/sortKey: id=%r sortKey=%r", msg.id, msg.sort_key)
        return None
    timestamp = as_utc(msg.timestamp)
    if timestamp is None:
        logger.warning("Message %s has no timestamp; using now", msg.id)
        timestamp = utcnow()
    attachments = [_attachment_dict(a) for a in msg.attachments or []]
    reactions = [_reaction_dict(r) for r in msg.reactions or []]
    return MessageRecord(
        message_id=msg.id,
        sort_key=msg.sort_key,
        timestamp=timestamp,
        text=extract_message_text(msg.text),
        account_id=msg.account_id,
        sender_id=msg.sender_id,
        sender_name=msg.sender_name or msg.sender_id,
        is_from_user=msg.is_sender,
        is_unread=msg.is_unread,
        attachments=attachments or None,
        reactions=reactions or None,
    )


def normalize_messages(messages: Iterable[RemoteMessage]) -> list[MessageRecord]:
    """Normalize, drop unusable records, sort ascending by sort key."""
    records = [r for r in (normalize_message(m) for m in messages) if r is not None]
    return sort_messages(records)
