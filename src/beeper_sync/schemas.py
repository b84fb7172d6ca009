"""Validated shapes of hub API payloads. Raw JSON never travels past the client."""

import logging
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class _Remote(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _stringify_key(value: Any) -> Any:
    # sortKey arrives as a number on some networks
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    return value


class RemoteParticipant(_Remote):
    id: str
    full_name: str | None = Field(default=None, alias="fullName")
    username: str | None = None
    phone_number: str | None = Field(default=None, alias="phoneNumber")
    email: str | None = None
    img_url: str | None = Field(default=None, alias="imgURL")
    is_self: bool = Field(default=False, alias="isSelf")
    cannot_message: bool | None = Field(default=None, alias="cannotMessage")


class RemoteParticipantList(_Remote):
    items: list[RemoteParticipant] = Field(default_factory=list)
    total: int | None = None
    has_more: bool = Field(default=False, alias="hasMore")


class RemotePreview(_Remote):
    text: Any = None
    is_sender: bool = Field(default=False, alias="isSender")
    sort_key: str | None = Field(default=None, alias="sortKey")
    timestamp: datetime | None = None

    coerce_sort_key = field_validator("sort_key", mode="before")(_stringify_key)


class RemoteChat(_Remote):
    id: str
    local_chat_id: str | None = Field(default=None, alias="localChatID")
    title: str | None = None
    network: str | None = None
    account_id: str | None = Field(default=None, alias="accountID")
    type: str | None = None
    description: str | None = None
    participants: RemoteParticipantList | None = None
    last_activity: datetime | None = Field(default=None, alias="lastActivity")
    unread_count: int = Field(default=0, alias="unreadCount")
    last_read_message_sort_key: str | None = Field(default=None, alias="lastReadMessageSortKey")
    is_archived: bool = Field(default=False, alias="isArchived")
    is_muted: bool = Field(default=False, alias="isMuted")
    is_pinned: bool = Field(default=False, alias="isPinned")
    preview: RemotePreview | None = None

    coerce_sort_key = field_validator("last_read_message_sort_key", mode="before")(_stringify_key)

    @field_validator("unread_count", mode="before")
    @classmethod
    def none_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class RemoteSize(_Remote):
    width: int | None = None
    height: int | None = None


class RemoteAttachment(_Remote):
    type: str | None = None
    src_url: str | None = Field(default=None, alias="srcURL")
    mime_type: str | None = Field(default=None, alias="mimeType")
    file_name: str | None = Field(default=None, alias="fileName")
    file_size: int | None = Field(default=None, alias="fileSize")
    is_gif: bool | None = Field(default=None, alias="isGif")
    is_sticker: bool | None = Field(default=None, alias="isSticker")
    is_voice_note: bool | None = Field(default=None, alias="isVoiceNote")
    poster_img: str | None = Field(default=None, alias="posterImg")
    size: RemoteSize | None = None


class RemoteReaction(_Remote):
    id: str | None = None
    participant_id: str | None = Field(default=None, alias="participantID")
    reaction_key: str | None = Field(default=None, alias="reactionKey")
    emoji: bool | None = None
    img_url: str | None = Field(default=None, alias="imgURL")


class RemoteMessage(_Remote):
    id: str | None = None
    chat_id: str | None = Field(default=None, alias="chatID")
    account_id: str | None = Field(default=None, alias="accountID")
    text: Any = None
    timestamp: datetime | None = None
    sort_key: str | None = Field(default=None, alias="sortKey")
    sender_id: str | None = Field(default=None, alias="senderID")
    sender_name: str | None = Field(default=None, alias="senderName")
    is_sender: bool = Field(default=False, alias="isSender")
    is_unread: bool | None = Field(default=None, alias="isUnread")
    attachments: list[RemoteAttachment] | None = None
    reactions: list[RemoteReaction] | None = None

    coerce_sort_key = field_validator("sort_key", mode="before")(_stringify_key)


class ChatsPage(_Remote):
    items: list[RemoteChat] = Field(default_factory=list)
    newest_cursor: str | None = Field(default=None, alias="newestCursor")
    oldest_cursor: str | None = Field(default=None, alias="oldestCursor")
    has_more: bool = Field(default=False, alias="hasMore")


class MessagesPage(_Remote):
    items: list[RemoteMessage] = Field(default_factory=list)
    has_more: bool = Field(default=False, alias="hasMore")


class SendResult(_Remote):
    chat_id: str | None = Field(default=None, alias="chatID")
    pending_message_id: str = Field(alias="pendingMessageID")


def parse_items(model: type[M], raw_items: Any) -> list[M]:
    """Validate list items one by one; malformed items are logged and dropped."""
    items: list[M] = []
    for raw in raw_items or []:
        try:
            items.append(model.model_validate(raw))
        except ValidationError as e:
            logger.warning(
                "Dropping malformed %s (id=%s): %s",
                model.__name__,
                raw.get("id") if isinstance(raw, dict) else None,
                e.errors()[0].get("msg") if e.errors() else e,
            )
    return items


def parse_chats_page(data: dict[str, Any]) -> ChatsPage:
    return ChatsPage(
        items=parse_items(RemoteChat, data.get("items")),
        newestCursor=data.get("newestCursor"),
        oldestCursor=data.get("oldestCursor"),
        hasMore=bool(data.get("hasMore")),
    )


def parse_messages_page(data: dict[str, Any]) -> MessagesPage:
    return MessagesPage(
        items=parse_items(RemoteMessage, data.get("items")),
        hasMore=bool(data.get("hasMore")),
    )
