"""Turn raw provider webhook events into a closed set of typed events.

Provider payloads carry overlapping, partly redundant hints about what a
message is (message-type tag, media-type tag, MIME type, file name). All of
that probing happens here so downstream code only sees the dataclasses below.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from app.schemas.webhook import MessageContent, ProviderEvent, ProviderMessage

NEW_MESSAGE_EVENT = "messages"
UPDATE_EVENT = "messages_update"

_DELETED_MARKERS = {"DeletedMessage", "Deleted"}
_MARKDOWN_FILE_RE = re.compile(r"\.(md|markdown)$", re.IGNORECASE)
_NON_DIGITS_RE = re.compile(r"[^\d]")


class MessageKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"


MEDIA_KINDS = frozenset(
    {MessageKind.AUDIO, MessageKind.IMAGE, MessageKind.VIDEO, MessageKind.DOCUMENT, MessageKind.STICKER}
)
AI_ELIGIBLE_KINDS = frozenset(
    {MessageKind.TEXT, MessageKind.AUDIO, MessageKind.IMAGE, MessageKind.VIDEO, MessageKind.DOCUMENT}
)


@dataclass(frozen=True)
class MediaDetails:
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    file_size: int = 0
    duration: int = 0
    is_ptt: bool = False
    width: Optional[int] = None
    height: Optional[int] = None
    page_count: Optional[int] = None
    caption: Optional[str] = None
    is_animated: bool = False


@dataclass(frozen=True)
class MessageEvent:
    kind: MessageKind
    instance_name: Optional[str]
    provider_message_id: Optional[str]
    sender: Optional[str]
    phone_number: str
    contact_name: str
    avatar_url: Optional[str]
    is_from_self: bool
    text: Optional[str]
    quoted_provider_id: Optional[str]
    sent_at: datetime
    instance_token: Optional[str] = None
    media: Optional[MediaDetails] = None

    @property
    def is_media(self) -> bool:
        return self.kind in MEDIA_KINDS

    @property
    def content(self) -> Optional[str]:
        """Text stored in the message row: body for text, caption for captioned media."""
        if self.kind == MessageKind.TEXT:
            return self.text
        if self.kind in (MessageKind.IMAGE, MessageKind.VIDEO, MessageKind.DOCUMENT) and self.media:
            return self.media.caption or None
        return None

    def missing_fields(self) -> list[str]:
        missing = [
            name
            for name, value in (
                ("instanceName", self.instance_name),
                ("message.messageid", self.provider_message_id),
                ("message.sender", self.sender),
            )
            if not value
        ]
        return missing


@dataclass(frozen=True)
class ReactionEvent:
    instance_name: Optional[str]
    owner: Optional[str]
    provider_message_id: Optional[str]
    target_provider_id: Optional[str]
    emoji: str
    is_from_self: bool
    phone_number: str

    @property
    def is_removal(self) -> bool:
        return not self.emoji.strip()

    def target_candidates(self) -> list[str]:
        """Ids the reacted message may be stored under."""
        target = self.target_provider_id
        if not target:
            return []
        candidates = [target]
        if self.owner:
            candidates.append(f"{self.owner}:{target}")
        if ":" in target:
            candidates.append(target.split(":", 1)[1])
        return list(dict.fromkeys(candidates))


@dataclass(frozen=True)
class DeletionEvent:
    instance_name: Optional[str]
    provider_message_ids: tuple[str, ...]
    deleted_by_self: bool

    @property
    def deleted_by_type(self) -> str:
        return "agent" if self.deleted_by_self else "client"


@dataclass(frozen=True)
class IgnoredEvent:
    reason: str


ClassifiedEvent = Union[MessageEvent, ReactionEvent, DeletionEvent, IgnoredEvent]


def _jid_user(jid: Optional[str]) -> str:
    if not jid:
        return ""
    return jid.split("@")[0]


def _is_deletion(event: ProviderEvent) -> bool:
    if event.event_type != UPDATE_EVENT:
        return False
    if event.type in _DELETED_MARKERS or event.state == "Deleted":
        return True
    return bool(event.event and event.event.Type == "Deleted")


def _media_kind(message: ProviderMessage) -> Optional[MessageKind]:
    """First match wins: audio > image > video > document > sticker."""
    content = message.content_fields
    message_type = message.messageType or ""
    media_type = message.mediaType or ""
    mime_type = content.mimetype or ""

    if message_type == "AudioMessage" or media_type in ("ptt", "audio") or mime_type.startswith("audio/"):
        return MessageKind.AUDIO
    if message_type == "ImageMessage" or media_type == "image" or mime_type.startswith("image/"):
        return MessageKind.IMAGE
    if message_type == "VideoMessage" or media_type == "video" or mime_type.startswith("video/"):
        return MessageKind.VIDEO
    if (
        message_type in ("DocumentMessage", "DocumentWithCaptionMessage")
        or message.type == "document"
        or media_type == "document"
        or _MARKDOWN_FILE_RE.search(content.fileName or "")
    ):
        return MessageKind.DOCUMENT
    if message_type == "StickerMessage" or message.type == "sticker":
        return MessageKind.STICKER
    return None


def _is_reaction(message: ProviderMessage) -> bool:
    return message.type == "reaction" or message.messageType == "ReactionMessage"


def _is_text(message: ProviderMessage) -> bool:
    if message.type in ("text", "chat"):
        return True
    return message.type == "media" and (
        message.messageType == "ExtendedTextMessage" or message.mediaType == "url"
    )


def _to_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _media_details(message: ProviderMessage) -> MediaDetails:
    content: MessageContent = message.content_fields
    return MediaDetails(
        mime_type=content.mimetype,
        file_name=content.fileName,
        file_size=_to_int(content.fileLength),
        duration=content.seconds or 0,
        is_ptt=content.PTT is True or message.mediaType == "ptt",
        width=content.width,
        height=content.height,
        page_count=content.pageCount,
        caption=content.caption,
        is_animated=bool(content.isAnimated),
    )


def _sent_at(timestamp_ms: Optional[int], now: datetime) -> datetime:
    if not timestamp_ms:
        return now
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return now


def resolve_phone_number(event: ProviderEvent) -> str:
    chat = event.chat
    message = event.message
    if chat and chat.wa_chatid:
        return _jid_user(chat.wa_chatid)
    if message and message.chatid:
        return _jid_user(message.chatid)
    if chat and chat.phone:
        return _NON_DIGITS_RE.sub("", chat.phone)
    return _jid_user(message.sender if message else None)


def _quoted_id(message: ProviderMessage) -> Optional[str]:
    if message.quoted:
        return message.quoted
    context = message.content_fields.contextInfo or {}
    return context.get("stanzaID") or None


def _reaction_event(event: ProviderEvent, message: ProviderMessage) -> ReactionEvent:
    content = message.content_fields
    key = content.key or {}
    phone_number = _jid_user(message.sender) or _jid_user(event.chat.wa_chatid if event.chat else None)
    return ReactionEvent(
        instance_name=event.instanceName,
        owner=event.owner,
        provider_message_id=message.messageid,
        target_provider_id=key.get("ID") or message.reaction,
        emoji=message.text or content.text or "",
        is_from_self=message.fromMe or key.get("fromMe") is True,
        phone_number=phone_number,
    )


def classify(event: ProviderEvent, now: Optional[datetime] = None) -> ClassifiedEvent:
    """Classify a parsed provider event. Pure; performs no I/O."""
    now = now or datetime.now(timezone.utc)

    if _is_deletion(event):
        update = event.event
        return DeletionEvent(
            instance_name=event.instanceName,
            provider_message_ids=tuple(update.MessageIDs) if update else (),
            deleted_by_self=bool(update and update.IsFromMe),
        )

    if event.event_type != NEW_MESSAGE_EVENT:
        return IgnoredEvent(reason=f'Event type "{event.event_type}" ignored')

    message = event.message
    if message is None:
        return IgnoredEvent(reason="Event carries no message")
    if message.isGroup:
        return IgnoredEvent(reason="Group messages not supported")

    kind = _media_kind(message)
    if kind is None:
        if _is_reaction(message):
            return _reaction_event(event, message)
        if _is_text(message):
            kind = MessageKind.TEXT
        else:
            return IgnoredEvent(reason=f'Message type "{message.type or message.messageType}" ignored')

    phone_number = resolve_phone_number(event)
    chat = event.chat
    contact_name = (chat.wa_name if chat else None) or message.senderName or phone_number
    avatar_url = None
    if chat:
        avatar_url = chat.imagePreview or chat.image or chat.profilePicUrl or None

    text = message.text
    if kind == MessageKind.TEXT and text is None:
        text = message.content_fields.text

    return MessageEvent(
        kind=kind,
        instance_name=event.instanceName,
        provider_message_id=message.messageid,
        sender=message.sender,
        phone_number=phone_number,
        contact_name=contact_name,
        avatar_url=avatar_url,
        is_from_self=message.fromMe,
        text=text,
        quoted_provider_id=_quoted_id(message),
        sent_at=_sent_at(message.messageTimestamp, now),
        instance_token=event.token,
        media=_media_details(message) if kind in MEDIA_KINDS else None,
    )
