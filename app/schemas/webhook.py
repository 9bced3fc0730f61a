"""Typed view of the provider (UAZAPI) webhook payload.

Only the fields the ingestion pipeline reads are declared; anything else the
provider sends is ignored. Field names follow the provider's casing.
"""

from typing import Any, Optional, Union
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, field_validator


class MessageContent(BaseModel):
    mimetype: Optional[str] = None
    caption: Optional[str] = None
    text: Optional[str] = None
    fileName: Optional[str] = None
    fileLength: Optional[Union[int, str]] = None
    seconds: Optional[int] = None
    PTT: Optional[bool] = None
    width: Optional[int] = None
    height: Optional[int] = None
    pageCount: Optional[int] = None
    isAnimated: Optional[bool] = None
    URL: Optional[str] = None
    key: Optional[dict[str, Any]] = None
    contextInfo: Optional[dict[str, Any]] = None


class ProviderMessage(BaseModel):
    messageid: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("messageid", "messageId"),
    )
    chatid: Optional[str] = None
    sender: Optional[str] = None
    senderName: Optional[str] = None
    fromMe: bool = False
    isGroup: bool = False
    type: Optional[str] = None
    messageType: Optional[str] = None
    mediaType: Optional[str] = None
    text: Optional[str] = None
    quoted: Optional[str] = None
    reaction: Optional[str] = None
    messageTimestamp: Optional[int] = None
    content: Optional[Union[MessageContent, str]] = None

    @field_validator("fromMe", "isGroup", mode="before")
    @classmethod
    def _null_flag_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @property
    def content_fields(self) -> MessageContent:
        """Structured content; plain-string content carries no hints."""
        if isinstance(self.content, MessageContent):
            return self.content
        return MessageContent()


class ProviderChat(BaseModel):
    wa_chatid: Optional[str] = None
    wa_name: Optional[str] = None
    phone: Optional[str] = None
    imagePreview: Optional[str] = None
    image: Optional[str] = None
    profilePicUrl: Optional[str] = None


class ProviderUpdate(BaseModel):
    Type: Optional[str] = None
    MessageIDs: list[str] = Field(default_factory=list)
    IsFromMe: bool = False

    @field_validator("IsFromMe", mode="before")
    @classmethod
    def _null_flag_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("MessageIDs", mode="before")
    @classmethod
    def _null_ids_are_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class ProviderEvent(BaseModel):
    EventType: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("EventType", "eventType"),
    )
    type: Optional[str] = None
    state: Optional[str] = None
    instanceName: Optional[str] = None
    token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("token", "instanceToken"),
    )
    owner: Optional[str] = None
    message: Optional[ProviderMessage] = None
    chat: Optional[ProviderChat] = None
    event: Optional[ProviderUpdate] = None

    @property
    def event_type(self) -> Optional[str]:
        return self.EventType or self.type


class WebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    action: Optional[str] = None
    processed: Optional[int] = None
    message_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None
    contact_id: Optional[UUID] = None
    type: Optional[str] = None
    async_processing: Optional[bool] = None


class WebhookErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[str] = None
