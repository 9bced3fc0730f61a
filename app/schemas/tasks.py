"""Payloads for asynchronous work, serialized as JSON onto the task queue."""

from datetime import datetime, timezone
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

TaskKind = Literal["media", "ai-agent"]


class MediaTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: UUID = Field(alias="messageDbId")
    provider_message_id: str = Field(alias="whatsappMessageId")
    media_kind: str = Field(alias="mediaType")
    company_id: UUID = Field(alias="companyId")
    connection_id: UUID = Field(alias="whatsappConnectionId")
    instance_token: Optional[str] = Field(default=None, alias="instanceToken")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class AIAgentTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    company_id: UUID = Field(alias="companyId")
    connection_id: UUID = Field(alias="connectionId")
    conversation_id: UUID = Field(alias="conversationId")
    reply_to_message_id: Optional[UUID] = Field(default=None, alias="replyToMessageId")
    message_content: str = Field(default="", alias="messageContent")
    contact_name: Optional[str] = Field(default=None, alias="contactName")
    contact_phone: str = Field(alias="contactPhone")
    instance_token: Optional[str] = Field(default=None, alias="instanceToken")
    message_type: str = Field(default="text", alias="msgType")
    media_url: Optional[str] = Field(default=None, alias="msgMediaUrl")


class TaskEnvelope(BaseModel):
    """Queue item wrapper carrying retry bookkeeping."""

    model_config = ConfigDict(populate_by_name=True)

    kind: TaskKind
    data: dict[str, Any]
    attempts: int = 0
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="enqueuedAt")
    error: Optional[str] = None
    failed_at: Optional[datetime] = Field(default=None, alias="failedAt")
    requeued_at: Optional[datetime] = Field(default=None, alias="requeuedAt")
    requeued_from: Optional[str] = Field(default=None, alias="requeuedFrom")
    permanent_failed_at: Optional[datetime] = Field(default=None, alias="permanentFailedAt")
    reason: Optional[str] = None

    @classmethod
    def wrap(cls, task: "MediaTask | AIAgentTask") -> "TaskEnvelope":
        kind = "media" if isinstance(task, MediaTask) else "ai-agent"
        return cls(kind=kind, data=task.model_dump(mode="json", by_alias=True))

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def task(self) -> "MediaTask | AIAgentTask":
        if self.kind == "media":
            return MediaTask.model_validate(self.data)
        return AIAgentTask.model_validate(self.data)
