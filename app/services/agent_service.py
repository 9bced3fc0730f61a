"""AI-agent auto-reply: ask the agent-decision service, pace, send, record."""

import asyncio
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import bind_logger, get_logger
from app.models import Message
from app.schemas.tasks import AIAgentTask
from app.services.conversation_service import bump_last_message_at
from app.services.message_service import persist_message
from app.services.provider_client import ProviderClient
from app.services.result import ErrorCode, Result
from app.services.state_machine import MessageStatus

logger = get_logger("agent_service")

TTS_AUDIO_MIME = "audio/wav"


@dataclass(frozen=True)
class VoiceParams:
    voice_name: str
    speed: float = 1.0
    temperature: float = 0.7
    language_code: str = "pt-BR"


@dataclass(frozen=True)
class AgentDecision:
    skip: bool
    reason: Optional[str] = None
    reply_text: str = ""
    delay_seconds: float = 0.0
    voice: Optional[VoiceParams] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None


def parse_decision(body: dict) -> Result[AgentDecision]:
    """Map the agent-decision service response onto AgentDecision."""
    if not body.get("success"):
        if body.get("skip"):
            return Result.success(AgentDecision(skip=True, reason=body.get("reason")))
        return Result.failure(str(body.get("error") or "Agent declined without reason"), ErrorCode.AGENT_ERROR)

    voice = None
    if body.get("voiceName"):
        voice = VoiceParams(
            voice_name=body["voiceName"],
            speed=float(body.get("speechSpeed") or 1.0),
            temperature=float(body.get("audioTemperature") or 0.7),
            language_code=body.get("languageCode") or "pt-BR",
        )
    return Result.success(
        AgentDecision(
            skip=False,
            reply_text=body.get("response") or "",
            delay_seconds=max(float(body.get("delaySeconds") or 0), 0.0),
            voice=voice,
            agent_id=body.get("agentId"),
            agent_name=body.get("agentName"),
        )
    )


class AgentClient:
    """Client for the sibling agent-decision and text-to-speech services."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        service_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.functions_base_url).rstrip("/")
        self.service_token = service_token if service_token is not None else settings.service_token
        self.timeout = timeout if timeout is not None else settings.agent_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"
        return headers

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.post(f"{self.base_url}{path}", json=payload, headers=self._headers())

    async def decide(self, task: AIAgentTask) -> Result[AgentDecision]:
        payload = {
            "connectionId": str(task.connection_id),
            "conversationId": str(task.conversation_id),
            "messageContent": task.message_content,
            "contactName": task.contact_name,
            "contactPhone": task.contact_phone,
            "messageType": task.message_type,
            "mediaUrl": task.media_url,
        }
        try:
            response = await self._post("/ai-agent-process", payload)
            body = response.json()
        except Exception as e:
            return Result.failure(f"Agent service unavailable: {e}", ErrorCode.AGENT_ERROR)
        if not isinstance(body, dict):
            return Result.failure("Agent service returned a non-object body", ErrorCode.AGENT_ERROR)
        return parse_decision(body)

    async def synthesize(self, text: str, voice: VoiceParams) -> Result[str]:
        payload = {
            "text": text,
            "voiceName": voice.voice_name,
            "speed": voice.speed,
            "temperature": voice.temperature,
            "languageCode": voice.language_code,
        }
        try:
            response = await self._post("/ai-agent-tts", payload)
        except Exception as e:
            return Result.failure(str(e), ErrorCode.TTS_ERROR)
        if not response.is_success:
            return Result.failure(f"HTTP {response.status_code}: {response.text[:200]}", ErrorCode.TTS_ERROR)
        try:
            audio_url = response.json().get("audioUrl")
        except (ValueError, AttributeError):
            audio_url = None
        if not audio_url:
            return Result.failure("TTS returned no audioUrl", ErrorCode.TTS_ERROR)
        return Result.success(audio_url)


def has_replied(db: Session, conversation_id: UUID, message_id: UUID) -> bool:
    """True if a bot reply to this inbound message was already recorded."""
    return (
        db.query(Message.id)
        .filter(
            Message.conversation_id == conversation_id,
            Message.sender_type == "bot",
            Message.message_metadata["replyTo"].astext == str(message_id),
        )
        .first()
        is not None
    )


async def respond(
    db: Session,
    task: AIAgentTask,
    agent: AgentClient,
    provider: ProviderClient,
    *,
    sleep_func=asyncio.sleep,
) -> Result[Optional[UUID]]:
    """Generate and send one AI reply for an inbound message.

    Success carries the outbound message id, or None when nothing was sent
    (agent skipped, empty reply, already answered). Failures before the
    provider send leave no message row.
    """
    log = bind_logger(
        logger,
        conversation_id=str(task.conversation_id),
        connection_id=str(task.connection_id),
    )

    if task.reply_to_message_id and has_replied(db, task.conversation_id, task.reply_to_message_id):
        log.info("AI reply already recorded, skipping")
        return Result.success(None)

    if not task.instance_token:
        log.error("AI reply aborted: connection has no provider token")
        return Result.failure("Missing provider token", ErrorCode.SEND_FAILED)

    decision_result = await agent.decide(task)
    if not decision_result.ok:
        log.error("AI agent decision failed", context={"error": decision_result.error})
        return decision_result
    decision = decision_result.value
    if decision.skip:
        log.info("AI agent skipped", context={"reason": decision.reason})
        return Result.success(None)
    if not decision.reply_text.strip():
        log.info("AI agent returned an empty reply")
        return Result.success(None)

    if decision.delay_seconds:
        await sleep_func(decision.delay_seconds)

    provider_message_id: Optional[str] = None
    message_type = "text"
    media_url: Optional[str] = None
    sent = False

    if decision.voice:
        tts = await agent.synthesize(decision.reply_text, decision.voice)
        if tts.ok:
            voice_send = await provider.send_ptt(task.instance_token, task.contact_phone, tts.value)
            if voice_send.ok:
                sent = True
                provider_message_id = voice_send.value
                message_type = "audio"
                media_url = tts.value
            else:
                log.warning("Voice send failed, falling back to text", context={"error": voice_send.error})
        else:
            log.warning("TTS failed, falling back to text", context={"error": tts.error})

    if not sent:
        text_send = await provider.send_text(task.instance_token, task.contact_phone, decision.reply_text)
        if not text_send.ok:
            log.error("AI reply send failed", context={"error": text_send.error})
            return text_send
        provider_message_id = text_send.value

    metadata = {
        "sentByAIAgent": True,
        "agentId": decision.agent_id,
        "agentName": decision.agent_name,
        "audioGenerated": message_type == "audio",
        "voiceName": decision.voice.voice_name if decision.voice else None,
    }
    if task.reply_to_message_id:
        metadata["replyTo"] = str(task.reply_to_message_id)

    try:
        persisted = persist_message(
            db,
            company_id=task.company_id,
            conversation_id=task.conversation_id,
            provider_message_id=provider_message_id,
            direction="outbound",
            sender_type="bot",
            message_type=message_type,
            content=decision.reply_text,
            status=MessageStatus.SENT,
            metadata=metadata,
            media_url=media_url,
            media_mime_type=TTS_AUDIO_MIME if message_type == "audio" else None,
        )
        bump_last_message_at(db, task.conversation_id)
        db.commit()
    except Exception:
        db.rollback()
        log.exception("AI reply sent but not recorded")
        return Result.success(None)

    log.info("AI reply sent", context={"message_type": message_type, "provider_message_id": provider_message_id})
    return Result.success(persisted.message_id)
