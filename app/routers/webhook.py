import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import WhatsAppConnection
from app.schemas.tasks import AIAgentTask, MediaTask
from app.schemas.webhook import ProviderEvent, WebhookErrorResponse, WebhookResponse
from app.services.connection_service import (
    backfill_instance_token,
    get_connection_by_instance,
    get_default_department,
)
from app.services.contact_service import resolve_contact
from app.services.conversation_service import ResolutionAction, resolve_conversation
from app.services.event_classifier import (
    AI_ELIGIBLE_KINDS,
    ClassifiedEvent,
    DeletionEvent,
    IgnoredEvent,
    MessageEvent,
    MessageKind,
    ReactionEvent,
    classify,
)
from app.services.message_service import (
    find_message_by_provider_id,
    mark_messages_deleted,
    persist_inbound_message,
)
from app.services.queue_worker import run_envelope
from app.services.reaction_service import apply_reaction
from app.services.task_queue import TaskDispatcher

logger = get_logger("webhook")

router = APIRouter()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


def get_task_dispatcher(request: Request, background_tasks: BackgroundTasks) -> TaskDispatcher:
    """Dispatcher bound to this request's background tasks and the app-wide queue (if any)."""
    queue = getattr(request.app.state, "task_queue", None)
    return TaskDispatcher(queue, background_tasks, run_envelope, ai_batch_seconds=settings.ai_batch_seconds)


def _ok(body: WebhookResponse) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=CORS_HEADERS,
    )


def _error(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body = WebhookErrorResponse(error=error, details=details)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=CORS_HEADERS,
    )


@router.options("/webhook")
async def webhook_preflight():
    return Response(status_code=200, headers=CORS_HEADERS)


@router.api_route("/webhook", methods=["GET", "HEAD", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def webhook_method_not_allowed():
    return _error(405, "Method not allowed")


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
):
    """Ingest one provider event. Media and AI work is handed off before responding."""
    try:
        payload = json.loads(await request.body())
    except (ValueError, ClientDisconnect):
        return _error(400, "Invalid JSON payload")
    if not isinstance(payload, dict):
        return _error(400, "Invalid JSON payload")

    try:
        event = ProviderEvent.model_validate(payload)
    except ValidationError as e:
        logger.warning("Webhook payload failed validation", extra={"context": {"errors": e.error_count()}})
        return _error(400, "Invalid payload", str(e))

    try:
        classified = classify(event)
        logger.info(
            "Webhook received",
            extra={
                "context": {
                    "event_type": event.event_type,
                    "instance": event.instanceName,
                    "classified_as": type(classified).__name__,
                }
            },
        )
        return await process_event(db, classified, dispatcher)
    except Exception as e:
        db.rollback()
        logger.exception("Webhook processing failed", extra={"context": {"instance": event.instanceName}})
        return _error(500, "Internal server error", str(e))


async def process_event(db: Session, classified: ClassifiedEvent, dispatcher: TaskDispatcher) -> JSONResponse:
    if isinstance(classified, IgnoredEvent):
        return _ok(WebhookResponse(success=True, message=classified.reason))
    if isinstance(classified, DeletionEvent):
        return handle_deletion(db, classified)
    if isinstance(classified, ReactionEvent):
        return handle_reaction(db, classified)
    return await handle_message(db, classified, dispatcher)


def handle_deletion(db: Session, event: DeletionEvent) -> JSONResponse:
    if not event.instance_name:
        return _error(400, "Missing required fields", "instanceName")
    connection = get_connection_by_instance(db, event.instance_name)
    if not connection:
        return _error(404, "Connection not found")

    deleted = mark_messages_deleted(
        db, connection.company_id, event.provider_message_ids, event.deleted_by_type
    )
    logger.info(
        "Messages marked deleted",
        extra={"context": {"requested": len(event.provider_message_ids), "deleted": deleted}},
    )
    return _ok(
        WebhookResponse(success=True, action="message_deleted", processed=len(event.provider_message_ids))
    )


def handle_reaction(db: Session, event: ReactionEvent) -> JSONResponse:
    connection = get_connection_by_instance(db, event.instance_name) if event.instance_name else None
    if not connection:
        return _ok(WebhookResponse(success=True, message="Connection not found for reaction"))

    result = apply_reaction(db, connection.company_id, event)
    if not result.ok:
        logger.info("Reaction ignored", extra={"context": {"reason": result.error}})
        return _ok(WebhookResponse(success=True, message=result.error))
    return _ok(WebhookResponse(success=True, message="Reaction processed", action=result.value))


def _media_task(event: MessageEvent, message_id, connection: WhatsAppConnection, token: Optional[str]) -> MediaTask:
    media = event.media
    return MediaTask(
        message_id=message_id,
        provider_message_id=event.provider_message_id,
        media_kind=event.kind.value,
        company_id=connection.company_id,
        connection_id=connection.id,
        instance_token=token,
        file_name=media.file_name if media else None,
        mime_type=media.mime_type if media else None,
    )


async def handle_message(db: Session, event: MessageEvent, dispatcher: TaskDispatcher) -> JSONResponse:
    missing = event.missing_fields()
    if missing:
        return _error(400, "Missing required fields", ", ".join(missing))
    if event.kind == MessageKind.TEXT and event.text is None:
        return _error(400, "Missing message.text")

    connection = get_connection_by_instance(db, event.instance_name)
    if not connection:
        logger.warning("Unknown connection", extra={"context": {"instance": event.instance_name}})
        return _error(404, "Connection not found")

    company_id = connection.company_id
    token = backfill_instance_token(db, connection, event.instance_token)

    if find_message_by_provider_id(db, company_id, event.provider_message_id):
        logger.info(
            "Duplicate message ignored",
            extra={"context": {"provider_message_id": event.provider_message_id}},
        )
        return _ok(WebhookResponse(success=True, message="Duplicate message ignored"))

    contact = resolve_contact(db, company_id, event.phone_number, event.contact_name, event.avatar_url)
    resolution = resolve_conversation(
        db,
        company_id,
        contact,
        connection,
        event.is_from_self,
        event.sent_at,
        default_department=get_default_department(db, connection),
        contact_name=event.contact_name,
        contact_phone=event.phone_number,
    )
    if resolution.is_ignored:
        return _ok(WebhookResponse(success=True, message="Contact is blocked - message ignored"))

    persisted = persist_inbound_message(db, company_id, resolution.conversation_id, event)
    if persisted.duplicate:
        return _ok(WebhookResponse(success=True, message="Duplicate message ignored"))

    if event.is_media:
        await dispatcher.enqueue(_media_task(event, persisted.message_id, connection, token))

    if (
        not event.is_from_self
        and event.kind in AI_ELIGIBLE_KINDS
        and resolution.action != ResolutionAction.BLOCKED
    ):
        await dispatcher.enqueue(
            AIAgentTask(
                company_id=company_id,
                connection_id=connection.id,
                conversation_id=resolution.conversation_id,
                reply_to_message_id=persisted.message_id,
                message_content=event.content or "",
                contact_name=event.contact_name,
                contact_phone=event.phone_number,
                instance_token=token,
                message_type=event.kind.value,
            )
        )

    logger.info(
        "Message stored",
        extra={
            "context": {
                "message_id": str(persisted.message_id),
                "conversation_id": str(resolution.conversation_id),
                "type": event.kind.value,
                "conversation_action": resolution.action,
            }
        },
    )
    return _ok(
        WebhookResponse(
            success=True,
            message_id=persisted.message_id,
            conversation_id=resolution.conversation_id,
            contact_id=contact.id,
            type=event.kind.value,
            async_processing=event.is_media,
        )
    )
