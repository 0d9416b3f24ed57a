from typing import Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from zapflow.config import settings
from zapflow.database import get_db
from zapflow.logging_config import get_logger
from zapflow.models import WhatsappSession
from zapflow.schemas.webhook import IGNORED_EVENTS, WEBHOOK_EVENTS, WebhookResponse, WhatsappWebhookEvent
from zapflow.services.alert_service import alert_warning
from zapflow.services.auto_response_service import ineligibility_reason, run_auto_response
from zapflow.services.identity_service import extract_identity, resolve_conversation
from zapflow.services.message_service import apply_status_update, build_message_id, find_message, record_message
from zapflow.services.session_service import apply_session_event, get_session, touch_session
from zapflow.services.session_state import EVENT_TARGETS

logger = get_logger("whatsapp_webhook")

router = APIRouter()

# Gateway bookkeeping messages that never reach the inbox.
SYSTEM_MESSAGE_TYPES = {
    "messageContextInfo",
    "senderKeyDistributionMessage",
    "protocolMessage",
    "reactionMessage",
    "ephemeralMessage",
    "viewOnceMessage",
    "deviceSentMessage",
    "encReactionMessage",
    "unknown",
}

_missing_secret_warned = False


def _get_request_webhook_secret(request: Request) -> Optional[str]:
    header_secret = request.headers.get("X-Webhook-Secret")
    if header_secret:
        return header_secret.strip()
    query_secret = request.query_params.get("webhook_secret")
    if query_secret:
        return query_secret.strip()
    return None


def _check_webhook_secret(request: Request) -> None:
    global _missing_secret_warned
    expected = (settings.whatsapp_webhook_secret or "").strip()
    provided = _get_request_webhook_secret(request)
    if expected:
        if not provided or provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")
        return
    if not _missing_secret_warned:
        _missing_secret_warned = True
        alert_warning("WhatsApp webhook secret not configured", {"path": request.url.path})


def validate_event(payload: dict) -> Union[WhatsappWebhookEvent, str]:
    """Parsed event, or the reason the payload is rejected."""
    try:
        event = WhatsappWebhookEvent.model_validate(payload)
    except ValidationError as exc:
        return f"Invalid webhook payload: {exc.errors()[0].get('msg', 'validation error')}"
    if not event.event or not event.session_id:
        return "Missing event or sessionId"
    if event.event not in WEBHOOK_EVENTS:
        return f"Unknown event: {event.event}"
    if event.event == "message" and not event.remote_jid:
        return "Message event without sender"
    return event


async def _parse_webhook_request(request: Request) -> Union[WhatsappWebhookEvent, WebhookResponse]:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(success=True, message="Client disconnected")
    except ValueError as exc:
        logger.warning("Webhook payload is not valid JSON", extra={"context": {"error": str(exc)}})
        return WebhookResponse(success=False, message="Invalid JSON payload")

    if not isinstance(payload, dict):
        return WebhookResponse(success=False, message="Invalid payload format")

    parsed = validate_event(payload)
    if isinstance(parsed, str):
        logger.warning(
            "Webhook payload rejected",
            extra={"context": {"reason": parsed, "payload_keys": list(payload.keys())[:20]}},
        )
        return WebhookResponse(success=False, message=parsed)
    return parsed


def _handle_message(
    db: Session,
    session: WhatsappSession,
    event: WhatsappWebhookEvent,
    background_tasks: BackgroundTasks,
) -> WebhookResponse:
    if event.type in SYSTEM_MESSAGE_TYPES:
        logger.debug(f"Skipping system message type {event.type}")
        return WebhookResponse(success=True, message="System message ignored")

    message_id = build_message_id(event.message_id, event.remote_jid, event.timestamp, event.content)
    if find_message(db, message_id) is not None:
        logger.info("Duplicate message webhook", extra={"context": {"message_id": message_id}})
        return WebhookResponse(success=True, message="Duplicate message", message_id=message_id)

    resolved = resolve_conversation(db, session, event)
    if not resolved.ok:
        db.rollback()
        logger.error(
            "Conversation resolution failed",
            extra={"context": {"session_id": str(session.id), "error": resolved.describe()}},
        )
        return WebhookResponse(success=False, message=resolved.error or "Conversation not resolved")
    conversation, resolution = resolved.value

    identity = extract_identity(event)
    message, created = record_message(db, conversation, event, sender_phone=identity.phone if identity else None)
    if not created:
        # A concurrent delivery stored it first; drop this one's counter updates.
        db.rollback()
        return WebhookResponse(success=True, message="Duplicate message", message_id=message_id)

    touch_session(db, session)
    db.commit()

    logger.info(
        "Message recorded",
        extra={
            "context": {
                "session_id": str(session.id),
                "conversation_id": str(conversation.id),
                "message_id": message.message_id,
                "direction": message.direction,
                "resolution": resolution.value,
            }
        },
    )

    reason = ineligibility_reason(event)
    scheduled = False
    if reason is None:
        background_tasks.add_task(
            run_auto_response,
            session.id,
            conversation.id,
            event.content or "",
            message.message_id,
        )
        scheduled = True
    else:
        logger.debug(f"Auto-reply not eligible: {reason}")

    return WebhookResponse(
        success=True,
        message="Message processed",
        conversation_id=conversation.id,
        message_id=message.message_id,
        auto_reply_scheduled=scheduled,
    )


@router.get("/whatsapp/webhook")
async def whatsapp_webhook_check():
    """Reachability check for the gateway; real events must use POST."""
    return {"ok": True, "message": "Use POST with JSON payload"}


@router.post("/whatsapp/webhook", response_model=WebhookResponse)
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Single entry point for gateway events; deliveries may arrive in any order."""
    _check_webhook_secret(request)

    parsed = await _parse_webhook_request(request)
    if isinstance(parsed, WebhookResponse):
        return parsed
    event = parsed

    session = get_session(db, event.session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if session.deleted_at is not None:
        return WebhookResponse(success=True, message="Session deleted, ignoring webhook")

    if event.event in IGNORED_EVENTS:
        logger.debug(f"Ignoring {event.event} event", extra={"context": {"session_id": event.session_id}})
        return WebhookResponse(success=True, message=f"Ignored: {event.event}")

    if event.event in EVENT_TARGETS:
        result = apply_session_event(db, session, event)
        if not result.ok:
            return WebhookResponse(success=True, message=f"Ignored: {result.error_code}")
        return WebhookResponse(success=True, message=f"Session {result.value.value}")

    if event.event == "message":
        return _handle_message(db, session, event, background_tasks)

    updated = apply_status_update(db, event.message_id, event.status)
    db.commit()
    return WebhookResponse(
        success=True,
        message="Status updated" if updated else "Status unchanged",
        message_id=event.message_id,
    )
