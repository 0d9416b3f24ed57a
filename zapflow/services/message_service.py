import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zapflow.logging_config import get_logger
from zapflow.models import Conversation, Message
from zapflow.schemas.webhook import WhatsappWebhookEvent

logger = get_logger("message_service")

AI_SENDER_NAME = "AI Agent"

# Delivery receipts may arrive out of order; status only moves forward.
STATUS_RANK = {"pending": 0, "sent": 1, "delivered": 2, "read": 3}
FAILED_STATUSES = {"failed", "error"}


def build_message_id(
    message_id: Optional[str],
    remote_jid: Optional[str],
    timestamp,
    message_text: Optional[str],
) -> str:
    """Provider id, or a stable substitute so gateway retries still dedup."""
    if message_id and str(message_id).strip():
        return str(message_id).strip()
    if remote_jid and timestamp is not None:
        return f"{remote_jid}:{timestamp}"
    if remote_jid and message_text:
        digest = hashlib.sha256(message_text.encode("utf-8")).hexdigest()[:16]
        return f"{remote_jid}:{digest}"
    return str(uuid.uuid4())


def find_message(db: Session, message_id: str) -> Optional[Message]:
    return db.query(Message).filter(Message.message_id == message_id).first()


def record_message(
    db: Session,
    conversation: Conversation,
    event: WhatsappWebhookEvent,
    sender_phone: Optional[str] = None,
) -> Tuple[Message, bool]:
    """Append a gateway message to the conversation once.

    Returns (message, created). A message id that is already stored, whether from
    a retried webhook or a concurrent delivery, returns the stored row with
    created=False and writes nothing.
    """
    message_id = build_message_id(event.message_id, event.remote_jid, event.timestamp, event.content)

    existing = find_message(db, message_id)
    if existing is not None:
        logger.info(
            "Duplicate message ignored",
            extra={"context": {"conversation_id": str(conversation.id), "message_id": message_id}},
        )
        return existing, False

    from_me = event.from_me
    message = Message(
        conversation_id=conversation.id,
        message_id=message_id,
        direction="outgoing" if from_me else "incoming",
        type=event.type or "text",
        content=event.content,
        media_url=event.media_url,
        media_filename=event.media_filename,
        media_mimetype=event.media_mimetype,
        status="sent" if from_me else "delivered",
        sender_name=None if from_me else (event.sender_name or event.push_name),
        sender_phone=None if from_me else (event.sender_phone or sender_phone),
        sent_at=datetime.now(timezone.utc),
    )
    try:
        with db.begin_nested():
            db.add(message)
            db.flush()
    except IntegrityError:
        existing = find_message(db, message_id)
        if existing is None:
            raise
        logger.info(
            "Duplicate message ignored (concurrent insert)",
            extra={"context": {"conversation_id": str(conversation.id), "message_id": message_id}},
        )
        return existing, False

    return message, True


def record_outgoing_reply(
    db: Session,
    conversation: Conversation,
    content: str,
    message_id: Optional[str] = None,
) -> Message:
    """Store a reply the AI agent sent and mark the conversation as read.

    The gateway echoes our own send back as a fromMe message with the same id.
    When that echo was stored first, the stored row is claimed for the agent so
    it is not mistaken for a human reply.
    """
    now = datetime.now(timezone.utc)
    message_id = message_id or str(uuid.uuid4())
    message = Message(
        conversation_id=conversation.id,
        message_id=message_id,
        direction="outgoing",
        type="text",
        content=content,
        status="sent",
        sender_name=AI_SENDER_NAME,
        sent_at=now,
    )
    try:
        with db.begin_nested():
            db.add(message)
            db.flush()
    except IntegrityError:
        existing = find_message(db, message_id)
        if existing is None:
            raise
        logger.info(
            "AI reply already stored from gateway echo",
            extra={"context": {"conversation_id": str(conversation.id), "message_id": message_id}},
        )
        existing.sender_name = AI_SENDER_NAME
        if not existing.content:
            existing.content = content
        message = existing

    conversation.last_message_at = now
    conversation.unread_count = 0
    db.flush()
    return message


def _next_status(current: Optional[str], incoming: str) -> Optional[str]:
    if incoming in FAILED_STATUSES:
        return None if current == "read" else "failed"
    if incoming not in STATUS_RANK:
        return None
    if current in FAILED_STATUSES:
        return incoming
    if STATUS_RANK.get(current or "pending", 0) >= STATUS_RANK[incoming]:
        return None
    return incoming


def apply_status_update(db: Session, message_id: Optional[str], status: Optional[str]) -> Optional[Message]:
    """Apply a delivery receipt. Returns the message when its status changed."""
    if not message_id or not status:
        return None

    message = find_message(db, message_id)
    if message is None:
        logger.debug(f"Status update for unknown message {message_id}")
        return None

    new_status = _next_status(message.status, status.strip().lower())
    if new_status is None:
        logger.debug(
            "Status update ignored",
            extra={"context": {"message_id": message_id, "current": message.status, "incoming": status}},
        )
        return None

    now = datetime.now(timezone.utc)
    message.status = new_status
    if new_status == "delivered" and message.delivered_at is None:
        message.delivered_at = now
    elif new_status == "read":
        if message.delivered_at is None:
            message.delivered_at = now
        message.read_at = now
    db.flush()
    return message
