from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from zapflow.logging_config import get_logger
from zapflow.models import WhatsappSession
from zapflow.schemas.webhook import WhatsappWebhookEvent
from zapflow.services.result import Result
from zapflow.services.session_state import (
    EVENT_TARGETS,
    InvalidSessionTransitionError,
    SessionStatus,
    parse_status,
    transition,
)

logger = get_logger("session_service")


def coerce_uuid(value) -> Optional[UUID]:
    if value is None:
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value).strip())
    except (TypeError, ValueError):
        return None


def get_session(db: Session, session_id) -> Optional[WhatsappSession]:
    """Look up a session, soft-deleted ones included; callers decide what a deleted session means."""
    parsed = coerce_uuid(session_id)
    if parsed is None:
        return None
    return db.query(WhatsappSession).filter(WhatsappSession.id == parsed).first()


def apply_session_event(db: Session, session: WhatsappSession, event: WhatsappWebhookEvent) -> Result[SessionStatus]:
    """Apply a lifecycle event (qr_code, connected, disconnected, logged_out) to the session."""
    target = EVENT_TARGETS.get(event.event or "")
    if target is None:
        return Result.failure(f"Not a lifecycle event: {event.event}", "not_lifecycle")

    current = parse_status(session.status)
    try:
        new_status = transition(current, target)
    except InvalidSessionTransitionError as e:
        logger.info(
            "Ignoring stale session event",
            extra={"context": {"session_id": str(session.id), "event": event.event, "error": str(e)}},
        )
        return Result.failure(str(e), "stale_event")

    now = datetime.now(timezone.utc)
    session.status = new_status.value
    if new_status == SessionStatus.QR_CODE:
        session.qr_code = event.qr_code
    elif new_status == SessionStatus.CONNECTED:
        if event.phone_number:
            session.phone_number = event.phone_number
        session.qr_code = None
        session.connected_at = now
        session.last_activity_at = now
    else:
        session.qr_code = None

    db.commit()
    logger.info(
        "Session status updated",
        extra={"context": {"session_id": str(session.id), "from": current.value, "to": new_status.value}},
    )
    return Result.success(new_status)


def touch_session(db: Session, session: WhatsappSession) -> None:
    session.last_activity_at = datetime.now(timezone.utc)
    db.flush()
