"""Resolve a gateway message to the one canonical conversation for that contact.

The same person can reach a session under several JIDs (phone JID, legacy
`@c.us`, opaque `@lid`), and messages we send from the phone carry our own
push name. Resolution therefore tries, in order:

1. exact `(session_id, remote_jid)` match, soft-deleted rows included;
2. contact name match (incoming, non-group only);
3. phone match on the last 10 digits (outgoing, non-group only);
4. create.

Creation runs inside a SAVEPOINT so a concurrent webhook that created the same
`(session_id, remote_jid)` row first is picked up instead of failing.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zapflow.logging_config import get_logger
from zapflow.models import Conversation, WhatsappSession
from zapflow.schemas.webhook import WhatsappWebhookEvent
from zapflow.services.jid import (
    MIN_COMPARABLE_DIGITS,
    PHONE_MATCH_DIGITS,
    coerce_remote_jid,
    normalize_digits,
    phone_tail,
    strip_jid_suffix,
)
from zapflow.services.result import Result

logger = get_logger("identity_service")

DEFAULT_GROUP_NAME = "Grupo"


class Resolution(str, Enum):
    EXACT = "exact"
    RESTORED = "restored"
    BY_NAME = "by_name"
    BY_PHONE = "by_phone"
    CREATED = "created"
    RACE = "race"


@dataclass
class SenderIdentity:
    remote_jid: str
    is_group: bool
    from_me: bool
    phone: Optional[str]
    contact_name: Optional[str]
    group_name: Optional[str]
    profile_picture: Optional[str]

    @property
    def unread_increment(self) -> int:
        return 0 if self.from_me else 1


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_identity(event: WhatsappWebhookEvent) -> Optional[SenderIdentity]:
    """Who is on the other side of this message; None when the payload has no usable JID."""
    remote_jid = coerce_remote_jid(event.remote_jid)
    if not remote_jid:
        return None

    is_group = event.is_group_chat
    if is_group:
        phone = _clean(event.sender_phone)
        if not phone and event.participant:
            phone = _clean(strip_jid_suffix(event.participant))
        # Our own push name must never become the contact's name.
        contact_name = None if event.from_me else _clean(event.sender_name or event.push_name)
    else:
        phone = _clean(strip_jid_suffix(remote_jid))
        contact_name = None if event.from_me else _clean(event.push_name or event.sender_name)

    return SenderIdentity(
        remote_jid=remote_jid,
        is_group=is_group,
        from_me=event.from_me,
        phone=phone,
        contact_name=contact_name,
        group_name=_clean(event.group_name),
        profile_picture=_clean(event.profile_picture),
    )


def _assign_owner(conversation: Conversation, session: WhatsappSession, *, force: bool = False) -> None:
    if session.user_id is None:
        return
    if force or conversation.assigned_user_id is None:
        conversation.assigned_user_id = session.user_id


def _restore_or_bump(conversation: Conversation, identity: SenderIdentity) -> None:
    if conversation.is_trashed:
        conversation.deleted_at = None
        conversation.is_archived = False
        conversation.unread_count = identity.unread_increment
    elif identity.unread_increment:
        # Evaluated by the database so concurrent deliveries never lose a count.
        conversation.unread_count = Conversation.unread_count + identity.unread_increment


def _find_exact(db: Session, session_id, remote_jid: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.session_id == session_id, Conversation.remote_jid == remote_jid)
        .first()
    )


def _find_by_contact_name(db: Session, session_id, contact_name: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.session_id == session_id,
            Conversation.is_group.is_(False),
            Conversation.contact_name == contact_name,
        )
        .order_by(Conversation.last_message_at.desc().nullslast())
        .first()
    )


def _find_by_phone(db: Session, session_id, phone: str) -> Optional[Conversation]:
    digits = normalize_digits(phone)
    if len(digits) < PHONE_MATCH_DIGITS:
        return None
    stored_digits = func.regexp_replace(Conversation.contact_phone, r"\D", "", "g")
    return (
        db.query(Conversation)
        .filter(
            Conversation.session_id == session_id,
            Conversation.is_group.is_(False),
            Conversation.contact_phone.isnot(None),
            func.length(stored_digits) >= MIN_COMPARABLE_DIGITS,
            func.right(stored_digits, PHONE_MATCH_DIGITS) == phone_tail(digits),
        )
        .order_by(Conversation.last_message_at.desc().nullslast())
        .first()
    )


def _adopt(
    conversation: Conversation,
    session: WhatsappSession,
    identity: SenderIdentity,
    now: datetime,
) -> None:
    """Move an existing conversation onto the JID this contact is now using."""
    conversation.remote_jid = identity.remote_jid
    conversation.contact_phone = identity.phone
    if identity.contact_name:
        conversation.contact_name = identity.contact_name
    if identity.profile_picture:
        conversation.profile_picture = identity.profile_picture
    conversation.last_message_at = now
    _assign_owner(conversation, session, force=True)
    _restore_or_bump(conversation, identity)


def _refresh_existing(
    conversation: Conversation,
    session: WhatsappSession,
    identity: SenderIdentity,
    now: datetime,
) -> Resolution:
    was_trashed = conversation.is_trashed
    conversation.last_message_at = now
    _restore_or_bump(conversation, identity)
    _assign_owner(conversation, session)

    if identity.is_group:
        if identity.group_name:
            conversation.group_name = identity.group_name
    elif identity.contact_name and not identity.from_me:
        conversation.contact_name = identity.contact_name
        if not conversation.contact_phone and identity.phone:
            conversation.contact_phone = identity.phone
    if identity.profile_picture and identity.profile_picture != conversation.profile_picture:
        conversation.profile_picture = identity.profile_picture

    return Resolution.RESTORED if was_trashed else Resolution.EXACT


def _create(
    db: Session,
    session: WhatsappSession,
    identity: SenderIdentity,
    now: datetime,
) -> Result[tuple[Conversation, Resolution]]:
    conversation = Conversation(
        session_id=session.id,
        remote_jid=identity.remote_jid,
        is_group=identity.is_group,
        group_name=(identity.group_name or DEFAULT_GROUP_NAME) if identity.is_group else None,
        contact_phone=None if identity.is_group else identity.phone,
        contact_name=None if identity.is_group else identity.contact_name,
        profile_picture=identity.profile_picture,
        assigned_user_id=session.user_id,
        unread_count=identity.unread_increment,
        last_message_at=now,
    )
    try:
        with db.begin_nested():
            db.add(conversation)
            db.flush()
    except IntegrityError:
        logger.info(
            "Conversation created concurrently, refetching",
            extra={"context": {"session_id": str(session.id), "remote_jid": identity.remote_jid}},
        )
        existing = _find_exact(db, session.id, identity.remote_jid)
        if existing is None:
            logger.error(
                "Conversation missing after unique violation",
                extra={"context": {"session_id": str(session.id), "remote_jid": identity.remote_jid}},
            )
            return Result.failure("Conversation could not be created", "race_lost")
        existing.last_message_at = now
        _restore_or_bump(existing, identity)
        _assign_owner(existing, session)
        db.flush()
        return Result.success((existing, Resolution.RACE))

    logger.info(
        "Conversation created",
        extra={
            "context": {
                "session_id": str(session.id),
                "conversation_id": str(conversation.id),
                "is_group": identity.is_group,
            }
        },
    )
    return Result.success((conversation, Resolution.CREATED))


def resolve_conversation(
    db: Session,
    session: WhatsappSession,
    event: WhatsappWebhookEvent,
    now: Optional[datetime] = None,
) -> Result[tuple[Conversation, Resolution]]:
    """Find or create the canonical conversation for a message event and update its counters."""
    identity = extract_identity(event)
    if identity is None:
        return Result.failure("Message has no remote JID", "missing_jid")

    now = now or datetime.now(timezone.utc)
    context = {"session_id": str(session.id), "remote_jid": identity.remote_jid}

    conversation = _find_exact(db, session.id, identity.remote_jid)
    if conversation is not None:
        resolution = _refresh_existing(conversation, session, identity, now)
        db.flush()
        return Result.success((conversation, resolution))

    if not identity.is_group and identity.contact_name:
        conversation = _find_by_contact_name(db, session.id, identity.contact_name)
        if conversation is not None:
            logger.info(
                "Consolidating conversation by contact name",
                extra={"context": {**context, "conversation_id": str(conversation.id), "old_jid": conversation.remote_jid}},
            )
            return _adopt_in_savepoint(db, session, conversation, identity, Resolution.BY_NAME, now)

    if not identity.is_group and identity.from_me and len(normalize_digits(identity.phone)) >= PHONE_MATCH_DIGITS:
        conversation = _find_by_phone(db, session.id, identity.phone)
        if conversation is not None:
            logger.info(
                "Consolidating conversation by phone",
                extra={"context": {**context, "conversation_id": str(conversation.id), "old_jid": conversation.remote_jid}},
            )
            return _adopt_in_savepoint(db, session, conversation, identity, Resolution.BY_PHONE, now)

    return _create(db, session, identity, now)


def _adopt_in_savepoint(
    db: Session,
    session: WhatsappSession,
    conversation: Conversation,
    identity: SenderIdentity,
    resolution: Resolution,
    now: datetime,
) -> Result[tuple[Conversation, Resolution]]:
    try:
        with db.begin_nested():
            _adopt(conversation, session, identity, now)
            db.flush()
    except IntegrityError:
        # Another delivery created the new JID meanwhile; keep that row.
        existing = _find_exact(db, session.id, identity.remote_jid)
        if existing is None:
            return Result.failure("Conversation could not be consolidated", "race_lost")
        existing.last_message_at = now
        _restore_or_bump(existing, identity)
        _assign_owner(existing, session)
        db.flush()
        return Result.success((existing, Resolution.RACE))
    return Result.success((conversation, resolution))
