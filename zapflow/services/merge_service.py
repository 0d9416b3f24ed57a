"""Merge conversations that turned out to be the same contact, and repair contact names.

Duplicates appear when a contact reaches a session under different JIDs before
the resolver could link them (a `@lid` id first, the phone JID later, or an
outgoing message that carried no name). Conversations of one session are
grouped with a disjoint-set over three links:

* equal trimmed contact name;
* equal phone number (phone JIDs only; `@lid` digits are not a phone);
* a message whose sender name equals another conversation's contact name.

Each group keeps one conversation (phone JID first, then most messages, then
most recent activity) and the others' messages are moved onto it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from zapflow.logging_config import get_logger
from zapflow.models import Conversation, Message, WhatsappSession
from zapflow.services.jid import (
    JidKind,
    MIN_COMPARABLE_DIGITS,
    classify_jid,
    format_phone_from_digits,
    is_formatted_number,
    is_phone_jid,
    looks_like_lid_or_raw_number,
    normalize_digits,
    phone_tail,
)
from zapflow.services.whatsapp_client import WhatsappGatewayClient

logger = get_logger("merge_service")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class DisjointSet:
    def __init__(self, items):
        self.parent = {item: item for item in items}

    def find(self, item):
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, left, right) -> None:
        left_root, right_root = self.find(left), self.find(right)
        if left_root != right_root:
            self.parent[right_root] = left_root

    def groups(self) -> list[list]:
        grouped: dict = {}
        for item in self.parent:
            grouped.setdefault(self.find(item), []).append(item)
        return [members for members in grouped.values() if len(members) > 1]


@dataclass
class MergeGroup:
    keeper_id: str
    keeper_jid: str
    duplicate_ids: list[str]
    duplicate_jids: list[str]
    messages_moved: int = 0


@dataclass
class MergeReport:
    session_id: str
    dry_run: bool
    groups: list[MergeGroup] = field(default_factory=list)

    @property
    def merged(self) -> int:
        return sum(len(group.duplicate_ids) for group in self.groups)


def _name_key(name: Optional[str]) -> Optional[str]:
    cleaned = (name or "").strip()
    return cleaned or None


def _phone_key(conversation: Conversation) -> Optional[str]:
    if classify_jid(conversation.remote_jid) == JidKind.LID:
        return None
    digits = normalize_digits(conversation.contact_phone)
    if len(digits) < MIN_COMPARABLE_DIGITS:
        return None
    return phone_tail(digits)


def keeper_score(conversation: Conversation, message_count: int) -> tuple:
    last = conversation.last_message_at or _EPOCH
    return (is_phone_jid(conversation.remote_jid), message_count, last)


def _message_counts(db: Session, conversation_ids: list) -> dict:
    rows = (
        db.query(Message.conversation_id, func.count(Message.id))
        .filter(Message.conversation_id.in_(conversation_ids))
        .group_by(Message.conversation_id)
        .all()
    )
    return {conversation_id: count for conversation_id, count in rows}


def _sender_names(db: Session, conversation_ids: list) -> list[tuple]:
    return (
        db.query(Message.conversation_id, Message.sender_name)
        .filter(
            Message.conversation_id.in_(conversation_ids),
            Message.direction == "incoming",
            Message.sender_name.isnot(None),
        )
        .distinct()
        .all()
    )


def plan_merge_groups(
    conversations: list[Conversation],
    message_counts: dict,
    sender_names: list[tuple],
) -> list[tuple[Conversation, list[Conversation]]]:
    """Group duplicate conversations; returns (keeper, duplicates) pairs."""
    by_id = {conversation.id: conversation for conversation in conversations}
    dsu = DisjointSet(by_id.keys())

    first_by_name: dict[str, object] = {}
    first_by_phone: dict[str, object] = {}
    for conversation in conversations:
        name = _name_key(conversation.contact_name)
        if name:
            if name in first_by_name:
                dsu.union(first_by_name[name], conversation.id)
            else:
                first_by_name[name] = conversation.id
        phone = _phone_key(conversation)
        if phone:
            if phone in first_by_phone:
                dsu.union(first_by_phone[phone], conversation.id)
            else:
                first_by_phone[phone] = conversation.id

    for conversation_id, sender_name in sender_names:
        target = first_by_name.get(_name_key(sender_name) or "")
        if target is not None and conversation_id in by_id and target != conversation_id:
            dsu.union(target, conversation_id)

    planned = []
    for member_ids in dsu.groups():
        members = [by_id[member_id] for member_id in member_ids]
        members.sort(key=lambda c: keeper_score(c, message_counts.get(c.id, 0)), reverse=True)
        planned.append((members[0], members[1:]))
    return planned


def _absorb(keeper: Conversation, duplicates: list[Conversation]) -> None:
    for duplicate in duplicates:
        keeper.unread_count = (keeper.unread_count or 0) + (duplicate.unread_count or 0)
        if duplicate.last_message_at and (keeper.last_message_at is None or duplicate.last_message_at > keeper.last_message_at):
            keeper.last_message_at = duplicate.last_message_at
        if not _name_key(keeper.contact_name) and _name_key(duplicate.contact_name):
            keeper.contact_name = duplicate.contact_name
        if not keeper.profile_picture and duplicate.profile_picture:
            keeper.profile_picture = duplicate.profile_picture
        if keeper.contact_id is None and duplicate.contact_id is not None:
            keeper.contact_id = duplicate.contact_id
        keeper.is_pinned = bool(keeper.is_pinned or duplicate.is_pinned)


def merge_duplicate_conversations(db: Session, session: WhatsappSession, dry_run: bool = False) -> MergeReport:
    """Merge duplicate one-to-one conversations of a session. Commits unless dry_run."""
    report = MergeReport(session_id=str(session.id), dry_run=dry_run)

    conversations = (
        db.query(Conversation)
        .filter(
            Conversation.session_id == session.id,
            Conversation.is_group.is_(False),
            Conversation.deleted_at.is_(None),
        )
        .all()
    )
    if len(conversations) < 2:
        return report

    ids = [conversation.id for conversation in conversations]
    counts = _message_counts(db, ids)
    planned = plan_merge_groups(conversations, counts, _sender_names(db, ids))

    for keeper, duplicates in planned:
        duplicate_ids = [duplicate.id for duplicate in duplicates]
        group = MergeGroup(
            keeper_id=str(keeper.id),
            keeper_jid=keeper.remote_jid,
            duplicate_ids=[str(duplicate_id) for duplicate_id in duplicate_ids],
            duplicate_jids=[duplicate.remote_jid for duplicate in duplicates],
            messages_moved=sum(counts.get(duplicate_id, 0) for duplicate_id in duplicate_ids),
        )
        report.groups.append(group)
        if dry_run:
            continue

        db.query(Message).filter(Message.conversation_id.in_(duplicate_ids)).update(
            {Message.conversation_id: keeper.id},
            synchronize_session=False,
        )
        _absorb(keeper, duplicates)
        if session.user_id is not None:
            keeper.assigned_user_id = session.user_id
        db.query(Conversation).filter(Conversation.id.in_(duplicate_ids)).delete(synchronize_session=False)
        logger.info(
            "Merged duplicate conversations",
            extra={
                "context": {
                    "session_id": str(session.id),
                    "keeper_id": group.keeper_id,
                    "duplicates": group.duplicate_ids,
                    "messages_moved": group.messages_moved,
                }
            },
        )

    if not dry_run and report.groups:
        db.commit()
    return report


@dataclass
class ContactNameReport:
    fixed: int = 0
    cleared: int = 0
    already_ok: int = 0
    skipped: int = 0

    @property
    def summary(self) -> str:
        return f"fixed: {self.fixed}, cleared: {self.cleared}, already ok: {self.already_ok}, skipped: {self.skipped}"


def _is_real_name(name: Optional[str], owner_push_name: Optional[str]) -> bool:
    return (
        bool(name)
        and name != owner_push_name
        and not looks_like_lid_or_raw_number(name)
        and not is_formatted_number(name)
    )


def _latest_incoming_sender_name(db: Session, conversation_id) -> Optional[str]:
    message = (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.direction == "incoming",
            Message.sender_name.isnot(None),
            Message.sender_name != "",
        )
        .order_by(Message.created_at.desc())
        .first()
    )
    return message.sender_name.strip() if message else None


def _needs_name(name: Optional[str]) -> bool:
    return not name or looks_like_lid_or_raw_number(name) or is_formatted_number(name)


def fix_contact_names(db: Session, session: WhatsappSession, gateway: Optional[WhatsappGatewayClient] = None) -> ContactNameReport:
    """Repair contact names polluted by our own push name, raw numbers or `@lid` ids."""
    gateway = gateway or WhatsappGatewayClient()
    owner_push_name = gateway.get_owner_push_name(str(session.id))
    report = ContactNameReport()

    conversations = (
        db.query(Conversation)
        .filter(Conversation.session_id == session.id, Conversation.is_group.is_(False))
        .all()
    )
    for conversation in conversations:
        current = _name_key(conversation.contact_name)
        phone_raw = (conversation.contact_phone or "").strip()
        remote_jid = (conversation.remote_jid or "").strip()
        context = {"conversation_id": str(conversation.id), "old": current}

        if owner_push_name and current == owner_push_name:
            incoming_name = _latest_incoming_sender_name(db, conversation.id)
            if _is_real_name(incoming_name, owner_push_name):
                conversation.contact_name = incoming_name
                report.fixed += 1
                logger.info("Contact name fixed (was owner name)", extra={"context": {**context, "new": incoming_name}})
            else:
                conversation.contact_name = None
                report.cleared += 1
                logger.info("Contact name cleared (was owner name)", extra={"context": context})
            continue

        if _needs_name(current):
            incoming_name = _latest_incoming_sender_name(db, conversation.id)
            if incoming_name != current and _is_real_name(incoming_name, owner_push_name):
                conversation.contact_name = incoming_name
                report.fixed += 1
                logger.info("Contact name fixed from incoming message", extra={"context": {**context, "new": incoming_name}})
                continue

            if remote_jid:
                real_name = gateway.get_contact_name(str(session.id), remote_jid)
                if _is_real_name(real_name, owner_push_name):
                    conversation.contact_name = real_name
                    report.fixed += 1
                    logger.info("Contact name fixed from gateway", extra={"context": {**context, "new": real_name}})
                    continue

        source = current or phone_raw or remote_jid
        if source and looks_like_lid_or_raw_number(source):
            formatted = format_phone_from_digits(source)
            if formatted and formatted != current:
                conversation.contact_name = formatted
                if phone_raw and looks_like_lid_or_raw_number(phone_raw):
                    conversation.contact_phone = formatted
                report.fixed += 1
                logger.info("Contact name set to formatted number", extra={"context": {**context, "new": formatted}})
                continue

        phone_has_lid = bool(phone_raw) and looks_like_lid_or_raw_number(phone_raw)
        if phone_has_lid and current and is_formatted_number(current):
            conversation.contact_phone = current
            report.fixed += 1
            continue

        if current and not looks_like_lid_or_raw_number(current):
            report.already_ok += 1
            continue
        report.skipped += 1

    db.commit()
    logger.info(
        "Contact names repaired",
        extra={"context": {"session_id": str(session.id), "owner_push_name": owner_push_name, **report.__dict__}},
    )
    return report
