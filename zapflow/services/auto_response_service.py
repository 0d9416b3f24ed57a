"""Decide whether the AI agent answers an incoming WhatsApp message, and answer it.

Checks run cheapest first and every skip is logged with its reason:

    rate limit -> trailing debounce -> reply lock -> human takeover
    -> agent lookup -> empty text -> generate -> send -> record -> learn

Coordination state (rate counters, debounce tokens, reply locks) lives in
Redis so several API workers agree on it. When Redis is unreachable the same
checks run against an in-process store, which only protects a single worker.
"""

import asyncio
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4

import redis.asyncio as redis_async
from sqlalchemy import case, or_
from sqlalchemy.orm import Session

from zapflow.config import settings
from zapflow.database import SessionLocal
from zapflow.logging_config import bind_logger, get_logger
from zapflow.models import AiChatAgent, Conversation, Message, WhatsappSession
from zapflow.schemas.webhook import WhatsappWebhookEvent
from zapflow.services.ai_service import generate_reply
from zapflow.services.alert_service import alert_error, alert_warning
from zapflow.services.learning_service import record_interaction
from zapflow.services.llm import LLMProvider
from zapflow.services.message_service import AI_SENDER_NAME, record_outgoing_reply
from zapflow.services.whatsapp_client import WhatsappGatewayClient, extract_sent_message_id

logger = get_logger("auto_response")

KEY_PREFIX = "zapflow:auto_reply"
DEFAULT_AGENT_SESSION = "default"

_redis_client = None
_redis_url = None
_local_store: dict[str, dict] = {}
_redis_fallback_warned = False


@dataclass
class AutoReplySettings:
    enabled: bool
    rate_limit_per_minute: int
    reply_debounce_seconds: int
    inactivity_seconds: float
    takeover_minutes: int
    combine_window_seconds: int
    recent_seconds: int
    redis_url: str
    socket_timeout_seconds: float


@dataclass
class DispatchOutcome:
    status: str  # replied, skipped, failed
    reason: Optional[str] = None
    reply: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.status}:{self.reason}" if self.reason else self.status

    @classmethod
    def skipped(cls, reason: str) -> "DispatchOutcome":
        return cls(status="skipped", reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "DispatchOutcome":
        return cls(status="failed", reason=reason)


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _get_auto_reply_settings() -> AutoReplySettings:
    return AutoReplySettings(
        enabled=_is_env_enabled(os.environ.get("AUTO_REPLY_ENABLED"), default=True),
        rate_limit_per_minute=int(os.environ.get("AUTO_REPLY_RATE_LIMIT_PER_MINUTE", "30")),
        reply_debounce_seconds=max(int(float(os.environ.get("AUTO_REPLY_DEBOUNCE_SECONDS", "2"))), 1),
        inactivity_seconds=float(os.environ.get("AUTO_REPLY_INACTIVITY_SECONDS", "1.5")),
        takeover_minutes=int(os.environ.get("AUTO_REPLY_TAKEOVER_MINUTES", "30")),
        combine_window_seconds=int(os.environ.get("AUTO_REPLY_COMBINE_WINDOW_SECONDS", "60")),
        recent_seconds=int(os.environ.get("AUTO_REPLY_RECENT_SECONDS", "300")),
        redis_url=os.environ.get("REDIS_URL", settings.redis_url),
        socket_timeout_seconds=float(os.environ.get("AUTO_REPLY_SOCKET_TIMEOUT_SECONDS", "0.3")),
    )


def _get_redis(redis_url: str, socket_timeout_seconds: float):
    global _redis_client, _redis_url
    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client, _redis_url
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
    _redis_url = None


def _warn_redis_fallback(error: Exception) -> None:
    global _redis_fallback_warned
    logger.warning(f"Auto-reply redis unavailable, using in-process state: {error}")
    if not _redis_fallback_warned:
        _redis_fallback_warned = True
        alert_warning("Auto-reply coordination degraded (redis unavailable)", {"error": str(error)})


def _purge_local_store(now_ts: float) -> None:
    if len(_local_store) < 5000:
        return
    expired = [key for key, item in _local_store.items() if item.get("expires_at", 0) <= now_ts]
    for key in expired:
        _local_store.pop(key, None)


def _local_get(key: str) -> Optional[str]:
    item = _local_store.get(key)
    if not item or item.get("expires_at", 0) <= time.time():
        return None
    return item.get("value")


def _local_set(key: str, value: str, ttl_seconds: float, nx: bool = False) -> bool:
    now_ts = time.time()
    _purge_local_store(now_ts)
    if nx and _local_get(key) is not None:
        return False
    _local_store[key] = {"value": value, "expires_at": now_ts + ttl_seconds}
    return True


def _local_incr(key: str, ttl_seconds: float) -> int:
    now_ts = time.time()
    item = _local_store.get(key)
    if not item or item.get("expires_at", 0) <= now_ts:
        item = {"value": "0", "expires_at": now_ts + ttl_seconds}
    item["value"] = str(int(item["value"]) + 1)
    _local_store[key] = item
    return int(item["value"])


def _rate_key(session_id) -> str:
    bucket = int(time.time() // 60)
    return f"{KEY_PREFIX}:rate:{session_id}:{bucket}"


async def is_rate_limited(session_id, limit: int, redis_client=None) -> bool:
    """True when the session already used its replies for the current minute."""
    key = _rate_key(session_id)
    if redis_client is not None:
        try:
            current = await redis_client.get(key)
            return int(current or 0) >= limit
        except Exception as e:
            _warn_redis_fallback(e)
    return int(_local_get(key) or 0) >= limit


async def consume_rate_slot(session_id, limit: int, redis_client=None) -> bool:
    """Count one reply against the session's minute window; False when over the limit."""
    key = _rate_key(session_id)
    if redis_client is not None:
        try:
            count = await redis_client.incr(key)
            if count == 1:
                await redis_client.expire(key, 60)
            return count <= limit
        except Exception as e:
            _warn_redis_fallback(e)
    return _local_incr(key, 60) <= limit


async def acquire_reply_lock(conversation_id, ttl_seconds: int, redis_client=None) -> bool:
    """At most one reply per conversation per `ttl_seconds` (SET NX EX)."""
    key = f"{KEY_PREFIX}:lock:{conversation_id}"
    if redis_client is not None:
        try:
            return bool(await redis_client.set(key, "1", ex=ttl_seconds, nx=True))
        except Exception as e:
            _warn_redis_fallback(e)
    return _local_set(key, "1", ttl_seconds, nx=True)


async def should_process_debounced_message(
    *,
    conversation_id,
    message_id: str | None,
    inactivity_seconds: float,
    sleep_func=asyncio.sleep,
    redis_client=None,
) -> bool:
    """
    Trailing debounce for bursts: only the latest message in a short window triggers a reply.

    Each message stores its token, waits, and proceeds only if its token is still the latest.
    """
    if inactivity_seconds <= 0:
        return True

    token = message_id or uuid4().hex
    key = f"{KEY_PREFIX}:debounce:{conversation_id}"
    ttl_seconds = max(int(inactivity_seconds * 4), 10)

    if redis_client is not None:
        try:
            await redis_client.set(key, token, ex=ttl_seconds)
            await sleep_func(inactivity_seconds)
            last_token = await redis_client.get(key)
            return last_token == token
        except Exception as e:
            _warn_redis_fallback(e)

    _local_set(key, token, ttl_seconds)
    await sleep_func(inactivity_seconds)
    return _local_get(key) == token


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        try:
            seconds = float(value)
            if seconds > 1e12:
                seconds /= 1000
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def ineligibility_reason(
    event: WhatsappWebhookEvent,
    now: Optional[datetime] = None,
    recent_seconds: Optional[int] = None,
) -> Optional[str]:
    """Why this message must not get an auto-reply, or None when it may."""
    if recent_seconds is None:
        recent_seconds = _get_auto_reply_settings().recent_seconds
    if event.from_me:
        return "from_me"
    if event.is_group_chat:
        return "group"
    if (event.type or "text") != "text":
        return "not_text"
    if event.is_history:
        return "history"
    sent_at = _parse_timestamp(event.timestamp)
    if sent_at is not None:
        now = now or datetime.now(timezone.utc)
        if (now - sent_at).total_seconds() >= recent_seconds:
            return "stale"
    return None


def is_eligible(event: WhatsappWebhookEvent, now: Optional[datetime] = None) -> bool:
    return ineligibility_reason(event, now) is None


def has_human_takeover(db: Session, conversation_id, window_minutes: int, now: Optional[datetime] = None) -> bool:
    """Someone other than the AI agent wrote to this contact recently."""
    since = (now or datetime.now(timezone.utc)) - timedelta(minutes=window_minutes)
    human_message = (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.direction == "outgoing",
            Message.created_at >= since,
            or_(Message.sender_name.is_(None), Message.sender_name != AI_SENDER_NAME),
        )
        .first()
    )
    return human_message is not None


def resolve_agent(db: Session, session: WhatsappSession) -> Optional[AiChatAgent]:
    """Active agent of the session's tenant: bound to this session or unbound, else any active one."""
    base = db.query(AiChatAgent).filter(
        AiChatAgent.tenant_id == session.tenant_id,
        AiChatAgent.is_active.is_(True),
    )
    agent = (
        base.filter(
            or_(
                AiChatAgent.whatsapp_session_id == str(session.id),
                AiChatAgent.whatsapp_session_id.is_(None),
                AiChatAgent.whatsapp_session_id == DEFAULT_AGENT_SESSION,
            )
        )
        .order_by(case((AiChatAgent.whatsapp_session_id == str(session.id), 0), else_=1), AiChatAgent.created_at)
        .first()
    )
    if agent is None:
        agent = base.order_by(AiChatAgent.created_at).first()
    return agent


def combine_recent_messages(
    db: Session,
    conversation_id,
    fallback_text: str,
    window_seconds: int,
    now: Optional[datetime] = None,
) -> str:
    """Join the distinct incoming texts of the last window, oldest first."""
    since = (now or datetime.now(timezone.utc)) - timedelta(seconds=window_seconds)
    rows = (
        db.query(Message)
        .filter(
            Message.conversation_id == conversation_id,
            Message.direction == "incoming",
            Message.created_at >= since,
        )
        .order_by(Message.created_at.asc())
        .all()
    )
    contents: list[str] = []
    for row in rows:
        text = (row.content or "").strip()
        if text and text not in contents:
            contents.append(text)
    if len(contents) > 1:
        return "\n".join(contents)
    return fallback_text


async def dispatch_auto_response(
    db: Session,
    session: WhatsappSession,
    conversation: Conversation,
    text: str,
    *,
    message_id: str | None = None,
    gateway: Optional[WhatsappGatewayClient] = None,
    provider: Optional[LLMProvider] = None,
    redis_client=None,
    sleep_func=asyncio.sleep,
    now: Optional[datetime] = None,
) -> DispatchOutcome:
    config = _get_auto_reply_settings()
    log = bind_logger("auto_response", session_id=session.id, conversation_id=conversation.id)

    if not config.enabled:
        return DispatchOutcome.skipped("disabled")

    if redis_client is None:
        redis_client = _get_redis(config.redis_url, config.socket_timeout_seconds)

    if await is_rate_limited(session.id, config.rate_limit_per_minute, redis_client):
        log.warning("Auto-reply rate limit reached")
        return DispatchOutcome.skipped("rate_limited")

    if not await should_process_debounced_message(
        conversation_id=conversation.id,
        message_id=message_id,
        inactivity_seconds=config.inactivity_seconds,
        sleep_func=sleep_func,
        redis_client=redis_client,
    ):
        log.info("Auto-reply superseded by a newer message")
        return DispatchOutcome.skipped("superseded")

    if not await acquire_reply_lock(conversation.id, config.reply_debounce_seconds, redis_client):
        log.info("Auto-reply debounced")
        return DispatchOutcome.skipped("debounced")

    if has_human_takeover(db, conversation.id, config.takeover_minutes, now):
        log.info("Human takeover detected, AI stays silent")
        return DispatchOutcome.skipped("human_takeover")

    agent = resolve_agent(db, session)
    if agent is None:
        log.info("No active AI agent for session")
        return DispatchOutcome.skipped("no_agent")

    if not (text or "").strip():
        return DispatchOutcome.skipped("empty_text")

    combined = combine_recent_messages(db, conversation.id, text.strip(), config.combine_window_seconds, now)

    if not await consume_rate_slot(session.id, config.rate_limit_per_minute, redis_client):
        log.warning("Auto-reply rate limit reached")
        return DispatchOutcome.skipped("rate_limited")

    result = generate_reply(db, session.tenant_id, agent, combined, provider=provider)
    if not result.ok:
        log.error("AI reply generation failed", context={"error": result.describe()})
        if result.error_code != "llm_not_configured":
            alert_error("AI reply generation failed", {"conversation_id": conversation.id, "error": result.describe()})
        return DispatchOutcome.failed(result.error_code or "generation_failed")
    reply = result.value

    gateway = gateway or WhatsappGatewayClient()
    response = gateway.send_text(str(session.id), conversation.remote_jid, reply.text)
    if not response.get("success"):
        log.error("Failed to send AI reply", context={"error": response.get("error")})
        alert_error("Failed to send AI reply", {"conversation_id": conversation.id, "error": response.get("error")})
        return DispatchOutcome.failed("send_failed")

    sent_id = extract_sent_message_id(response)
    record_outgoing_reply(db, conversation, reply.text, message_id=sent_id)
    db.commit()

    record_interaction(
        db,
        tenant_id=session.tenant_id,
        conversation_id=conversation.id,
        session_id=session.id,
        agent_id=agent.id,
        user_message=combined,
        ai_response=reply.text,
    )
    db.commit()

    log.info("AI reply sent", context={"source": reply.source, "message_id": sent_id, "agent_id": str(agent.id)})
    return DispatchOutcome(status="replied", reply=reply.text, message_id=sent_id)


async def run_auto_response(session_id: UUID, conversation_id: UUID, text: str, message_id: str | None = None) -> DispatchOutcome:
    """Background entry point: owns its DB session because the request's one is closed by now."""
    db = SessionLocal()
    try:
        session = db.query(WhatsappSession).filter(WhatsappSession.id == session_id).first()
        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if session is None or conversation is None or session.deleted_at is not None:
            return DispatchOutcome.skipped("gone")
        return await dispatch_auto_response(db, session, conversation, text, message_id=message_id)
    except Exception as e:
        db.rollback()
        logger.exception(
            "Auto-reply dispatch crashed",
            extra={"context": {"conversation_id": str(conversation_id), "error": str(e)}},
        )
        alert_error("Auto-reply dispatch crashed", {"conversation_id": conversation_id, "error": str(e)})
        return DispatchOutcome.failed("exception")
    finally:
        db.close()
