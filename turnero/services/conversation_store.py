from __future__ import annotations

from datetime import datetime
import json
import logging
import time
from typing import Any, Callable, Dict, Protocol

import redis.asyncio as redis_asyncio

from ..config import AppSettings
from ..metrics import metrics
from ..models import (
    ConversationContext,
    ConversationState,
    PendingAppointment,
    TimeSlot,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


def context_to_payload(context: ConversationContext) -> Dict[str, Any]:
    """Serialize a context into the cached JSON record shape."""
    payload: Dict[str, Any] = {
        "state": ConversationState(context.state).value,
        "lastMessageAt": context.last_message_at,
    }
    if context.business_id:
        payload["businessId"] = context.business_id
    if context.customer_id:
        payload["customerId"] = context.customer_id
    if context.selected_service_id:
        payload["selectedServiceId"] = context.selected_service_id
    if context.available_slots:
        payload["availableSlots"] = [
            {
                "start": slot.start.isoformat(),
                "end": slot.end.isoformat(),
                "available": slot.available,
            }
            for slot in context.available_slots
        ]
    if context.pending_appointments:
        payload["pendingAppointments"] = [
            {
                "id": appt.id,
                "startTime": appt.start_time.isoformat(),
                "endTime": appt.end_time.isoformat(),
                "serviceName": appt.service_name,
            }
            for appt in context.pending_appointments
        ]
    return payload


def context_from_payload(data: Dict[str, Any]) -> ConversationContext:
    """Rebuild a context; unknown states fall back to idle."""
    try:
        state = ConversationState(data.get("state", ConversationState.IDLE.value))
    except ValueError:
        logger.warning("conversation_unknown_state", extra={"state": data.get("state")})
        return ConversationContext(last_message_at=data.get("lastMessageAt"))

    slots = [
        TimeSlot(
            start=datetime.fromisoformat(raw["start"]),
            end=datetime.fromisoformat(raw["end"]),
            available=bool(raw.get("available", True)),
        )
        for raw in data.get("availableSlots") or []
    ]
    pending = [
        PendingAppointment(
            id=str(raw["id"]),
            start_time=datetime.fromisoformat(raw["startTime"]),
            end_time=datetime.fromisoformat(raw["endTime"]),
            service_name=raw.get("serviceName"),
        )
        for raw in data.get("pendingAppointments") or []
    ]
    return ConversationContext(
        state=state,
        business_id=data.get("businessId"),
        customer_id=data.get("customerId"),
        selected_service_id=data.get("selectedServiceId"),
        available_slots=slots,
        pending_appointments=pending,
        last_message_at=data.get("lastMessageAt"),
    )


class ConversationStore(Protocol):
    """Per-phone dialogue context with a fixed time-to-live."""

    backend: str

    @property
    def degraded(self) -> bool: ...

    async def get(self, phone: str) -> ConversationContext: ...

    async def set(self, phone: str, context: ConversationContext) -> None: ...

    async def reset(self, phone: str) -> None: ...

    async def is_expired(self, phone: str, max_idle_minutes: int = 30) -> bool: ...


class InMemoryConversationStore:
    """Process-local store; contexts are not shared between instances."""

    backend = "memory"

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        degraded: bool = False,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._degraded = degraded
        self._entries: Dict[str, tuple[float, Dict[str, Any]]] = {}

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _fresh(self) -> ConversationContext:
        return ConversationContext(last_message_at=_now_ms(self._clock))

    async def get(self, phone: str) -> ConversationContext:
        entry = self._entries.get(phone)
        if entry is None:
            return self._fresh()
        expires_at, payload = entry
        if expires_at <= self._clock():
            self._entries.pop(phone, None)
            return self._fresh()
        return context_from_payload(payload)

    async def set(self, phone: str, context: ConversationContext) -> None:
        context.last_message_at = _now_ms(self._clock)
        self._entries[phone] = (
            self._clock() + self._ttl_seconds,
            context_to_payload(context),
        )

    async def reset(self, phone: str) -> None:
        self._entries.pop(phone, None)

    async def is_expired(self, phone: str, max_idle_minutes: int = 30) -> bool:
        context = await self.get(phone)
        return idle_too_long(context, max_idle_minutes, self._clock())


class RedisConversationStore:
    """Conversation store backed by Redis ``SETEX`` keys.

    Any Redis failure is served from the in-process fallback for that call
    and flags the store as degraded until Redis answers again. Contexts
    written while degraded are invisible to other instances.
    """

    backend = "redis"

    def __init__(
        self,
        client: Any,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = "conversation",
        fallback: InMemoryConversationStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix
        self._clock = clock
        self._fallback = fallback or InMemoryConversationStore(
            ttl_seconds=ttl_seconds, clock=clock
        )
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _key(self, phone: str) -> str:
        return f"{self._key_prefix}:{phone}"

    def _mark_degraded(self, operation: str) -> None:
        metrics.conversation_store_degraded_ops += 1
        if not self._degraded:
            logger.warning(
                "conversation_store_degraded",
                exc_info=True,
                extra={"operation": operation, "backend": self.backend},
            )
        self._degraded = True

    def _mark_healthy(self) -> None:
        if self._degraded:
            logger.info("conversation_store_recovered", extra={"backend": self.backend})
        self._degraded = False

    async def get(self, phone: str) -> ConversationContext:
        try:
            raw = await self._client.get(self._key(phone))
        except Exception:
            self._mark_degraded("get")
            return await self._fallback.get(phone)
        self._mark_healthy()
        if not raw:
            return ConversationContext(last_message_at=_now_ms(self._clock))
        try:
            return context_from_payload(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("conversation_payload_invalid", extra={"phone": phone})
            return ConversationContext(last_message_at=_now_ms(self._clock))

    async def set(self, phone: str, context: ConversationContext) -> None:
        context.last_message_at = _now_ms(self._clock)
        payload = json.dumps(context_to_payload(context))
        try:
            await self._client.setex(self._key(phone), self._ttl_seconds, payload)
        except Exception:
            self._mark_degraded("set")
            await self._fallback.set(phone, context)
            return
        self._mark_healthy()

    async def reset(self, phone: str) -> None:
        await self._fallback.reset(phone)
        try:
            await self._client.delete(self._key(phone))
        except Exception:
            self._mark_degraded("reset")
            return
        self._mark_healthy()

    async def is_expired(self, phone: str, max_idle_minutes: int = 30) -> bool:
        context = await self.get(phone)
        return idle_too_long(context, max_idle_minutes, self._clock())

    async def close(self) -> None:
        await self._client.aclose()


def idle_too_long(
    context: ConversationContext, max_idle_minutes: int, now: float
) -> bool:
    """Whether ``context`` sat idle longer than ``max_idle_minutes`` at ``now`` (epoch seconds)."""
    if not context.last_message_at:
        return False
    idle_ms = int(now * 1000) - context.last_message_at
    return idle_ms > max_idle_minutes * 60 * 1000


def create_conversation_store(settings: AppSettings) -> ConversationStore:
    """Pick the conversation store backend once, at startup.

    A configured ``REDIS_URL`` selects Redis even when the backend setting
    is left at "memory" so replicas share dialogue state. If Redis was
    requested but cannot be set up, the in-memory store is returned already
    flagged as degraded.
    """
    cfg = settings.conversation
    backend = cfg.store_backend
    if backend == "memory" and settings.redis_url:
        backend = "redis"
    if backend == "redis":
        if not settings.redis_url:
            logger.warning(
                "conversation_store_redis_url_missing_falling_back",
                extra={"backend": backend},
            )
            return InMemoryConversationStore(ttl_seconds=cfg.ttl_seconds, degraded=True)
        try:
            client = redis_asyncio.from_url(settings.redis_url, decode_responses=True)
        except Exception:
            logger.warning(
                "conversation_store_redis_init_failed_falling_back", exc_info=True
            )
            return InMemoryConversationStore(ttl_seconds=cfg.ttl_seconds, degraded=True)
        return RedisConversationStore(
            client, ttl_seconds=cfg.ttl_seconds, key_prefix=cfg.key_prefix
        )
    return InMemoryConversationStore(ttl_seconds=cfg.ttl_seconds)
