import asyncio
from datetime import UTC, datetime, timedelta
import json

from turnero.config import AppSettings, ConversationSettings
from turnero.metrics import metrics
from turnero.models import ConversationContext, ConversationState, PendingAppointment, TimeSlot
from turnero.services import conversation_store
from turnero.services.conversation_store import (
    InMemoryConversationStore,
    RedisConversationStore,
    context_from_payload,
    context_to_payload,
    create_conversation_store,
)

from .conftest import NOW, FakeClock

PHONE = "5491123456789"


def run(coro):
    return asyncio.run(coro)


class DummyRedisClient:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def aclose(self) -> None:
        self.closed = True


class FlakyRedisClient(DummyRedisClient):
    def __init__(self) -> None:
        super().__init__()
        self.down = True

    async def get(self, key: str) -> str | None:
        if self.down:
            raise ConnectionError("redis down")
        return await super().get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        if self.down:
            raise ConnectionError("redis down")
        await super().setex(key, ttl, value)


def _context() -> ConversationContext:
    start = datetime(2026, 10, 20, 12, 0, tzinfo=UTC)
    return ConversationContext(
        state=ConversationState.AWAITING_SLOT,
        business_id="biz-1",
        customer_id="cust-1",
        selected_service_id="svc-cut",
        available_slots=[
            TimeSlot(start=start, end=start + timedelta(minutes=30)),
            TimeSlot(start=start + timedelta(minutes=30), end=start + timedelta(hours=1)),
        ],
    )


def test_payload_uses_camel_case_keys() -> None:
    payload = context_to_payload(_context())
    assert payload["state"] == "awaiting_slot"
    assert payload["businessId"] == "biz-1"
    assert payload["selectedServiceId"] == "svc-cut"
    assert payload["availableSlots"][0]["start"].startswith("2026-10-20T12:00")
    assert "pendingAppointments" not in payload

    restored = context_from_payload(json.loads(json.dumps(payload)))
    assert restored.available_slots == _context().available_slots


def test_pending_appointments_survive_serialization() -> None:
    start = datetime(2026, 10, 21, 13, 0, tzinfo=UTC)
    context = ConversationContext(
        state=ConversationState.AWAITING_CANCELLATION,
        pending_appointments=[
            PendingAppointment(
                id="a-1",
                start_time=start,
                end_time=start + timedelta(minutes=30),
                service_name="Corte de pelo",
            )
        ],
    )
    restored = context_from_payload(context_to_payload(context))
    assert restored.pending_appointments == context.pending_appointments


def test_unknown_state_falls_back_to_idle() -> None:
    restored = context_from_payload({"state": "awaiting_payment", "lastMessageAt": 1})
    assert restored.state == ConversationState.IDLE


def test_inmemory_store_defaults_to_idle_and_honors_ttl() -> None:
    clock = FakeClock(NOW)
    store = InMemoryConversationStore(ttl_seconds=3600, clock=clock.timestamp)

    fresh = run(store.get(PHONE))
    assert fresh.state == ConversationState.IDLE

    run(store.set(PHONE, _context()))
    loaded = run(store.get(PHONE))
    assert loaded.state == ConversationState.AWAITING_SLOT
    assert loaded.last_message_at == int(NOW.timestamp() * 1000)

    clock.advance(seconds=3601)
    assert run(store.get(PHONE)).state == ConversationState.IDLE


def test_inmemory_store_reset_and_idle_expiry() -> None:
    clock = FakeClock(NOW)
    store = InMemoryConversationStore(clock=clock.timestamp)
    run(store.set(PHONE, _context()))

    clock.advance(minutes=10)
    assert run(store.is_expired(PHONE, 30)) is False
    clock.advance(minutes=21)
    assert run(store.is_expired(PHONE, 30)) is True

    run(store.reset(PHONE))
    assert run(store.get(PHONE)).state == ConversationState.IDLE


def test_redis_store_uses_setex_with_ttl() -> None:
    client = DummyRedisClient()
    store = RedisConversationStore(client, ttl_seconds=3600)

    run(store.set(PHONE, _context()))
    assert client.ttls[f"conversation:{PHONE}"] == 3600
    stored = json.loads(client.data[f"conversation:{PHONE}"])
    assert stored["state"] == "awaiting_slot"

    assert run(store.get(PHONE)).selected_service_id == "svc-cut"
    run(store.reset(PHONE))
    assert f"conversation:{PHONE}" not in client.data
    assert store.degraded is False

    run(store.close())
    assert client.closed is True


def test_redis_store_degrades_to_local_map_and_recovers() -> None:
    client = FlakyRedisClient()
    store = RedisConversationStore(client)

    run(store.set(PHONE, _context()))
    assert store.degraded is True
    assert metrics.conversation_store_degraded_ops == 1
    # Served from the in-process fallback while Redis is down.
    assert run(store.get(PHONE)).state == ConversationState.AWAITING_SLOT
    assert metrics.conversation_store_degraded_ops == 2

    client.down = False
    run(store.set(PHONE, _context()))
    assert store.degraded is False
    assert f"conversation:{PHONE}" in client.data


def test_redis_store_ignores_corrupt_payload() -> None:
    client = DummyRedisClient()
    client.data[f"conversation:{PHONE}"] = "{not json"
    store = RedisConversationStore(client)

    assert run(store.get(PHONE)).state == ConversationState.IDLE


def test_factory_defaults_to_memory() -> None:
    store = create_conversation_store(AppSettings())
    assert isinstance(store, InMemoryConversationStore)
    assert store.degraded is False


def test_factory_uses_redis_when_url_configured(monkeypatch) -> None:
    class DummyRedisModule:
        def __init__(self) -> None:
            self.last_url: str | None = None

        def from_url(self, url: str, **kwargs) -> DummyRedisClient:
            self.last_url = url
            return DummyRedisClient()

    module = DummyRedisModule()
    monkeypatch.setattr(conversation_store, "redis_asyncio", module)

    store = create_conversation_store(AppSettings(redis_url="redis://test-redis:6379/1"))
    assert isinstance(store, RedisConversationStore)
    assert module.last_url == "redis://test-redis:6379/1"


def test_factory_falls_back_degraded_when_redis_init_fails(monkeypatch) -> None:
    class FailingRedisModule:
        def from_url(self, url: str, **kwargs):
            raise RuntimeError("redis down")

    monkeypatch.setattr(conversation_store, "redis_asyncio", FailingRedisModule())

    store = create_conversation_store(AppSettings(redis_url="redis://test-redis:6379/1"))
    assert isinstance(store, InMemoryConversationStore)
    assert store.degraded is True


def test_factory_redis_backend_without_url_is_degraded() -> None:
    settings = AppSettings(conversation=ConversationSettings(store_backend="redis"))
    store = create_conversation_store(settings)
    assert isinstance(store, InMemoryConversationStore)
    assert store.degraded is True
