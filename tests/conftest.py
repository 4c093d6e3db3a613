from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta

import pytest

from turnero.config import get_settings
from turnero.metrics import metrics
from turnero.models import Business, Employee, Service, WorkingHours
from turnero.repositories import InMemoryRepository
from turnero.services.availability import AvailabilityEngine
from turnero.services.conversation import ConversationStateMachine
from turnero.services.conversation_store import InMemoryConversationStore
from turnero.services.inbound import InboundMessageHandler
from turnero.services.reminders import InMemoryReminderScheduler, ReminderService
from turnero.services.resolvers import BusinessResolver, CustomerResolver
from turnero.services.transport import StubTransport

BUSINESS_ID = "biz-1"
EMPLOYEE_ID = "emp-1"
BUSINESS_PHONE = "+5491100000000"
CUSTOMER_PHONE = "5491123456789"
TIMEZONE = "America/Argentina/Buenos_Aires"

# Tuesday 2026-10-20, 08:00 in Buenos Aires (UTC-3).
NOW = datetime(2026, 10, 20, 11, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def seed_repository(repo) -> None:
    repo.add_business(
        Business(id=BUSINESS_ID, name="Barbería Centro", phone=BUSINESS_PHONE, timezone=TIMEZONE)
    )
    repo.add_employee(Employee(id=EMPLOYEE_ID, business_id=BUSINESS_ID, name="Ana"))
    repo.add_service(
        Service(
            id="svc-cut",
            business_id=BUSINESS_ID,
            name="Corte de pelo",
            duration_minutes=30,
            price=5000,
        )
    )
    repo.add_service(
        Service(
            id="svc-dye",
            business_id=BUSINESS_ID,
            name="Tintura",
            duration_minutes=60,
            price=12000,
        )
    )
    for dow in range(7):
        repo.set_working_hours(
            WorkingHours(
                employee_id=EMPLOYEE_ID,
                day_of_week=dow,
                start_time=time(9, 0),
                end_time=time(18, 0),
            )
        )


@dataclass
class Booking:
    clock: FakeClock
    repo: InMemoryRepository
    store: InMemoryConversationStore
    transport: StubTransport
    scheduler: InMemoryReminderScheduler
    reminders: ReminderService
    engine: AvailabilityEngine
    machine: ConversationStateMachine
    inbound: InboundMessageHandler


@pytest.fixture(autouse=True)
def _isolate_global_state(monkeypatch):
    for var in ("REDIS_URL", "WHATSAPP_PROVIDER", "PHONE_COUNTRY_CODE", "PHONE_MOBILE_INDICATOR"):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    metrics.reset()
    yield
    get_settings.cache_clear()
    metrics.reset()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def repo() -> InMemoryRepository:
    repository = InMemoryRepository()
    seed_repository(repository)
    return repository


@pytest.fixture
def booking(clock, repo) -> Booking:
    transport = StubTransport()
    scheduler = InMemoryReminderScheduler()
    store = InMemoryConversationStore(clock=clock.timestamp)
    reminders = ReminderService(repo, scheduler, transport, clock=clock)
    engine = AvailabilityEngine(repo, reminders=reminders)
    machine = ConversationStateMachine(repo, engine, store, transport, clock=clock)
    inbound = InboundMessageHandler(
        BusinessResolver(repo), CustomerResolver(repo), machine
    )
    return Booking(
        clock=clock,
        repo=repo,
        store=store,
        transport=transport,
        scheduler=scheduler,
        reminders=reminders,
        engine=engine,
        machine=machine,
        inbound=inbound,
    )
