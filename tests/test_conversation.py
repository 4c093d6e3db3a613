import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from turnero.errors import ConflictError
from turnero.metrics import metrics
from turnero.models import AppointmentStatus, ConversationState, Customer, Service
from turnero.repositories import InMemoryRepository
from turnero.services import messages
from turnero.services.availability import AvailabilityEngine
from turnero.services.conversation import ConversationStateMachine, parse_selection
from turnero.services.conversation_store import InMemoryConversationStore
from turnero.services.transport import StubTransport

from .conftest import BUSINESS_ID, CUSTOMER_PHONE, EMPLOYEE_ID, seed_repository


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def customer(booking) -> Customer:
    return booking.repo.add_customer(
        Customer(id="cust-1", business_id=BUSINESS_ID, name="Juan", phone="+5491123456789")
    )


@pytest.fixture
def business(booking):
    return run(booking.repo.get_business(BUSINESS_ID))


def say(booking, customer, business, text):
    return run(booking.machine.handle_message(CUSTOMER_PHONE, text, customer, business))


def state_of(booking) -> ConversationState:
    return run(booking.store.get(CUSTOMER_PHONE)).state


def last_reply(booking) -> str:
    return booking.transport.sent_messages[-1].body


def test_parse_selection() -> None:
    assert parse_selection("1", 3) == 0
    assert parse_selection(" 3 ", 3) == 2
    assert parse_selection("0", 3) is None
    assert parse_selection("4", 3) is None
    assert parse_selection("uno", 3) is None
    assert parse_selection("-1", 3) is None
    assert parse_selection("²", 3) is None
    assert parse_selection("١", 3) is None
    assert parse_selection(None, 3) is None


def test_every_state_has_a_handler(booking) -> None:
    assert set(booking.machine._handlers) == set(ConversationState)


def test_greeting_shows_menu(booking, customer, business) -> None:
    say(booking, customer, business, "hola")
    assert last_reply(booking) == messages.welcome("Barbería Centro")
    assert state_of(booking) == ConversationState.IDLE


def test_availability_keyword_gets_hint(booking, customer, business) -> None:
    say(booking, customer, business, "¿Qué horarios tienen?")
    assert last_reply(booking) == messages.AVAILABILITY_HINT
    assert state_of(booking) == ConversationState.IDLE


def test_book_first_service_first_slot(booking, customer, business) -> None:
    say(booking, customer, business, "Quiero un turno")
    assert state_of(booking) == ConversationState.AWAITING_SERVICE
    menu = last_reply(booking)
    assert "1. Corte de pelo - $5000 (30 min)" in menu
    assert "2. Tintura - $12000 (60 min)" in menu

    say(booking, customer, business, "1")
    context = run(booking.store.get(CUSTOMER_PHONE))
    assert context.state == ConversationState.AWAITING_SLOT
    assert context.selected_service_id == "svc-cut"
    assert len(context.available_slots) == 5
    assert "1. 09:00" in last_reply(booking)

    say(booking, customer, business, "1")
    assert state_of(booking) == ConversationState.IDLE

    appointments = run(booking.repo.list_active_appointments(EMPLOYEE_ID))
    assert len(appointments) == 1
    appt = appointments[0]
    assert appt.status == AppointmentStatus.CONFIRMED
    assert appt.customer_id == "cust-1"
    assert appt.start_time == datetime(2026, 10, 20, 12, 0, tzinfo=UTC)
    assert appt.end_time == appt.start_time + timedelta(minutes=30)

    confirmation = last_reply(booking)
    assert "09:00" in confirmation
    assert "Corte de pelo" in confirmation
    assert "Ana" in confirmation
    assert all(m.to == CUSTOMER_PHONE for m in booking.transport.sent_messages)


def test_invalid_service_number_keeps_state(booking, customer, business) -> None:
    say(booking, customer, business, "turno")
    say(booking, customer, business, "999")

    context = run(booking.store.get(CUSTOMER_PHONE))
    assert last_reply(booking) == messages.INVALID_SERVICE
    assert context.state == ConversationState.AWAITING_SERVICE
    assert context.selected_service_id is None


def test_non_numeric_service_reply_reprompts(booking, customer, business) -> None:
    say(booking, customer, business, "turno")
    say(booking, customer, business, "el corte")
    assert last_reply(booking) == messages.SERVICE_NUMBER_PROMPT
    assert state_of(booking) == ConversationState.AWAITING_SERVICE


def test_invalid_slot_number_keeps_state(booking, customer, business) -> None:
    say(booking, customer, business, "turno")
    say(booking, customer, business, "1")
    say(booking, customer, business, "6")
    assert last_reply(booking) == messages.INVALID_SLOT
    assert state_of(booking) == ConversationState.AWAITING_SLOT


@pytest.mark.parametrize("reply", ["²", "³", "①"])
def test_unicode_digit_service_reply_reprompts(booking, customer, business, reply) -> None:
    say(booking, customer, business, "turno")
    result = say(booking, customer, business, reply)

    assert result.replies == [messages.SERVICE_NUMBER_PROMPT]
    assert state_of(booking) == ConversationState.AWAITING_SERVICE
    assert metrics.conversation_errors == 0


@pytest.mark.parametrize("reply", ["²", "١"])
def test_unicode_digit_slot_reply_keeps_state(booking, customer, business, reply) -> None:
    say(booking, customer, business, "turno")
    say(booking, customer, business, "1")
    say(booking, customer, business, reply)

    assert last_reply(booking) == messages.INVALID_SLOT
    assert state_of(booking) == ConversationState.AWAITING_SLOT
    assert metrics.conversation_errors == 0


def test_no_services_stays_idle(clock, customer) -> None:
    repo = InMemoryRepository()
    seed_repository(repo)
    for service_id in ("svc-cut", "svc-dye"):
        service = run(repo.get_service(service_id))
        repo.add_service(
            Service(
                id=service.id,
                business_id=service.business_id,
                name=service.name,
                duration_minutes=service.duration_minutes,
                is_active=False,
            )
        )
    transport = StubTransport()
    store = InMemoryConversationStore(clock=clock.timestamp)
    machine = ConversationStateMachine(
        repo, AvailabilityEngine(repo), store, transport, clock=clock
    )
    business = run(repo.get_business(BUSINESS_ID))

    run(machine.handle_message(CUSTOMER_PHONE, "agendar", customer, business))
    assert transport.sent_messages[-1].body == messages.NO_SERVICES
    assert run(store.get(CUSTOMER_PHONE)).state == ConversationState.IDLE


def test_no_slots_left_today_resets(booking, customer, business) -> None:
    booking.clock.now = datetime(2026, 10, 20, 20, 50, tzinfo=UTC)  # 17:50 local
    say(booking, customer, business, "reserva")
    say(booking, customer, business, "1")

    assert last_reply(booking) == messages.no_slots_today("Corte de pelo")
    assert state_of(booking) == ConversationState.IDLE


def test_cancel_upcoming_appointment(booking, customer, business) -> None:
    tomorrow = datetime(2026, 10, 21, 15, 0, tzinfo=UTC)
    appt = run(
        booking.engine.create_appointment(
            BUSINESS_ID, EMPLOYEE_ID, customer.id, "svc-cut", tomorrow,
            status=AppointmentStatus.CONFIRMED,
        )
    )
    assert run(booking.scheduler.get(appt.id)) is not None

    say(booking, customer, business, "Quiero cancelar turno")
    context = run(booking.store.get(CUSTOMER_PHONE))
    assert context.state == ConversationState.AWAITING_CANCELLATION
    assert [p.id for p in context.pending_appointments] == [appt.id]
    assert "1. Corte de pelo - 21 de octubre, 12:00" in last_reply(booking)

    say(booking, customer, business, "1")
    assert state_of(booking) == ConversationState.IDLE
    assert "ha sido cancelado exitosamente" in last_reply(booking)
    assert run(booking.repo.get_appointment(appt.id)).status == AppointmentStatus.CANCELLED
    assert run(booking.scheduler.get(appt.id)) is None


def test_cancel_without_appointments(booking, customer, business) -> None:
    say(booking, customer, business, "cancelar")
    assert last_reply(booking) == messages.NO_UPCOMING_APPOINTMENTS
    assert state_of(booking) == ConversationState.IDLE


def test_invalid_cancellation_choice_keeps_state(booking, customer, business) -> None:
    run(
        booking.engine.create_appointment(
            BUSINESS_ID, EMPLOYEE_ID, customer.id, "svc-cut",
            datetime(2026, 10, 21, 15, 0, tzinfo=UTC),
        )
    )
    say(booking, customer, business, "cancelar")
    say(booking, customer, business, "2")
    assert last_reply(booking) == messages.INVALID_APPOINTMENT
    assert state_of(booking) == ConversationState.AWAITING_CANCELLATION


def test_slot_taken_meanwhile_gets_dedicated_reply(booking, customer, business) -> None:
    say(booking, customer, business, "turno")
    say(booking, customer, business, "1")
    run(
        booking.engine.create_appointment(
            BUSINESS_ID, EMPLOYEE_ID, "someone-else", "svc-cut",
            datetime(2026, 10, 20, 12, 0, tzinfo=UTC),
        )
    )

    say(booking, customer, business, "1")
    assert last_reply(booking) == messages.SLOT_TAKEN
    assert state_of(booking) == ConversationState.IDLE
    assert metrics.booking_conflicts == 1


def test_step_failure_apologizes_and_resets(booking, customer, business, monkeypatch) -> None:
    async def boom(*args, **kwargs):
        raise RuntimeError("calendar exploded")

    say(booking, customer, business, "turno")
    monkeypatch.setattr(booking.engine, "find_open_slots", boom)

    result = say(booking, customer, business, "1")
    assert result.replies == [messages.GENERIC_APOLOGY]
    assert last_reply(booking) == messages.GENERIC_APOLOGY
    assert state_of(booking) == ConversationState.IDLE
    assert metrics.conversation_errors == 1
    assert metrics.for_business(BUSINESS_ID).conversation_errors == 1


def test_transport_failure_never_escapes(booking, customer, business, monkeypatch) -> None:
    async def broken_send(to, body):
        raise ConflictError("nope")

    monkeypatch.setattr(booking.transport, "send_message", broken_send)
    result = say(booking, customer, business, "turno")

    assert result.replies == [messages.GENERIC_APOLOGY]
    assert state_of(booking) == ConversationState.IDLE


def test_abandoned_conversation_restarts_from_idle(booking, customer, business) -> None:
    say(booking, customer, business, "turno")
    booking.clock.advance(minutes=31)

    say(booking, customer, business, "1")
    assert last_reply(booking) == messages.welcome("Barbería Centro")
    assert state_of(booking) == ConversationState.IDLE
    assert metrics.conversation_timeouts == 1


def test_recent_conversation_is_not_timed_out(booking, customer, business) -> None:
    say(booking, customer, business, "turno")
    booking.clock.advance(minutes=29)

    say(booking, customer, business, "2")
    assert state_of(booking) == ConversationState.AWAITING_SLOT
    assert metrics.conversation_timeouts == 0


class CountingStore(InMemoryConversationStore):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.gets = 0

    async def get(self, phone):
        self.gets += 1
        return await super().get(phone)

    async def is_expired(self, phone, max_idle_minutes=30):
        raise AssertionError("idleness is read from the loaded context")


def test_each_message_loads_the_context_once(clock, repo, customer, business) -> None:
    store = CountingStore(clock=clock.timestamp)
    machine = ConversationStateMachine(
        repo, AvailabilityEngine(repo), store, StubTransport(), clock=clock
    )

    run(machine.handle_message(CUSTOMER_PHONE, "turno", customer, business))
    clock.advance(minutes=31)
    run(machine.handle_message(CUSTOMER_PHONE, "1", customer, business))

    assert store.gets == 2
    assert metrics.conversation_timeouts == 1
    assert metrics.conversation_errors == 0
