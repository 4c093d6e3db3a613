from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
import re
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import ConflictError, InternalError, NotFoundError
from ..metrics import metrics
from ..models import (
    AppointmentStatus,
    Business,
    ConversationContext,
    ConversationState,
    Customer,
    PendingAppointment,
)
from ..repositories import Repository
from . import messages
from .availability import AvailabilityEngine
from .conversation_store import ConversationStore, idle_too_long
from .transport import MessageTransport

logger = logging.getLogger(__name__)

BOOKING_KEYWORDS = ("turno", "reserva", "agendar")
CANCEL_KEYWORDS = ("cancelar",)
AVAILABILITY_KEYWORDS = ("horarios", "disponibilidad")

_MENU_NUMBER = re.compile(r"[0-9]+")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _contains_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def is_menu_number(text: str) -> bool:
    # ASCII digits only; int() rejects superscripts that isdigit() accepts.
    return _MENU_NUMBER.fullmatch((text or "").strip()) is not None


def parse_selection(text: str, count: int) -> Optional[int]:
    """Zero-based index for a 1-indexed menu reply, or None when invalid."""
    if not is_menu_number(text):
        return None
    choice = int(text.strip())
    if 1 <= choice <= count:
        return choice - 1
    return None


@dataclass
class Turn:
    """Who is talking to which business, and when."""

    phone: str
    customer: Customer
    business: Business
    now: datetime


@dataclass
class StepResult:
    context: ConversationContext
    replies: List[str] = field(default_factory=list)


def _back_to_idle(context: ConversationContext, *replies: str) -> StepResult:
    fresh = ConversationContext(
        business_id=context.business_id, customer_id=context.customer_id
    )
    return StepResult(fresh, list(replies))


class StateHandler:
    state: ConversationState

    async def handle(
        self, text: str, context: ConversationContext, turn: Turn
    ) -> StepResult:
        raise NotImplementedError


class IdleHandler(StateHandler):
    state = ConversationState.IDLE

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def handle(self, text, context, turn):
        lowered = text.lower()
        if _contains_any(lowered, CANCEL_KEYWORDS):
            return await self._start_cancellation(context, turn)
        if _contains_any(lowered, BOOKING_KEYWORDS):
            return await self._start_booking(context, turn)
        if _contains_any(lowered, AVAILABILITY_KEYWORDS):
            return StepResult(context, [messages.AVAILABILITY_HINT])
        return StepResult(context, [messages.welcome(turn.business.name)])

    async def _start_booking(self, context, turn):
        services = await self._repository.list_active_services(turn.business.id)
        if not services:
            return StepResult(context, [messages.NO_SERVICES])
        context.state = ConversationState.AWAITING_SERVICE
        return StepResult(context, [messages.service_menu(services)])

    async def _start_cancellation(self, context, turn):
        upcoming = await self._repository.list_customer_upcoming_appointments(
            turn.customer.id, turn.business.id, turn.now
        )
        if not upcoming:
            return StepResult(context, [messages.NO_UPCOMING_APPOINTMENTS])
        context.pending_appointments = [
            PendingAppointment(
                id=appt.id,
                start_time=appt.start_time,
                end_time=appt.end_time,
                service_name=appt.service_name,
            )
            for appt in upcoming
        ]
        context.state = ConversationState.AWAITING_CANCELLATION
        return StepResult(
            context,
            [
                messages.cancellation_menu(
                    context.pending_appointments, turn.business.timezone
                )
            ],
        )


class AwaitingServiceHandler(StateHandler):
    state = ConversationState.AWAITING_SERVICE

    def __init__(
        self, repository: Repository, engine: AvailabilityEngine, max_slots: int = 5
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._max_slots = max_slots

    async def handle(self, text, context, turn):
        if not is_menu_number(text):
            return StepResult(context, [messages.SERVICE_NUMBER_PROMPT])
        # Listing order is stable, so the index matches the menu already sent.
        services = await self._repository.list_active_services(turn.business.id)
        index = parse_selection(text, len(services))
        if index is None:
            return StepResult(context, [messages.INVALID_SERVICE])

        service = services[index]
        context.selected_service_id = service.id
        slots = await self._engine.find_open_slots(
            turn.business, service, turn.now, limit=self._max_slots
        )
        if not slots:
            return _back_to_idle(context, messages.no_slots_today(service.name))
        context.available_slots = list(slots)
        context.state = ConversationState.AWAITING_SLOT
        return StepResult(
            context,
            [messages.slot_menu(service.name, slots, turn.business.timezone)],
        )


class AwaitingSlotHandler(StateHandler):
    state = ConversationState.AWAITING_SLOT

    def __init__(self, repository: Repository, engine: AvailabilityEngine) -> None:
        self._repository = repository
        self._engine = engine

    async def handle(self, text, context, turn):
        index = parse_selection(text, len(context.available_slots))
        if index is None:
            return StepResult(context, [messages.INVALID_SLOT])
        if not context.selected_service_id:
            raise InternalError("Slot selected without a service")

        slot = context.available_slots[index]
        service = await self._repository.get_service(context.selected_service_id)
        if service is None:
            raise NotFoundError("Service", context.selected_service_id)
        employee = await self._engine.resolve_employee(turn.business.id)
        try:
            appointment = await self._engine.create_appointment(
                business_id=turn.business.id,
                employee_id=employee.id,
                customer_id=turn.customer.id,
                service_id=service.id,
                start_time=slot.start,
                status=AppointmentStatus.CONFIRMED,
            )
        except ConflictError:
            logger.info(
                "booking_slot_taken",
                extra={"business_id": turn.business.id, "start": slot.start.isoformat()},
            )
            return _back_to_idle(context, messages.SLOT_TAKEN)

        return _back_to_idle(
            context,
            messages.booking_confirmation(
                turn.customer.name,
                service.name,
                employee.name,
                appointment.start_time,
                turn.business,
            ),
        )


class AwaitingCancellationHandler(StateHandler):
    state = ConversationState.AWAITING_CANCELLATION

    def __init__(self, engine: AvailabilityEngine) -> None:
        self._engine = engine

    async def handle(self, text, context, turn):
        index = parse_selection(text, len(context.pending_appointments))
        if index is None:
            return StepResult(context, [messages.INVALID_APPOINTMENT])
        pending = context.pending_appointments[index]
        await self._engine.cancel_appointment(pending.id, turn.business.id)
        return _back_to_idle(
            context,
            messages.cancellation_confirmed(pending.start_time, turn.business.timezone),
        )


class ConversationStateMachine:
    """Drives one WhatsApp dialogue turn for a (business, customer) pair.

    Each state has exactly one handler. ``handle_message`` is the error
    boundary: whatever goes wrong inside a step, the customer gets an
    apology and the conversation starts over from idle.
    """

    def __init__(
        self,
        repository: Repository,
        engine: AvailabilityEngine,
        store: ConversationStore,
        transport: MessageTransport,
        idle_minutes: int = 30,
        max_slots: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._transport = transport
        self._idle_minutes = idle_minutes
        self._clock = clock
        handlers: Sequence[StateHandler] = (
            IdleHandler(repository),
            AwaitingServiceHandler(repository, engine, max_slots=max_slots),
            AwaitingSlotHandler(repository, engine),
            AwaitingCancellationHandler(engine),
        )
        self._handlers: Dict[ConversationState, StateHandler] = {}
        for handler in handlers:
            if handler.state in self._handlers:
                raise RuntimeError(f"Duplicate handler for state {handler.state.value}")
            self._handlers[handler.state] = handler
        missing = set(ConversationState) - set(self._handlers)
        if missing:
            names = ", ".join(sorted(state.value for state in missing))
            raise RuntimeError(f"No conversation handler for: {names}")

    @property
    def store(self) -> ConversationStore:
        return self._store

    async def _load_context(
        self, phone: str, business: Business, now: datetime
    ) -> ConversationContext:
        context = await self._store.get(phone)
        if context.state == ConversationState.IDLE:
            return context
        if context.business_id and context.business_id != business.id:
            logger.info(
                "conversation_business_switched",
                extra={"phone": phone, "business_id": business.id},
            )
            return ConversationContext()
        if idle_too_long(context, self._idle_minutes, now.timestamp()):
            metrics.conversation_timeouts += 1
            logger.info(
                "conversation_timed_out",
                extra={"phone": phone, "state": context.state.value},
            )
            return ConversationContext()
        return context

    async def handle_message(
        self, phone: str, text: str, customer: Customer, business: Business
    ) -> StepResult:
        try:
            now = self._clock()
            context = await self._load_context(phone, business, now)
            context.business_id = business.id
            context.customer_id = customer.id
            turn = Turn(phone=phone, customer=customer, business=business, now=now)
            state = context.state
            result = await self._handlers[state].handle(text or "", context, turn)

            if result.context.state == ConversationState.IDLE:
                await self._store.reset(phone)
            else:
                await self._store.set(phone, result.context)
            for reply in result.replies:
                await self._transport.send_message(phone, reply)
            logger.info(
                "conversation_step",
                extra={
                    "phone": phone,
                    "business_id": business.id,
                    "from_state": state.value,
                    "to_state": result.context.state.value,
                },
            )
            return result
        except Exception:
            metrics.conversation_errors += 1
            metrics.for_business(business.id).conversation_errors += 1
            logger.exception(
                "conversation_step_failed",
                extra={"phone": phone, "business_id": business.id},
            )
            return await self._recover(phone, business)

    async def _recover(self, phone: str, business: Business) -> StepResult:
        try:
            await self._transport.send_message(phone, messages.GENERIC_APOLOGY)
        except Exception:
            logger.warning("conversation_apology_failed", extra={"phone": phone})
        try:
            await self._store.reset(phone)
        except Exception:
            logger.warning("conversation_reset_failed", extra={"phone": phone})
        return StepResult(
            ConversationContext(business_id=business.id), [messages.GENERIC_APOLOGY]
        )
