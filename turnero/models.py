from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, time
from enum import Enum
from typing import List, Optional
from uuid import uuid4


DEFAULT_TIMEZONE = "America/Argentina/Buenos_Aires"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


ACTIVE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})
REMINDER_TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED}
)


class ConversationState(str, Enum):
    IDLE = "idle"
    AWAITING_SERVICE = "awaiting_service"
    AWAITING_SLOT = "awaiting_slot"
    AWAITING_CANCELLATION = "awaiting_cancellation"


@dataclass
class Business:
    id: str
    name: str
    phone: str
    timezone: str = DEFAULT_TIMEZONE
    is_active: bool = True


@dataclass
class Employee:
    id: str
    business_id: str
    name: str
    is_active: bool = True


@dataclass
class Service:
    id: str
    business_id: str
    name: str
    duration_minutes: int
    price: float = 0.0
    is_active: bool = True


@dataclass
class Customer:
    id: str
    business_id: str
    name: str
    phone: str
    email: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class WorkingHours:
    employee_id: str
    day_of_week: int  # 0 = Sunday ... 6 = Saturday
    start_time: time
    end_time: time
    is_available: bool = True


@dataclass(frozen=True)
class TimeSlot:
    start: datetime
    end: datetime
    available: bool = True

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return intervals_overlap(self.start, self.end, start, end)


@dataclass
class Appointment:
    id: str
    business_id: str
    employee_id: str
    customer_id: str
    service_id: str
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: Optional[str] = None
    reminder_sent: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    # Display-only, filled in by listings that join the service.
    service_name: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass
class PendingAppointment:
    """Cancellable appointment as presented to the customer."""

    id: str
    start_time: datetime
    end_time: datetime
    service_name: Optional[str] = None


@dataclass
class ConversationContext:
    state: ConversationState = ConversationState.IDLE
    business_id: Optional[str] = None
    customer_id: Optional[str] = None
    selected_service_id: Optional[str] = None
    available_slots: List[TimeSlot] = field(default_factory=list)
    pending_appointments: List[PendingAppointment] = field(default_factory=list)
    last_message_at: Optional[int] = None  # epoch milliseconds


def intervals_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Half-open overlap test for ``[a_start, a_end)`` and ``[b_start, b_end)``."""
    return a_start < b_end and b_start < a_end


def new_id() -> str:
    return str(uuid4())
