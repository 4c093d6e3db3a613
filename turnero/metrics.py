from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict


@dataclass
class BusinessBookingMetrics:
    inbound_messages: int = 0
    bookings_created: int = 0
    booking_conflicts: int = 0
    cancellations: int = 0
    conversation_errors: int = 0


@dataclass
class Metrics:
    inbound_messages: int = 0
    inbound_unknown_business: int = 0
    inbound_failures: int = 0
    conversation_errors: int = 0
    conversation_timeouts: int = 0
    conversation_store_degraded_ops: int = 0
    bookings_created: int = 0
    booking_conflicts: int = 0
    cancellations: int = 0
    messages_sent: int = 0
    transport_errors: int = 0
    reminders_scheduled: int = 0
    reminders_cancelled: int = 0
    reminders_sent: int = 0
    reminders_skipped: int = 0
    reminders_failed: int = 0
    reminder_schedule_errors: int = 0
    background_job_errors: int = 0
    by_business: Dict[str, BusinessBookingMetrics] = field(default_factory=dict)

    def for_business(self, business_id: str) -> BusinessBookingMetrics:
        return self.by_business.setdefault(business_id, BusinessBookingMetrics())

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def reset(self) -> None:
        fresh = Metrics()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))


metrics = Metrics()
