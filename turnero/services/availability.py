from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
import logging
from typing import List, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

from ..errors import ConflictError, NotFoundError, ValidationError
from ..metrics import metrics
from ..models import (
    DEFAULT_TIMEZONE,
    REMINDER_TERMINAL_STATUSES,
    Appointment,
    AppointmentStatus,
    Business,
    Employee,
    Service,
    TimeSlot,
    WorkingHours,
    intervals_overlap,
    new_id,
)
from ..repositories import Repository

logger = logging.getLogger(__name__)

DEFAULT_SLOT_INTERVAL_MINUTES = 30


class ReminderHooks(Protocol):
    async def schedule_for_appointment(self, appointment: Appointment) -> None: ...

    async def cancel_for_appointment(self, appointment_id: str) -> None: ...


def _zone(timezone: str | ZoneInfo | None) -> ZoneInfo:
    if isinstance(timezone, ZoneInfo):
        return timezone
    return ZoneInfo(timezone or DEFAULT_TIMEZONE)


def day_of_week(day: date) -> int:
    """Weekday index with 0 = Sunday, as stored in working hours."""
    return (day.weekday() + 1) % 7


def local_day_bounds(day: date, timezone: str | ZoneInfo) -> tuple[datetime, datetime]:
    """UTC instants for local midnight of ``day`` and of the following day."""
    tz = _zone(timezone)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


def generate_slots(
    day: date,
    working_hours: Optional[WorkingHours],
    duration_minutes: int,
    appointments: Sequence[Appointment],
    timezone: str | ZoneInfo,
    interval_minutes: int = DEFAULT_SLOT_INTERVAL_MINUTES,
) -> List[TimeSlot]:
    """Candidate slots for one employee on ``day``.

    Slots start at the opening time and advance by ``interval_minutes``; a
    slot is emitted only when it ends by closing time and is marked
    unavailable iff it intersects an active appointment. Pure function of
    its inputs; returned instants are UTC.
    """
    if working_hours is None or not working_hours.is_available:
        return []
    if duration_minutes <= 0:
        raise ValidationError("duration_minutes must be positive")
    if interval_minutes <= 0:
        raise ValidationError("interval_minutes must be positive")

    tz = _zone(timezone)
    day_open = datetime.combine(day, working_hours.start_time, tzinfo=tz).astimezone(UTC)
    day_close = datetime.combine(day, working_hours.end_time, tzinfo=tz).astimezone(UTC)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=interval_minutes)

    busy = [(a.start_time, a.end_time) for a in appointments if a.is_active]

    slots: List[TimeSlot] = []
    current = day_open
    while current < day_close:
        slot_end = current + duration
        if slot_end > day_close:
            break
        occupied = any(
            intervals_overlap(current, slot_end, busy_start, busy_end)
            for busy_start, busy_end in busy
        )
        slots.append(TimeSlot(start=current, end=slot_end, available=not occupied))
        current += step
    return slots


class AvailabilityEngine:
    """Duration lookup, conflict checks, slot generation and booking writes."""

    def __init__(
        self,
        repository: Repository,
        reminders: ReminderHooks | None = None,
        slot_interval_minutes: int = DEFAULT_SLOT_INTERVAL_MINUTES,
        default_timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self._repository = repository
        self._reminders = reminders
        self._slot_interval_minutes = slot_interval_minutes
        self._default_timezone = default_timezone

    def _timezone_for(self, business: Business | None) -> ZoneInfo:
        if business is not None and business.timezone:
            return _zone(business.timezone)
        return _zone(self._default_timezone)

    async def get_service_duration(self, service_id: str) -> int:
        service = await self._repository.get_service(service_id)
        if service is None:
            raise NotFoundError("Service", service_id)
        return int(service.duration_minutes)

    async def check_availability(
        self, employee_id: str, start: datetime, end: datetime
    ) -> bool:
        conflicts = await self._repository.list_active_appointments(
            employee_id, start, end
        )
        return not any(
            intervals_overlap(a.start_time, a.end_time, start, end) for a in conflicts
        )

    async def get_available_slots(
        self,
        business_id: str,
        employee_id: str,
        day: date,
        service_id: str,
    ) -> List[TimeSlot]:
        business = await self._repository.get_business(business_id)
        tz = self._timezone_for(business)
        working_hours = await self._repository.get_working_hours(
            employee_id, day_of_week(day)
        )
        if working_hours is None or not working_hours.is_available:
            return []
        duration = await self.get_service_duration(service_id)
        day_start, day_end = local_day_bounds(day, tz)
        appointments = await self._repository.list_active_appointments(
            employee_id, day_start, day_end
        )
        return generate_slots(
            day,
            working_hours,
            duration,
            appointments,
            tz,
            interval_minutes=self._slot_interval_minutes,
        )

    async def resolve_employee(self, business_id: str) -> Employee:
        """Any active employee of the business (the first by name)."""
        employees = await self._repository.get_active_employees(business_id)
        if not employees:
            raise NotFoundError("Employee for business", business_id)
        return employees[0]

    async def find_open_slots(
        self,
        business: Business,
        service: Service,
        now: datetime,
        limit: int | None = None,
    ) -> List[TimeSlot]:
        """Bookable same-day slots from ``now`` until closing."""
        employees = await self._repository.get_active_employees(business.id)
        if not employees:
            logger.warning("no_active_employees", extra={"business_id": business.id})
            return []
        tz = self._timezone_for(business)
        today = now.astimezone(tz).date()
        slots = await self.get_available_slots(
            business.id, employees[0].id, today, service.id
        )
        open_slots = [s for s in slots if s.available and s.start > now]
        if limit is not None:
            open_slots = open_slots[:limit]
        return open_slots

    async def create_appointment(
        self,
        business_id: str,
        employee_id: str,
        customer_id: str,
        service_id: str,
        start_time: datetime,
        notes: str | None = None,
        status: AppointmentStatus = AppointmentStatus.PENDING,
    ) -> Appointment:
        if start_time.tzinfo is None:
            raise ValidationError("start_time must be timezone-aware")
        duration = await self.get_service_duration(service_id)
        start = start_time.astimezone(UTC)
        end = start + timedelta(minutes=duration)

        if not await self.check_availability(employee_id, start, end):
            metrics.booking_conflicts += 1
            metrics.for_business(business_id).booking_conflicts += 1
            raise ConflictError("Time slot not available")

        try:
            appointment = await self._repository.insert_appointment(
                Appointment(
                    id=new_id(),
                    business_id=business_id,
                    employee_id=employee_id,
                    customer_id=customer_id,
                    service_id=service_id,
                    start_time=start,
                    end_time=end,
                    status=status,
                    notes=notes,
                )
            )
        except ConflictError:
            metrics.booking_conflicts += 1
            metrics.for_business(business_id).booking_conflicts += 1
            raise

        metrics.bookings_created += 1
        metrics.for_business(business_id).bookings_created += 1
        logger.info(
            "appointment_created",
            extra={
                "appointment_id": appointment.id,
                "business_id": business_id,
                "employee_id": employee_id,
                "status": appointment.status.value,
            },
        )
        if self._reminders is not None:
            await self._reminders.schedule_for_appointment(appointment)
        return appointment

    async def update_appointment_status(
        self,
        appointment_id: str,
        business_id: str,
        new_status: AppointmentStatus,
    ) -> Appointment:
        new_status = AppointmentStatus(new_status)
        existing = await self._repository.get_appointment(appointment_id)
        if existing is None or existing.business_id != business_id:
            raise NotFoundError("Appointment", appointment_id)

        updated = await self._repository.update_appointment_status(
            appointment_id, new_status
        )
        if updated is None:
            raise NotFoundError("Appointment", appointment_id)
        logger.info(
            "appointment_status_updated",
            extra={"appointment_id": appointment_id, "status": new_status.value},
        )
        if new_status == AppointmentStatus.CANCELLED:
            metrics.cancellations += 1
            metrics.for_business(business_id).cancellations += 1
        if new_status in REMINDER_TERMINAL_STATUSES and self._reminders is not None:
            await self._reminders.cancel_for_appointment(appointment_id)
        return updated

    async def cancel_appointment(self, appointment_id: str, business_id: str) -> Appointment:
        return await self.update_appointment_status(
            appointment_id, business_id, AppointmentStatus.CANCELLED
        )

    async def get_appointments_by_business(
        self,
        business_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[Appointment]:
        return await self._repository.list_business_appointments(
            business_id, start, end
        )
