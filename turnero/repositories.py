from __future__ import annotations

import asyncio
from datetime import UTC, datetime
import functools
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import anyio
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .db_models import (
    AppointmentDB,
    BusinessDB,
    CustomerDB,
    EmployeeDB,
    ServiceDB,
    WorkingHoursDB,
)
from .errors import ConflictError
from .models import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    Business,
    Customer,
    Employee,
    Service,
    WorkingHours,
    intervals_overlap,
)

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]


class Repository(Protocol):
    """Persistence boundary consumed by the booking engine.

    Tenant CRUD lives elsewhere; the engine only needs these reads and the
    appointment/customer writes. ``insert_appointment`` must reject an
    active appointment that overlaps another active one for the same
    employee by raising ``ConflictError``.
    """

    async def get_business(self, business_id: str) -> Optional[Business]: ...

    async def find_business_by_phone_patterns(
        self, patterns: Sequence[str]
    ) -> Optional[Business]: ...

    async def get_service(self, service_id: str) -> Optional[Service]: ...

    async def list_active_services(self, business_id: str) -> List[Service]: ...

    async def get_active_employees(self, business_id: str) -> List[Employee]: ...

    async def get_working_hours(
        self, employee_id: str, day_of_week: int
    ) -> Optional[WorkingHours]: ...

    async def list_active_appointments(
        self,
        employee_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[Appointment]: ...

    async def insert_appointment(self, appointment: Appointment) -> Appointment: ...

    async def update_appointment_status(
        self, appointment_id: str, status: AppointmentStatus
    ) -> Optional[Appointment]: ...

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]: ...

    async def list_business_appointments(
        self,
        business_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[Appointment]: ...

    async def list_customer_upcoming_appointments(
        self, customer_id: str, business_id: str, now: datetime
    ) -> List[Appointment]: ...

    async def list_reminder_candidates(
        self, start: datetime, end: datetime
    ) -> List[Appointment]: ...

    async def mark_reminder_sent(self, appointment_id: str) -> None: ...

    async def find_customer_by_phone_patterns(
        self, business_id: str, patterns: Sequence[str]
    ) -> Optional[Customer]: ...

    async def insert_customer(self, customer: Customer) -> Customer: ...

    async def get_customer(self, customer_id: str) -> Optional[Customer]: ...


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _first_by_pattern(
    candidates: Iterable, patterns: Sequence[str], phone_attr: str = "phone"
):
    by_phone = {}
    for item in candidates:
        by_phone.setdefault(getattr(item, phone_attr), item)
    for pattern in patterns:
        if pattern in by_phone:
            return by_phone[pattern]
    return None


def _sort_key_by_name(item) -> tuple[str, str]:
    return (item.name.lower(), item.id)


def _in_thread(func):
    """Run a blocking session method in a worker thread and await it."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))

    return wrapper


class InMemoryRepository:
    """Process-local repository used in tests and single-instance demos."""

    def __init__(self) -> None:
        self._businesses: Dict[str, Business] = {}
        self._employees: Dict[str, Employee] = {}
        self._services: Dict[str, Service] = {}
        self._customers: Dict[str, Customer] = {}
        self._working_hours: Dict[tuple[str, int], WorkingHours] = {}
        self._appointments: Dict[str, Appointment] = {}
        self._insert_lock = asyncio.Lock()

    # Seeding helpers (tenant CRUD is owned by another system).

    def add_business(self, business: Business) -> Business:
        self._businesses[business.id] = business
        return business

    def add_employee(self, employee: Employee) -> Employee:
        self._employees[employee.id] = employee
        return employee

    def add_service(self, service: Service) -> Service:
        self._services[service.id] = service
        return service

    def add_customer(self, customer: Customer) -> Customer:
        self._customers[customer.id] = customer
        return customer

    def set_working_hours(self, hours: WorkingHours) -> WorkingHours:
        self._working_hours[(hours.employee_id, hours.day_of_week)] = hours
        return hours

    def list_customers(self, business_id: str) -> List[Customer]:
        return [c for c in self._customers.values() if c.business_id == business_id]

    # Repository protocol.

    async def get_business(self, business_id: str) -> Optional[Business]:
        return self._businesses.get(business_id)

    async def find_business_by_phone_patterns(
        self, patterns: Sequence[str]
    ) -> Optional[Business]:
        return _first_by_pattern(self._businesses.values(), patterns)

    async def get_service(self, service_id: str) -> Optional[Service]:
        return self._services.get(service_id)

    async def list_active_services(self, business_id: str) -> List[Service]:
        services = [
            s
            for s in self._services.values()
            if s.business_id == business_id and s.is_active
        ]
        return sorted(services, key=_sort_key_by_name)

    async def get_active_employees(self, business_id: str) -> List[Employee]:
        employees = [
            e
            for e in self._employees.values()
            if e.business_id == business_id and e.is_active
        ]
        return sorted(employees, key=_sort_key_by_name)

    async def get_working_hours(
        self, employee_id: str, day_of_week: int
    ) -> Optional[WorkingHours]:
        return self._working_hours.get((employee_id, day_of_week))

    async def list_active_appointments(
        self,
        employee_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[Appointment]:
        result = []
        for appt in self._appointments.values():
            if appt.employee_id != employee_id or not appt.is_active:
                continue
            if start is not None and appt.end_time <= start:
                continue
            if end is not None and appt.start_time >= end:
                continue
            result.append(appt)
        return sorted(result, key=lambda a: a.start_time)

    async def insert_appointment(self, appointment: Appointment) -> Appointment:
        async with self._insert_lock:
            if appointment.is_active:
                for existing in self._appointments.values():
                    if (
                        existing.employee_id == appointment.employee_id
                        and existing.is_active
                        and intervals_overlap(
                            existing.start_time,
                            existing.end_time,
                            appointment.start_time,
                            appointment.end_time,
                        )
                    ):
                        raise ConflictError(
                            f"Employee {appointment.employee_id} already booked "
                            f"at {existing.start_time.isoformat()}"
                        )
            self._appointments[appointment.id] = appointment
            return appointment

    async def update_appointment_status(
        self, appointment_id: str, status: AppointmentStatus
    ) -> Optional[Appointment]:
        appt = self._appointments.get(appointment_id)
        if appt is None:
            return None
        appt.status = AppointmentStatus(status)
        return appt

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        return self._appointments.get(appointment_id)

    async def list_business_appointments(
        self,
        business_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[Appointment]:
        result = [
            a
            for a in self._appointments.values()
            if a.business_id == business_id
            and (start is None or a.start_time >= start)
            and (end is None or a.start_time <= end)
        ]
        return sorted(result, key=lambda a: a.start_time)

    async def list_customer_upcoming_appointments(
        self, customer_id: str, business_id: str, now: datetime
    ) -> List[Appointment]:
        result = []
        for appt in self._appointments.values():
            if (
                appt.customer_id == customer_id
                and appt.business_id == business_id
                and appt.is_active
                and appt.start_time >= now
            ):
                service = self._services.get(appt.service_id)
                appt.service_name = service.name if service else None
                result.append(appt)
        return sorted(result, key=lambda a: a.start_time)

    async def list_reminder_candidates(
        self, start: datetime, end: datetime
    ) -> List[Appointment]:
        result = [
            a
            for a in self._appointments.values()
            if a.is_active and not a.reminder_sent and start < a.start_time <= end
        ]
        return sorted(result, key=lambda a: a.start_time)

    async def mark_reminder_sent(self, appointment_id: str) -> None:
        appt = self._appointments.get(appointment_id)
        if appt is not None:
            appt.reminder_sent = True

    async def find_customer_by_phone_patterns(
        self, business_id: str, patterns: Sequence[str]
    ) -> Optional[Customer]:
        return _first_by_pattern(self.list_customers(business_id), patterns)

    async def insert_customer(self, customer: Customer) -> Customer:
        self._customers[customer.id] = customer
        return customer

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        return self._customers.get(customer_id)


class DbRepository:
    """Repository backed by the SQLAlchemy database.

    Protocol methods do their session work in a worker thread; the
    ``add_*`` seeding helpers stay synchronous.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _business(row: BusinessDB) -> Business:
        return Business(
            id=row.id,
            name=row.name,
            phone=row.phone,
            timezone=row.timezone,
            is_active=bool(row.is_active),
        )

    @staticmethod
    def _employee(row: EmployeeDB) -> Employee:
        return Employee(
            id=row.id,
            business_id=row.business_id,
            name=row.name,
            is_active=bool(row.is_active),
        )

    @staticmethod
    def _service(row: ServiceDB) -> Service:
        return Service(
            id=row.id,
            business_id=row.business_id,
            name=row.name,
            duration_minutes=int(row.duration_minutes),
            price=float(row.price or 0.0),
            is_active=bool(row.is_active),
        )

    @staticmethod
    def _customer(row: CustomerDB) -> Customer:
        return Customer(
            id=row.id,
            business_id=row.business_id,
            name=row.name,
            phone=row.phone,
            email=row.email,
            created_at=_as_utc(row.created_at),
        )

    @staticmethod
    def _appointment(row: AppointmentDB, service_name: str | None = None) -> Appointment:
        return Appointment(
            id=row.id,
            business_id=row.business_id,
            employee_id=row.employee_id,
            customer_id=row.customer_id,
            service_id=row.service_id,
            start_time=_as_utc(row.start_time),
            end_time=_as_utc(row.end_time),
            status=AppointmentStatus(row.status),
            notes=row.notes,
            reminder_sent=bool(row.reminder_sent),
            created_at=_as_utc(row.created_at),
            service_name=service_name,
        )

    # Seeding helpers.

    def add_business(self, business: Business) -> Business:
        session = self._session_factory()
        try:
            session.merge(
                BusinessDB(
                    id=business.id,
                    name=business.name,
                    phone=business.phone,
                    timezone=business.timezone,
                    is_active=business.is_active,
                )
            )
            session.commit()
            return business
        finally:
            session.close()

    def add_employee(self, employee: Employee) -> Employee:
        session = self._session_factory()
        try:
            session.merge(
                EmployeeDB(
                    id=employee.id,
                    business_id=employee.business_id,
                    name=employee.name,
                    is_active=employee.is_active,
                )
            )
            session.commit()
            return employee
        finally:
            session.close()

    def add_service(self, service: Service) -> Service:
        session = self._session_factory()
        try:
            session.merge(
                ServiceDB(
                    id=service.id,
                    business_id=service.business_id,
                    name=service.name,
                    duration_minutes=service.duration_minutes,
                    price=service.price,
                    is_active=service.is_active,
                )
            )
            session.commit()
            return service
        finally:
            session.close()

    def set_working_hours(self, hours: WorkingHours) -> WorkingHours:
        session = self._session_factory()
        try:
            row = (
                session.query(WorkingHoursDB)
                .filter(
                    WorkingHoursDB.employee_id == hours.employee_id,
                    WorkingHoursDB.day_of_week == hours.day_of_week,
                )
                .one_or_none()
            )
            if row is None:
                row = WorkingHoursDB(
                    employee_id=hours.employee_id, day_of_week=hours.day_of_week
                )
            row.start_time = hours.start_time
            row.end_time = hours.end_time
            row.is_available = hours.is_available
            session.add(row)
            session.commit()
            return hours
        finally:
            session.close()

    # Repository protocol.

    @_in_thread
    def get_business(self, business_id: str) -> Optional[Business]:
        session = self._session_factory()
        try:
            row = session.get(BusinessDB, business_id)
            return self._business(row) if row else None
        finally:
            session.close()

    @_in_thread
    def find_business_by_phone_patterns(
        self, patterns: Sequence[str]
    ) -> Optional[Business]:
        if not patterns:
            return None
        session = self._session_factory()
        try:
            rows = (
                session.query(BusinessDB)
                .filter(BusinessDB.phone.in_(list(patterns)))
                .all()
            )
            row = _first_by_pattern(rows, patterns)
            return self._business(row) if row else None
        finally:
            session.close()

    @_in_thread
    def get_service(self, service_id: str) -> Optional[Service]:
        session = self._session_factory()
        try:
            row = session.get(ServiceDB, service_id)
            return self._service(row) if row else None
        finally:
            session.close()

    @_in_thread
    def list_active_services(self, business_id: str) -> List[Service]:
        session = self._session_factory()
        try:
            rows = (
                session.query(ServiceDB)
                .filter(ServiceDB.business_id == business_id, ServiceDB.is_active)
                .all()
            )
            return sorted((self._service(r) for r in rows), key=_sort_key_by_name)
        finally:
            session.close()

    @_in_thread
    def get_active_employees(self, business_id: str) -> List[Employee]:
        session = self._session_factory()
        try:
            rows = (
                session.query(EmployeeDB)
                .filter(EmployeeDB.business_id == business_id, EmployeeDB.is_active)
                .all()
            )
            return sorted((self._employee(r) for r in rows), key=_sort_key_by_name)
        finally:
            session.close()

    @_in_thread
    def get_working_hours(
        self, employee_id: str, day_of_week: int
    ) -> Optional[WorkingHours]:
        session = self._session_factory()
        try:
            row = (
                session.query(WorkingHoursDB)
                .filter(
                    WorkingHoursDB.employee_id == employee_id,
                    WorkingHoursDB.day_of_week == day_of_week,
                )
                .one_or_none()
            )
            if row is None:
                return None
            return WorkingHours(
                employee_id=row.employee_id,
                day_of_week=row.day_of_week,
                start_time=row.start_time,
                end_time=row.end_time,
                is_available=bool(row.is_available),
            )
        finally:
            session.close()

    @staticmethod
    def _active_overlapping(session, employee_id: str, start, end):
        query = session.query(AppointmentDB).filter(
            AppointmentDB.employee_id == employee_id,
            AppointmentDB.status.in_(_ACTIVE_VALUES),
        )
        if start is not None:
            query = query.filter(AppointmentDB.end_time > _as_utc(start))
        if end is not None:
            query = query.filter(AppointmentDB.start_time < _as_utc(end))
        return query.order_by(AppointmentDB.start_time.asc())

    @_in_thread
    def list_active_appointments(
        self,
        employee_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[Appointment]:
        session = self._session_factory()
        try:
            rows = self._active_overlapping(session, employee_id, start, end).all()
            return [self._appointment(r) for r in rows]
        finally:
            session.close()

    @_in_thread
    def insert_appointment(self, appointment: Appointment) -> Appointment:
        session = self._session_factory()
        try:
            if appointment.is_active:
                # Serialize bookings per employee for the rest of the transaction.
                session.query(EmployeeDB).filter(
                    EmployeeDB.id == appointment.employee_id
                ).with_for_update().one_or_none()
                clash = self._active_overlapping(
                    session,
                    appointment.employee_id,
                    appointment.start_time,
                    appointment.end_time,
                ).first()
                if clash is not None:
                    session.rollback()
                    raise ConflictError(
                        f"Employee {appointment.employee_id} already booked "
                        f"at {_as_utc(clash.start_time).isoformat()}"
                    )
            row = AppointmentDB(
                id=appointment.id,
                business_id=appointment.business_id,
                employee_id=appointment.employee_id,
                customer_id=appointment.customer_id,
                service_id=appointment.service_id,
                start_time=_as_utc(appointment.start_time),
                end_time=_as_utc(appointment.end_time),
                status=AppointmentStatus(appointment.status).value,
                notes=appointment.notes,
                reminder_sent=appointment.reminder_sent,
                created_at=appointment.created_at,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                # Raised by the PostgreSQL exclusion constraint.
                raise ConflictError("Time slot not available") from exc
            session.refresh(row)
            return self._appointment(row)
        finally:
            session.close()

    @_in_thread
    def update_appointment_status(
        self, appointment_id: str, status: AppointmentStatus
    ) -> Optional[Appointment]:
        session = self._session_factory()
        try:
            row = session.get(AppointmentDB, appointment_id)
            if row is None:
                return None
            row.status = AppointmentStatus(status).value
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._appointment(row)
        finally:
            session.close()

    @_in_thread
    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        session = self._session_factory()
        try:
            row = session.get(AppointmentDB, appointment_id)
            return self._appointment(row) if row else None
        finally:
            session.close()

    @_in_thread
    def list_business_appointments(
        self,
        business_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[Appointment]:
        session = self._session_factory()
        try:
            query = session.query(AppointmentDB).filter(
                AppointmentDB.business_id == business_id
            )
            if start is not None:
                query = query.filter(AppointmentDB.start_time >= _as_utc(start))
            if end is not None:
                query = query.filter(AppointmentDB.start_time <= _as_utc(end))
            rows = query.order_by(AppointmentDB.start_time.asc()).all()
            return [self._appointment(r) for r in rows]
        finally:
            session.close()

    @_in_thread
    def list_customer_upcoming_appointments(
        self, customer_id: str, business_id: str, now: datetime
    ) -> List[Appointment]:
        session = self._session_factory()
        try:
            rows = (
                session.query(AppointmentDB, ServiceDB.name)
                .outerjoin(ServiceDB, ServiceDB.id == AppointmentDB.service_id)
                .filter(
                    AppointmentDB.customer_id == customer_id,
                    AppointmentDB.business_id == business_id,
                    AppointmentDB.status.in_(_ACTIVE_VALUES),
                    AppointmentDB.start_time >= _as_utc(now),
                )
                .order_by(AppointmentDB.start_time.asc())
                .all()
            )
            return [self._appointment(row, service_name) for row, service_name in rows]
        finally:
            session.close()

    @_in_thread
    def list_reminder_candidates(
        self, start: datetime, end: datetime
    ) -> List[Appointment]:
        session = self._session_factory()
        try:
            rows = (
                session.query(AppointmentDB)
                .filter(
                    AppointmentDB.status.in_(_ACTIVE_VALUES),
                    or_(
                        AppointmentDB.reminder_sent.is_(False),
                        AppointmentDB.reminder_sent.is_(None),
                    ),
                    AppointmentDB.start_time > _as_utc(start),
                    AppointmentDB.start_time <= _as_utc(end),
                )
                .order_by(AppointmentDB.start_time.asc())
                .all()
            )
            return [self._appointment(r) for r in rows]
        finally:
            session.close()

    @_in_thread
    def mark_reminder_sent(self, appointment_id: str) -> None:
        session = self._session_factory()
        try:
            row = session.get(AppointmentDB, appointment_id)
            if row is None:
                return
            row.reminder_sent = True
            session.add(row)
            session.commit()
        finally:
            session.close()

    @_in_thread
    def find_customer_by_phone_patterns(
        self, business_id: str, patterns: Sequence[str]
    ) -> Optional[Customer]:
        if not patterns:
            return None
        session = self._session_factory()
        try:
            rows = (
                session.query(CustomerDB)
                .filter(
                    CustomerDB.business_id == business_id,
                    CustomerDB.phone.in_(list(patterns)),
                )
                .order_by(CustomerDB.created_at.asc())
                .all()
            )
            row = _first_by_pattern(rows, patterns)
            return self._customer(row) if row else None
        finally:
            session.close()

    @_in_thread
    def insert_customer(self, customer: Customer) -> Customer:
        session = self._session_factory()
        try:
            row = CustomerDB(
                id=customer.id,
                business_id=customer.business_id,
                name=customer.name,
                phone=customer.phone,
                email=customer.email,
                created_at=customer.created_at,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._customer(row)
        finally:
            session.close()

    @_in_thread
    def get_customer(self, customer_id: str) -> Optional[Customer]:
        session = self._session_factory()
        try:
            row = session.get(CustomerDB, customer_id)
            return self._customer(row) if row else None
        finally:
            session.close()
