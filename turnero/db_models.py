from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    DDL,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    event,
)

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BusinessDB(Base):
    __tablename__ = "businesses"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False, index=True)
    timezone = Column(String, nullable=False, default="America/Argentina/Buenos_Aires")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EmployeeDB(Base):
    __tablename__ = "employees"

    id = Column(String, primary_key=True)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class ServiceDB(Base):
    __tablename__ = "services"

    id = Column(String, primary_key=True)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)


class CustomerDB(Base):
    __tablename__ = "customers"
    __table_args__ = (Index("ix_customers_business_phone", "business_id", "phone"),)

    id = Column(String, primary_key=True)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class WorkingHoursDB(Base):
    __tablename__ = "working_hours"
    __table_args__ = (
        UniqueConstraint("employee_id", "day_of_week", name="uq_working_hours_day"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, ForeignKey("employees.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)


class AppointmentDB(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_employee_start", "employee_id", "start_time"),
    )

    id = Column(String, primary_key=True)
    business_id = Column(String, ForeignKey("businesses.id"), nullable=False, index=True)
    employee_id = Column(String, ForeignKey("employees.id"), nullable=False)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=False, index=True)
    service_id = Column(String, ForeignKey("services.id"), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False, default="pending")
    notes = Column(Text, nullable=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# PostgreSQL enforces the no-double-booking rule itself; other dialects rely
# on the row lock taken in DbRepository.insert_appointment.
event.listen(
    AppointmentDB.__table__,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    AppointmentDB.__table__,
    "after_create",
    DDL(
        "ALTER TABLE appointments ADD CONSTRAINT appointments_no_overlap "
        "EXCLUDE USING gist (employee_id WITH =, "
        "tstzrange(start_time, end_time, '[)') WITH &&) "
        "WHERE (status IN ('pending', 'confirmed'))"
    ).execute_if(dialect="postgresql"),
)
