"""Outbound WhatsApp copy.

All customer-facing text lives here so the dialogue handlers only decide
*which* message to send. The keyword set and wording are Spanish (es-AR).
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence
from zoneinfo import ZoneInfo

from ..models import Business, PendingAppointment, Service, TimeSlot

_WEEKDAYS = ("lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo")
_MONTHS = (
    "enero",
    "febrero",
    "marzo",
    "abril",
    "mayo",
    "junio",
    "julio",
    "agosto",
    "septiembre",
    "octubre",
    "noviembre",
    "diciembre",
)

GENERIC_APOLOGY = (
    "Lo siento, ocurrió un error procesando tu mensaje. "
    "Por favor intenta nuevamente en unos minutos."
)
NO_SERVICES = "Lo siento, no hay servicios disponibles en este momento."
NO_UPCOMING_APPOINTMENTS = "No tienes turnos próximos para cancelar."
AVAILABILITY_HINT = (
    'Para consultar disponibilidad, escribe "agendar turno" y te mostraré '
    "los horarios disponibles. 📅"
)
SERVICE_NUMBER_PROMPT = "Por favor responde con el número del servicio (ejemplo: 1)"
INVALID_SERVICE = "Número inválido. Por favor elige un servicio de la lista."
INVALID_SLOT = "Número inválido. Por favor elige un horario de la lista."
INVALID_APPOINTMENT = "Número inválido. Por favor elige un turno de la lista."
SLOT_TAKEN = (
    "Lo siento, ese horario acaba de ser reservado. "
    'Escribe "turno" para ver los horarios disponibles.'
)


def _local(value: datetime, timezone: str) -> datetime:
    return value.astimezone(ZoneInfo(timezone))


def format_time(value: datetime, timezone: str) -> str:
    return _local(value, timezone).strftime("%H:%M")


def format_day(value: datetime, timezone: str) -> str:
    """``martes 7 de enero``."""
    local = _local(value, timezone)
    return f"{_WEEKDAYS[local.weekday()]} {local.day} de {_MONTHS[local.month - 1]}"


def format_short(value: datetime, timezone: str) -> str:
    """``7 de enero, 10:30``."""
    local = _local(value, timezone)
    return f"{local.day} de {_MONTHS[local.month - 1]}, {local.strftime('%H:%M')}"


def _format_price(price: float) -> str:
    if float(price).is_integer():
        return str(int(price))
    return f"{price:.2f}"


def welcome(business_name: str) -> str:
    return (
        f"¡Hola! Bienvenido a {business_name} 👋\n\n"
        "Puedo ayudarte con:\n"
        "📅 Agendar turno\n"
        "❌ Cancelar turno\n\n"
        "¿Qué necesitas?"
    )


def service_menu(services: Sequence[Service]) -> str:
    lines = "\n".join(
        f"{i}. {s.name} - ${_format_price(s.price)} ({s.duration_minutes} min)"
        for i, s in enumerate(services, start=1)
    )
    return (
        f"¡Perfecto! Elige un servicio:\n\n{lines}\n\n"
        "Responde con el número del servicio (ejemplo: 1)"
    )


def slot_menu(service_name: str, slots: Sequence[TimeSlot], timezone: str) -> str:
    lines = "\n".join(
        f"{i}. {format_time(slot.start, timezone)}"
        for i, slot in enumerate(slots, start=1)
    )
    return (
        f"Horarios disponibles hoy para {service_name}:\n\n{lines}\n\n"
        "Responde con el número del horario (ejemplo: 1)"
    )


def no_slots_today(service_name: str) -> str:
    return (
        f"Lo siento, no hay horarios disponibles hoy para {service_name}.\n\n"
        'Escribe "turno" para intentar otro día.'
    )


def cancellation_menu(
    appointments: Sequence[PendingAppointment], timezone: str
) -> str:
    lines = "\n".join(
        f"{i}. {appt.service_name or 'Turno'} - {format_short(appt.start_time, timezone)}"
        for i, appt in enumerate(appointments, start=1)
    )
    return (
        f"Tus próximos turnos:\n\n{lines}\n\n"
        "Responde con el número del turno a cancelar (ejemplo: 1)"
    )


def cancellation_confirmed(start_time: datetime, timezone: str) -> str:
    local = _local(start_time, timezone)
    return (
        f"✅ Tu turno del {local.day} de {_MONTHS[local.month - 1]} a las "
        f"{local.strftime('%H:%M')} ha sido cancelado exitosamente."
    )


def booking_confirmation(
    customer_name: str,
    service_name: str,
    employee_name: str,
    start_time: datetime,
    business: Business,
) -> str:
    return (
        f"¡Hola {customer_name}! ✅\n\n"
        "Tu turno ha sido confirmado:\n\n"
        f"📅 {format_day(start_time, business.timezone)}\n"
        f"🕐 {format_time(start_time, business.timezone)}\n"
        f"💈 {service_name}\n"
        f"👤 con {employee_name}\n\n"
        f"📍 {business.name}\n\n"
        "Si necesitas cancelar o reprogramar, responde a este mensaje."
    )


def reminder(
    customer_name: str,
    service_name: str,
    start_time: datetime,
    business_name: str,
    timezone: str,
    now: datetime | None = None,
) -> str:
    when = "mañana"
    if now is not None:
        if _local(now, timezone).date() == _local(start_time, timezone).date():
            when = "hoy"
    return (
        f"Hola {customer_name} 👋\n\n"
        f"Te recordamos tu turno para {when}:\n\n"
        f"📅 {format_day(start_time, timezone)}\n"
        f"🕐 {format_time(start_time, timezone)}\n"
        f"💈 {service_name}\n\n"
        f"📍 {business_name}\n\n"
        "¡Te esperamos!"
    )
