from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Depends

from ..deps import Services, get_services

router = APIRouter()


@router.post("/scan")
async def scan_upcoming_reminders(
    hours_ahead: int | None = None,
    services: Services = Depends(get_services),
) -> dict:
    """Queue reminders for upcoming appointments within the next N hours.

    The background worker runs the same scan periodically; this endpoint is
    for an external scheduler/cron job.
    """
    hours = hours_ahead or services.settings.scheduling.reminder_scan_hours_ahead
    scheduled = await services.reminders.scan_and_schedule(datetime.now(UTC), hours)
    pending = await services.scheduler.pending_count()
    return {"reminders_scheduled": scheduled, "pending": pending}


@router.post("/dispatch")
async def dispatch_due_reminders(services: Services = Depends(get_services)) -> dict:
    result = await services.reminders.dispatch_due(datetime.now(UTC))
    return {
        "reminders_sent": result["sent"],
        "reminders_skipped": result["skipped"],
        "reminders_failed": result["failed"],
    }
