from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime, timedelta
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import redis.asyncio as redis_asyncio

from ..config import AppSettings
from ..metrics import metrics
from ..models import DEFAULT_TIMEZONE, Appointment
from ..repositories import Repository
from . import messages
from .transport import MessageTransport

logger = logging.getLogger(__name__)


def job_id_for(appointment_id: str) -> str:
    return f"reminder-{appointment_id}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ReminderContact:
    """Who to remind and what to tell them, captured at scheduling time."""

    phone: str
    customer_name: str
    service_name: str
    business_name: str
    timezone: str = DEFAULT_TIMEZONE


@dataclass
class ReminderJob:
    appointment_id: str
    contact: ReminderContact
    fire_at: datetime
    attempts: int = 0

    @property
    def job_id(self) -> str:
        return job_id_for(self.appointment_id)

    def to_json(self) -> str:
        return json.dumps(
            {
                "appointmentId": self.appointment_id,
                "contact": asdict(self.contact),
                "fireAt": self.fire_at.isoformat(),
                "attempts": self.attempts,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "ReminderJob":
        data = json.loads(raw)
        return cls(
            appointment_id=data["appointmentId"],
            contact=ReminderContact(**data["contact"]),
            fire_at=datetime.fromisoformat(data["fireAt"]),
            attempts=int(data.get("attempts", 0)),
        )


class ReminderScheduler(Protocol):
    """Delayed reminder jobs keyed by appointment id.

    Scheduling the same appointment twice replaces the earlier job.
    """

    backend: str

    async def schedule_reminder(
        self,
        appointment_id: str,
        contact: ReminderContact,
        fire_at: datetime,
        attempts: int = 0,
    ) -> ReminderJob: ...

    async def cancel_reminder(self, appointment_id: str) -> bool: ...

    async def pop_due(self, now: datetime) -> List[ReminderJob]: ...

    async def get(self, appointment_id: str) -> Optional[ReminderJob]: ...

    async def pending_count(self) -> int: ...


class InMemoryReminderScheduler:
    backend = "memory"

    def __init__(self) -> None:
        self._jobs: Dict[str, ReminderJob] = {}

    async def schedule_reminder(
        self,
        appointment_id: str,
        contact: ReminderContact,
        fire_at: datetime,
        attempts: int = 0,
    ) -> ReminderJob:
        job = ReminderJob(
            appointment_id=appointment_id,
            contact=contact,
            fire_at=fire_at.astimezone(UTC),
            attempts=attempts,
        )
        self._jobs[job.job_id] = job
        return job

    async def cancel_reminder(self, appointment_id: str) -> bool:
        return self._jobs.pop(job_id_for(appointment_id), None) is not None

    async def pop_due(self, now: datetime) -> List[ReminderJob]:
        due = sorted(
            (job for job in self._jobs.values() if job.fire_at <= now),
            key=lambda job: job.fire_at,
        )
        for job in due:
            self._jobs.pop(job.job_id, None)
        return due

    async def get(self, appointment_id: str) -> Optional[ReminderJob]:
        return self._jobs.get(job_id_for(appointment_id))

    async def pending_count(self) -> int:
        return len(self._jobs)


class RedisReminderScheduler:
    """Jobs in a sorted set scored by fire time plus a hash of payloads.

    Writes and claims run as MULTI transactions, so the sorted set and the
    hash always change together. A job is claimed by the worker whose
    transaction removes it from the sorted set; no other worker sees it.
    """

    backend = "redis"

    def __init__(self, client: Any, key_prefix: str = "reminders") -> None:
        self._client = client
        self._due_key = f"{key_prefix}:due"
        self._jobs_key = f"{key_prefix}:jobs"

    async def schedule_reminder(
        self,
        appointment_id: str,
        contact: ReminderContact,
        fire_at: datetime,
        attempts: int = 0,
    ) -> ReminderJob:
        job = ReminderJob(
            appointment_id=appointment_id,
            contact=contact,
            fire_at=fire_at.astimezone(UTC),
            attempts=attempts,
        )
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.hset(self._jobs_key, job.job_id, job.to_json())
            pipe.zadd(self._due_key, {job.job_id: job.fire_at.timestamp()})
            await pipe.execute()
        return job

    async def cancel_reminder(self, appointment_id: str) -> bool:
        job_id = job_id_for(appointment_id)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zrem(self._due_key, job_id)
            pipe.hdel(self._jobs_key, job_id)
            removed, _ = await pipe.execute()
        return bool(removed)

    async def pop_due(self, now: datetime) -> List[ReminderJob]:
        job_ids = await self._client.zrangebyscore(
            self._due_key, "-inf", now.timestamp()
        )
        due: List[ReminderJob] = []
        for job_id in job_ids:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.zscore(self._due_key, job_id)
                pipe.zrem(self._due_key, job_id)
                pipe.hget(self._jobs_key, job_id)
                pipe.hdel(self._jobs_key, job_id)
                score, removed, raw, _ = await pipe.execute()
            if not removed or not raw:
                continue
            if score is not None and float(score) > now.timestamp():
                # Rescheduled for later after the listing above.
                await self._restore(job_id, raw, float(score))
                continue
            try:
                due.append(ReminderJob.from_json(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("reminder_payload_invalid", extra={"job_id": job_id})
        return due

    async def _restore(self, job_id: str, raw: str, score: float) -> None:
        # NX on both keys keeps a payload written after our claim.
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.hsetnx(self._jobs_key, job_id, raw)
            pipe.zadd(self._due_key, {job_id: score}, nx=True)
            await pipe.execute()

    async def get(self, appointment_id: str) -> Optional[ReminderJob]:
        raw = await self._client.hget(self._jobs_key, job_id_for(appointment_id))
        if not raw:
            return None
        return ReminderJob.from_json(raw)

    async def pending_count(self) -> int:
        return int(await self._client.zcard(self._due_key))

    async def close(self) -> None:
        await self._client.aclose()


class ReminderService:
    """Plans and delivers the day-before reminder for appointments."""

    def __init__(
        self,
        repository: Repository,
        scheduler: ReminderScheduler,
        transport: MessageTransport,
        lead_hours: int = 24,
        max_attempts: int = 3,
        retry_seconds: int = 120,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._scheduler = scheduler
        self._transport = transport
        self._lead = timedelta(hours=lead_hours)
        self._max_attempts = max_attempts
        self._retry = timedelta(seconds=retry_seconds)
        self._clock = clock

    @property
    def scheduler(self) -> ReminderScheduler:
        return self._scheduler

    async def _contact_for(self, appointment: Appointment) -> Optional[ReminderContact]:
        customer = await self._repository.get_customer(appointment.customer_id)
        if customer is None or not customer.phone:
            return None
        service = await self._repository.get_service(appointment.service_id)
        business = await self._repository.get_business(appointment.business_id)
        return ReminderContact(
            phone=customer.phone,
            customer_name=customer.name,
            service_name=service.name if service else (appointment.service_name or ""),
            business_name=business.name if business else "",
            timezone=business.timezone if business else DEFAULT_TIMEZONE,
        )

    async def _schedule(
        self, appointment: Appointment, fire_at: datetime
    ) -> Optional[ReminderJob]:
        contact = await self._contact_for(appointment)
        if contact is None:
            logger.warning(
                "reminder_contact_missing",
                extra={"appointment_id": appointment.id},
            )
            return None
        job = await self._scheduler.schedule_reminder(appointment.id, contact, fire_at)
        metrics.reminders_scheduled += 1
        logger.info(
            "reminder_scheduled",
            extra={
                "appointment_id": appointment.id,
                "fire_at": job.fire_at.isoformat(),
            },
        )
        return job

    async def schedule_for_appointment(
        self, appointment: Appointment
    ) -> Optional[ReminderJob]:
        """Queue the reminder ``lead_hours`` before the start.

        Nothing is queued when that moment has already passed; the periodic
        scan covers appointments booked inside the lead window.
        """
        fire_at = appointment.start_time - self._lead
        if fire_at <= self._clock():
            logger.info(
                "reminder_not_scheduled_past",
                extra={"appointment_id": appointment.id},
            )
            return None
        try:
            return await self._schedule(appointment, fire_at)
        except Exception:
            metrics.reminder_schedule_errors += 1
            logger.exception(
                "reminder_schedule_failed", extra={"appointment_id": appointment.id}
            )
            return None

    async def cancel_for_appointment(self, appointment_id: str) -> None:
        try:
            removed = await self._scheduler.cancel_reminder(appointment_id)
        except Exception:
            metrics.reminder_schedule_errors += 1
            logger.exception(
                "reminder_cancel_failed", extra={"appointment_id": appointment_id}
            )
            return
        if removed:
            metrics.reminders_cancelled += 1
            logger.info("reminder_cancelled", extra={"appointment_id": appointment_id})

    async def scan_and_schedule(
        self, now: datetime | None = None, hours_ahead: int = 24
    ) -> int:
        """Ensure one queued reminder per active, unreminded upcoming appointment."""
        now = now or self._clock()
        candidates = await self._repository.list_reminder_candidates(
            now, now + timedelta(hours=hours_ahead)
        )
        scheduled = 0
        for appointment in candidates:
            fire_at = max(appointment.start_time - self._lead, now)
            try:
                job = await self._schedule(appointment, fire_at)
            except Exception:
                metrics.reminder_schedule_errors += 1
                logger.exception(
                    "reminder_schedule_failed",
                    extra={"appointment_id": appointment.id},
                )
                continue
            if job is not None:
                scheduled += 1
        logger.info(
            "reminder_scan_completed",
            extra={"candidates": len(candidates), "scheduled": scheduled},
        )
        return scheduled

    async def dispatch_due(self, now: datetime | None = None) -> Dict[str, int]:
        now = now or self._clock()
        result = {"sent": 0, "skipped": 0, "failed": 0}
        for job in await self._scheduler.pop_due(now):
            appointment = await self._repository.get_appointment(job.appointment_id)
            if (
                appointment is None
                or not appointment.is_active
                or appointment.reminder_sent
                or appointment.start_time <= now
            ):
                metrics.reminders_skipped += 1
                result["skipped"] += 1
                continue

            contact = job.contact
            body = messages.reminder(
                contact.customer_name,
                contact.service_name,
                appointment.start_time,
                contact.business_name,
                contact.timezone,
                now=now,
            )
            try:
                await self._transport.send_message(contact.phone, body)
            except Exception:
                metrics.reminders_failed += 1
                result["failed"] += 1
                await self._retry_later(job, now)
                continue

            await self._repository.mark_reminder_sent(appointment.id)
            metrics.reminders_sent += 1
            result["sent"] += 1
            logger.info("reminder_sent", extra={"appointment_id": appointment.id})
        return result

    async def _retry_later(self, job: ReminderJob, now: datetime) -> None:
        attempts = job.attempts + 1
        if attempts >= self._max_attempts:
            logger.error(
                "reminder_abandoned",
                extra={"appointment_id": job.appointment_id, "attempts": attempts},
            )
            return
        logger.warning(
            "reminder_send_failed_requeued",
            exc_info=True,
            extra={"appointment_id": job.appointment_id, "attempts": attempts},
        )
        retry = replace(job, fire_at=now + self._retry, attempts=attempts)
        await self._scheduler.schedule_reminder(
            retry.appointment_id, retry.contact, retry.fire_at, attempts=retry.attempts
        )


class ReminderWorker:
    """Background loop that delivers due reminders and rescans periodically."""

    def __init__(
        self,
        service: ReminderService,
        poll_seconds: float = 30.0,
        scan_interval_hours: float = 6,
        scan_hours_ahead: int = 24,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._service = service
        self._poll_seconds = poll_seconds
        self._scan_interval = timedelta(hours=scan_interval_hours)
        self._scan_hours_ahead = scan_hours_ahead
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._last_scan: datetime | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="reminder-worker")
        logger.info("reminder_worker_started")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("reminder_worker_stopped")

    async def run_once(self) -> None:
        now = self._clock()
        if self._last_scan is None or now - self._last_scan >= self._scan_interval:
            await self._service.scan_and_schedule(now, self._scan_hours_ahead)
            self._last_scan = now
        await self._service.dispatch_due(now)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                metrics.background_job_errors += 1
                logger.exception("background_job_failed", extra={"job": "reminders"})
            try:
                await asyncio.wait_for(self._stop_event.wait(), self._poll_seconds)
            except asyncio.TimeoutError:
                continue


def create_reminder_scheduler(settings: AppSettings) -> ReminderScheduler:
    if settings.scheduling.reminder_backend == "redis":
        if not settings.redis_url:
            logger.warning("reminder_scheduler_redis_url_missing_falling_back")
            return InMemoryReminderScheduler()
        try:
            client = redis_asyncio.from_url(settings.redis_url, decode_responses=True)
        except Exception:
            logger.warning(
                "reminder_scheduler_redis_init_failed_falling_back", exc_info=True
            )
            return InMemoryReminderScheduler()
        return RedisReminderScheduler(client)
    return InMemoryReminderScheduler()
