from __future__ import annotations

from dataclasses import dataclass
import logging

from fastapi import Request

from .config import AppSettings, get_settings
from .db import build_engine, build_session_factory, init_db
from .repositories import DbRepository, InMemoryRepository, Repository
from .services.availability import AvailabilityEngine
from .services.conversation import ConversationStateMachine
from .services.conversation_store import ConversationStore, create_conversation_store
from .services.inbound import InboundMessageHandler
from .services.reminders import (
    ReminderScheduler,
    ReminderService,
    ReminderWorker,
    create_reminder_scheduler,
)
from .services.resolvers import BusinessResolver, CustomerResolver
from .services.transport import MessageTransport, create_transport

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the HTTP layer needs, built once at startup."""

    settings: AppSettings
    repository: Repository
    store: ConversationStore
    transport: MessageTransport
    scheduler: ReminderScheduler
    engine: AvailabilityEngine
    reminders: ReminderService
    machine: ConversationStateMachine
    inbound: InboundMessageHandler
    worker: ReminderWorker

    async def aclose(self) -> None:
        for resource in (self.store, self.scheduler):
            close = getattr(resource, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:
                logger.warning("service_close_failed", exc_info=True)


def build_repository(settings: AppSettings) -> Repository:
    if settings.repository_backend == "memory":
        return InMemoryRepository()
    engine = build_engine(settings.database_url)
    init_db(engine)
    return DbRepository(build_session_factory(engine))


def build_services(
    settings: AppSettings | None = None,
    repository: Repository | None = None,
    store: ConversationStore | None = None,
    transport: MessageTransport | None = None,
    scheduler: ReminderScheduler | None = None,
) -> Services:
    """Wire the booking engine together; any collaborator can be injected."""
    settings = settings or get_settings()
    repository = repository or build_repository(settings)
    store = store or create_conversation_store(settings)
    transport = transport or create_transport(settings)
    scheduler = scheduler or create_reminder_scheduler(settings)
    sched_cfg = settings.scheduling

    reminders = ReminderService(
        repository,
        scheduler,
        transport,
        lead_hours=sched_cfg.reminder_lead_hours,
        max_attempts=sched_cfg.reminder_max_attempts,
        retry_seconds=sched_cfg.reminder_retry_seconds,
    )
    engine = AvailabilityEngine(
        repository,
        reminders=reminders,
        slot_interval_minutes=sched_cfg.slot_interval_minutes,
        default_timezone=sched_cfg.default_timezone,
    )
    machine = ConversationStateMachine(
        repository,
        engine,
        store,
        transport,
        idle_minutes=settings.conversation.idle_minutes,
        max_slots=settings.conversation.max_slots_listed,
    )
    inbound = InboundMessageHandler(
        BusinessResolver(repository), CustomerResolver(repository), machine
    )
    worker = ReminderWorker(
        reminders,
        poll_seconds=sched_cfg.reminder_poll_seconds,
        scan_interval_hours=sched_cfg.reminder_scan_interval_hours,
        scan_hours_ahead=sched_cfg.reminder_scan_hours_ahead,
    )
    logger.info(
        "services_built",
        extra={
            "conversation_store": store.backend,
            "reminder_scheduler": scheduler.backend,
            "repository": type(repository).__name__,
        },
    )
    return Services(
        settings=settings,
        repository=repository,
        store=store,
        transport=transport,
        scheduler=scheduler,
        engine=engine,
        reminders=reminders,
        machine=machine,
        inbound=inbound,
        worker=worker,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
