from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
from typing import AsyncIterator, Dict

from ..metrics import metrics
from . import phone as phone_utils
from .conversation import ConversationStateMachine
from .resolvers import BusinessResolver, CustomerResolver

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    from_phone: str
    to_phone: str
    body: str = ""


@dataclass
class InboundResult:
    handled: bool
    reason: str | None = None
    business_id: str | None = None
    customer_id: str | None = None


@dataclass
class _SenderLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class InboundMessageHandler:
    """Entry point for every inbound WhatsApp message.

    Messages from the same phone are processed one at a time within this
    process. Nothing raised below this point reaches the webhook caller.
    """

    def __init__(
        self,
        business_resolver: BusinessResolver,
        customer_resolver: CustomerResolver,
        machine: ConversationStateMachine,
    ) -> None:
        self._businesses = business_resolver
        self._customers = customer_resolver
        self._machine = machine
        self._locks: Dict[str, _SenderLock] = {}

    @property
    def active_senders(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _serialized(self, phone: str) -> AsyncIterator[None]:
        # The entry lives only while a message for this phone runs or waits.
        entry = self._locks.get(phone)
        if entry is None:
            entry = self._locks[phone] = _SenderLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(phone, None)

    async def handle(self, message: InboundMessage) -> InboundResult:
        metrics.inbound_messages += 1
        raw_sender = phone_utils.from_transport_format(message.from_phone)
        if not phone_utils.normalize(raw_sender):
            logger.warning("inbound_missing_sender", extra={"to": message.to_phone})
            return InboundResult(handled=False, reason="missing_sender")
        sender = phone_utils.canonical(raw_sender)

        async with self._serialized(sender):
            try:
                return await self._process(sender, message)
            except Exception:
                metrics.inbound_failures += 1
                logger.exception("inbound_message_failed", extra={"phone": sender})
                return InboundResult(handled=False, reason="internal_error")

    async def _process(self, sender: str, message: InboundMessage) -> InboundResult:
        business = await self._businesses.find_by_destination(message.to_phone)
        if business is None:
            metrics.inbound_unknown_business += 1
            return InboundResult(handled=False, reason="business_not_found")
        if not business.is_active:
            logger.info("inbound_business_inactive", extra={"business_id": business.id})
            return InboundResult(
                handled=False, reason="business_inactive", business_id=business.id
            )

        metrics.for_business(business.id).inbound_messages += 1
        customer = await self._customers.find_or_create(sender, business.id)
        logger.info(
            "inbound_message",
            extra={"phone": sender, "business_id": business.id, "customer_id": customer.id},
        )
        await self._machine.handle_message(sender, message.body or "", customer, business)
        return InboundResult(
            handled=True, business_id=business.id, customer_id=customer.id
        )
