from __future__ import annotations

import logging
from typing import Optional

from ..errors import InternalError
from ..models import Business, Customer, new_id
from ..repositories import Repository
from . import phone as phone_utils

logger = logging.getLogger(__name__)

PLACEHOLDER_CUSTOMER_NAME = "Cliente WhatsApp"


def placeholder_email(canonical_phone: str) -> str:
    return f"whatsapp_{canonical_phone}@placeholder.com"


class BusinessResolver:
    """Map the destination number of an inbound message to its tenant."""

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def find_by_destination(self, destination: str) -> Optional[Business]:
        cleaned = phone_utils.from_transport_format(destination)
        logger.info("business_lookup", extra={"phone": cleaned})

        business = await self._repository.find_business_by_phone_patterns([cleaned])
        if business:
            return business

        for pattern in phone_utils.generate_patterns(cleaned):
            business = await self._repository.find_business_by_phone_patterns(
                [pattern]
            )
            if business:
                logger.info(
                    "business_found_by_pattern",
                    extra={"pattern": pattern, "business_id": business.id},
                )
                return business

        logger.warning("business_not_found", extra={"phone": destination})
        return None


class CustomerResolver:
    """Find a tenant's customer by any known phone variant, creating one if needed.

    Creation is not protected against two near-simultaneous messages from the
    same number; callers serialize per phone (see ``InboundMessageHandler``).
    """

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def find_or_create(self, canonical_phone: str, business_id: str) -> Customer:
        patterns = phone_utils.generate_patterns(canonical_phone)
        customer = await self._repository.find_customer_by_phone_patterns(
            business_id, patterns
        )
        if customer:
            return customer

        digits = phone_utils.canonical(canonical_phone)
        logger.info(
            "customer_create", extra={"business_id": business_id, "phone": digits}
        )
        try:
            created = await self._repository.insert_customer(
                Customer(
                    id=new_id(),
                    business_id=business_id,
                    name=PLACEHOLDER_CUSTOMER_NAME,
                    phone=f"+{digits}",
                    email=placeholder_email(digits),
                )
            )
        except Exception as exc:
            logger.exception(
                "customer_create_failed", extra={"business_id": business_id}
            )
            raise InternalError("Failed to create customer") from exc
        return created
