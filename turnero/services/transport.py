from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import List, Protocol

import httpx

from ..config import AppSettings, WhatsAppSettings
from ..errors import UnavailableError
from ..metrics import metrics
from . import phone as phone_utils

logger = logging.getLogger(__name__)


@dataclass
class SentMessage:
    to: str
    body: str


class MessageTransport(Protocol):
    """Outbound WhatsApp delivery; returns the provider message id."""

    async def send_message(self, to: str, body: str) -> str: ...


class StubTransport:
    """Records messages in memory instead of delivering them."""

    def __init__(self) -> None:
        self._sent: List[SentMessage] = []

    @property
    def sent_messages(self) -> List[SentMessage]:
        # Exposed primarily for tests and debugging.
        return list(self._sent)

    def clear(self) -> None:
        self._sent.clear()

    async def send_message(self, to: str, body: str) -> str:
        self._sent.append(SentMessage(to=to, body=body))
        metrics.messages_sent += 1
        return f"stub-{len(self._sent)}"


class TwilioWhatsAppTransport:
    """Send WhatsApp messages through Twilio's Messages API."""

    def __init__(
        self,
        settings: WhatsAppSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client

    def _messages_url(self) -> str:
        base = self._settings.twilio_api_base.rstrip("/")
        return f"{base}/Accounts/{self._settings.twilio_account_sid}/Messages.json"

    async def send_message(self, to: str, body: str) -> str:
        sid = self._settings.twilio_account_sid
        token = self._settings.twilio_auth_token
        from_number = self._settings.from_number
        if not sid or not token or not from_number:
            metrics.transport_errors += 1
            raise UnavailableError("WhatsApp transport is not configured")

        data = {
            "From": phone_utils.to_transport_format(from_number),
            "To": phone_utils.to_transport_format(to),
            "Body": body,
        }
        try:
            if self._client is not None:
                resp = await self._client.post(
                    self._messages_url(), data=data, auth=(sid, token)
                )
            else:
                async with httpx.AsyncClient(
                    timeout=self._settings.request_timeout_seconds, auth=(sid, token)
                ) as client:
                    resp = await client.post(self._messages_url(), data=data)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            metrics.transport_errors += 1
            logger.warning(
                "whatsapp_send_failed",
                extra={"to": data["To"], "error": exc.__class__.__name__},
            )
            raise UnavailableError("WhatsApp message could not be sent") from exc

        metrics.messages_sent += 1
        message_id = str(resp.json().get("sid", ""))
        logger.info(
            "whatsapp_message_sent", extra={"to": data["To"], "message_id": message_id}
        )
        return message_id


def create_transport(settings: AppSettings) -> MessageTransport:
    if settings.whatsapp.provider == "twilio":
        return TwilioWhatsAppTransport(settings.whatsapp)
    return StubTransport()
