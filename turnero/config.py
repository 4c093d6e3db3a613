from __future__ import annotations

import os
from functools import lru_cache
import logging

from pydantic import BaseModel


class WhatsAppSettings(BaseModel):
    provider: str = "stub"  # "stub" or "twilio"
    from_number: str | None = None
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"
    verify_twilio_signatures: bool = False
    request_timeout_seconds: float = 10.0


class ConversationSettings(BaseModel):
    store_backend: str = "memory"  # "memory" or "redis"
    key_prefix: str = "conversation"
    ttl_seconds: int = 3600
    idle_minutes: int = 30
    max_slots_listed: int = 5


class SchedulingSettings(BaseModel):
    slot_interval_minutes: int = 30
    default_timezone: str = "America/Argentina/Buenos_Aires"
    reminder_backend: str = "memory"  # "memory" or "redis"
    reminder_lead_hours: int = 24
    reminder_scan_hours_ahead: int = 24
    reminder_scan_interval_hours: int = 6
    reminder_poll_seconds: float = 30.0
    reminder_max_attempts: int = 3
    reminder_retry_seconds: int = 120


class PhoneSettings(BaseModel):
    country_code: str = "54"
    mobile_indicator: str = "9"
    transport_prefix: str = "whatsapp:"


class AppSettings(BaseModel):
    whatsapp: WhatsAppSettings = WhatsAppSettings()
    conversation: ConversationSettings = ConversationSettings()
    scheduling: SchedulingSettings = SchedulingSettings()
    phone: PhoneSettings = PhoneSettings()
    database_url: str = "sqlite:///./turnero.db"
    redis_url: str | None = None
    repository_backend: str = "db"  # "db" or "memory"
    start_reminder_worker: bool = True

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables with safe defaults."""
        whatsapp = WhatsAppSettings(
            provider=os.getenv("WHATSAPP_PROVIDER", "stub").lower(),
            from_number=os.getenv("TWILIO_WHATSAPP_NUMBER"),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
            twilio_api_base=os.getenv(
                "TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"
            ),
            verify_twilio_signatures=os.getenv(
                "VERIFY_TWILIO_SIGNATURES", "false"
            ).lower()
            == "true",
            request_timeout_seconds=float(
                os.getenv("WHATSAPP_REQUEST_TIMEOUT_SECONDS") or "10"
            ),
        )
        conversation = ConversationSettings(
            store_backend=os.getenv("CONVERSATION_STORE_BACKEND", "memory").lower(),
            key_prefix=os.getenv("CONVERSATION_KEY_PREFIX", "conversation"),
            ttl_seconds=int(os.getenv("CONVERSATION_TTL_SECONDS", "3600")),
            idle_minutes=int(os.getenv("CONVERSATION_IDLE_MINUTES", "30")),
            max_slots_listed=int(os.getenv("CONVERSATION_MAX_SLOTS", "5")),
        )
        scheduling = SchedulingSettings(
            slot_interval_minutes=int(os.getenv("SLOT_INTERVAL_MINUTES", "30")),
            default_timezone=os.getenv(
                "DEFAULT_TIMEZONE", "America/Argentina/Buenos_Aires"
            ),
            reminder_backend=os.getenv("REMINDER_BACKEND", "memory").lower(),
            reminder_lead_hours=int(os.getenv("REMINDER_LEAD_HOURS", "24")),
            reminder_scan_hours_ahead=int(
                os.getenv("REMINDER_SCAN_HOURS_AHEAD", "24")
            ),
            reminder_scan_interval_hours=int(
                os.getenv("REMINDER_SCAN_INTERVAL_HOURS", "6")
            ),
            reminder_poll_seconds=float(os.getenv("REMINDER_POLL_SECONDS") or "30"),
            reminder_max_attempts=int(os.getenv("REMINDER_MAX_ATTEMPTS", "3")),
            reminder_retry_seconds=int(os.getenv("REMINDER_RETRY_SECONDS", "120")),
        )
        phone = PhoneSettings(
            country_code=os.getenv("PHONE_COUNTRY_CODE", "54"),
            mobile_indicator=os.getenv("PHONE_MOBILE_INDICATOR", "9"),
        )
        return cls(
            whatsapp=whatsapp,
            conversation=conversation,
            scheduling=scheduling,
            phone=phone,
            database_url=os.getenv("DATABASE_URL", "sqlite:///./turnero.db"),
            redis_url=os.getenv("REDIS_URL") or None,
            repository_backend=os.getenv("REPOSITORY_BACKEND", "db").lower(),
            start_reminder_worker=os.getenv("START_REMINDER_WORKER", "true").lower()
            != "false",
        )

    def validate_combinations(self) -> None:
        """Log a warning for each provider or backend missing its credentials."""
        logger = logging.getLogger(__name__)
        warnings: list[str] = []

        if self.whatsapp.provider == "twilio":
            if not (
                self.whatsapp.twilio_account_sid and self.whatsapp.twilio_auth_token
            ):
                warnings.append(
                    "Twilio provider requires TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN."
                )
            if not self.whatsapp.from_number:
                warnings.append(
                    "TWILIO_WHATSAPP_NUMBER is required when WHATSAPP_PROVIDER=twilio."
                )
        if self.conversation.store_backend == "redis" and not self.redis_url:
            warnings.append(
                "REDIS_URL is required when CONVERSATION_STORE_BACKEND=redis; "
                "conversations will be kept in process memory."
            )
        if self.scheduling.reminder_backend == "redis" and not self.redis_url:
            warnings.append(
                "REDIS_URL is required when REMINDER_BACKEND=redis; "
                "reminders will be kept in process memory."
            )
        if self.conversation.ttl_seconds <= 0:
            warnings.append("CONVERSATION_TTL_SECONDS must be positive.")
        if warnings:
            for msg in warnings:
                logger.warning("configuration_warning", extra={"detail": msg})


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Load settings from the environment once per process."""
    settings = AppSettings.from_env()
    settings.validate_combinations()
    return settings
