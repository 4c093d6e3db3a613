"""WhatsApp appointment booking engine: availability, conversations and reminders."""

__version__ = "0.1.0"
