from __future__ import annotations

import re
from typing import List

from ..config import get_settings

_NON_DIGITS = re.compile(r"\D")


def _phone_settings():
    return get_settings().phone


def normalize(phone: str) -> str:
    """Strip every non-digit character."""
    return _NON_DIGITS.sub("", phone or "")


def _mobile_prefix() -> str:
    cfg = _phone_settings()
    return f"{cfg.country_code}{cfg.mobile_indicator}"


def canonical(phone: str) -> str:
    """Digits-only phone with country code and mobile indicator present.

    With the default Argentine convention ``+54 9 11 2345-6789``,
    ``5491123456789``, ``541123456789`` and ``91123456789`` all become
    ``5491123456789``.
    """
    cfg = _phone_settings()
    cleaned = normalize(phone)
    mobile_prefix = _mobile_prefix()
    if cleaned.startswith(mobile_prefix):
        return cleaned
    if cleaned.startswith(cfg.country_code):
        return mobile_prefix + cleaned[len(cfg.country_code) :]
    if cleaned.startswith(cfg.mobile_indicator):
        return cfg.country_code + cleaned
    return mobile_prefix + cleaned


def format_phone(phone: str) -> str:
    """Canonical dialable form, e.g. ``+5491123456789``."""
    return f"+{canonical(phone)}"


def national_number(phone: str) -> str:
    """Canonical number without country code and mobile indicator."""
    return canonical(phone)[len(_mobile_prefix()) :]


def generate_patterns(phone: str) -> List[str]:
    """Return lookup variants for ``phone``, most specific first.

    Historic records may have been stored raw, with or without ``+``, or
    without the mobile indicator digit; every such variant is included once.
    """
    cfg = _phone_settings()
    normalized = normalize(phone)
    mobile_prefix = _mobile_prefix()
    national = (
        normalized[len(mobile_prefix) :]
        if normalized.startswith(mobile_prefix)
        else national_number(normalized)
    )
    candidates = [
        phone,
        f"+{normalized}",
        normalized,
        f"+{mobile_prefix}{national}",
        f"{mobile_prefix}{national}",
        national,
        f"+{cfg.country_code}{national}",
        f"{cfg.country_code}{national}",
    ]
    patterns: List[str] = []
    for candidate in candidates:
        if candidate and candidate not in patterns:
            patterns.append(candidate)
    return patterns


def to_transport_format(phone: str) -> str:
    """Address understood by the WhatsApp provider, e.g. ``whatsapp:+549...``."""
    return f"{_phone_settings().transport_prefix}{format_phone(phone)}"


def from_transport_format(phone: str) -> str:
    return (phone or "").replace(_phone_settings().transport_prefix, "").strip()
