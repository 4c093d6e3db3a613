from turnero.config import get_settings
from turnero.services import phone


def test_normalize_strips_formatting() -> None:
    assert phone.normalize("+54 9 11 2345-6789") == "5491123456789"
    assert phone.normalize("whatsapp:+54 (11) 2345.6789") == "541123456789"
    assert phone.normalize("") == ""


def test_canonical_adds_missing_country_code_and_mobile_indicator() -> None:
    for variant in (
        "5491123456789",
        "+54 9 11 2345-6789",
        "541123456789",
        "91123456789",
        "1123456789",
    ):
        assert phone.canonical(variant) == "5491123456789", variant


def test_format_and_national_number() -> None:
    assert phone.format_phone("11 2345 6789") == "+5491123456789"
    assert phone.national_number("+5491123456789") == "1123456789"


def test_generate_patterns_is_ordered_and_unique() -> None:
    patterns = phone.generate_patterns("5491123456789")
    assert patterns == [
        "5491123456789",
        "+5491123456789",
        "1123456789",
        "+541123456789",
        "541123456789",
    ]


def test_generate_patterns_keeps_raw_input_first() -> None:
    raw = "+54 9 11 2345-6789"
    patterns = phone.generate_patterns(raw)
    assert patterns[0] == raw
    assert "+5491123456789" in patterns
    assert "1123456789" in patterns
    assert len(patterns) == len(set(patterns))


def test_transport_format_round_trip() -> None:
    assert phone.to_transport_format("1123456789") == "whatsapp:+5491123456789"
    assert phone.from_transport_format("whatsapp:+5491123456789") == "+5491123456789"
    assert phone.from_transport_format("+5491123456789") == "+5491123456789"


def test_country_code_comes_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("PHONE_COUNTRY_CODE", "52")
    monkeypatch.setenv("PHONE_MOBILE_INDICATOR", "1")
    get_settings.cache_clear()

    assert phone.canonical("5512345678") == "5215512345678"
    assert phone.canonical("525512345678") == "5215512345678"
