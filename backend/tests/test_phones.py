from __future__ import annotations

import pytest

from engagement_web.errors import InvalidIdentifierError
from engagement_web.phones import (
    canonical_phone,
    default_display_name,
    is_group_or_broadcast,
    is_opaque_identifier,
    is_placeholder_name,
    mask_phone,
    normalize_phone,
    strip_provider_address,
)


def test_normalize_phone_adds_default_country_code_to_local_numbers() -> None:
    assert normalize_phone("11987654321") == "5511987654321"
    assert normalize_phone("(11) 98765-4321") == "5511987654321"


def test_normalize_phone_keeps_numbers_with_country_code() -> None:
    assert normalize_phone("+5511987654321") == "5511987654321"
    assert normalize_phone("whatsapp:+14155550123") == "14155550123"
    assert normalize_phone("+14155550123") == "14155550123"
    assert normalize_phone("+4155550123") == "4155550123"
    assert normalize_phone("5511987654321@c.us") == "5511987654321"


def test_normalize_phone_honors_configured_country_code() -> None:
    assert normalize_phone("4155550123", default_country_code="1") == "14155550123"


@pytest.mark.parametrize("raw", [None, "", "   ", "abc", "12345", "0011987654321", "120363025@g.us"])
def test_normalize_phone_rejects_invalid_identifiers(raw: str | None) -> None:
    with pytest.raises(InvalidIdentifierError):
        normalize_phone(raw)


def test_strip_provider_address_removes_prefixes_and_suffixes() -> None:
    assert strip_provider_address("whatsapp:+5511987654321") == "+5511987654321"
    assert strip_provider_address("5511987654321@s.whatsapp.net") == "5511987654321"
    assert strip_provider_address(" tel:+14155550123 ") == "+14155550123"


def test_group_and_broadcast_identifiers_are_detected() -> None:
    assert is_group_or_broadcast("120363025-1234@g.us")
    assert is_group_or_broadcast("123@newsletter")
    assert is_group_or_broadcast("status@broadcast")
    assert not is_group_or_broadcast("5511987654321")
    assert not is_group_or_broadcast(None)


def test_canonical_phone_adds_brazilian_ninth_digit_to_mobiles() -> None:
    assert canonical_phone("551187654321") == "5511987654321"
    assert canonical_phone("5511987654321") == "5511987654321"
    assert canonical_phone("551133334444") == "551133334444"
    assert canonical_phone("14155550123") == "14155550123"


def test_linked_ids_are_not_phones() -> None:
    assert is_opaque_identifier("5511987654321@lid")
    assert not is_opaque_identifier("5511987654321@c.us")
    with pytest.raises(InvalidIdentifierError):
        normalize_phone("5511987654321@lid")


def test_placeholder_names_and_masking() -> None:
    phone = "5511987654321"
    assert default_display_name(phone) == "WhatsApp 4321"
    assert is_placeholder_name("WhatsApp 4321", phone)
    assert is_placeholder_name(phone, phone)
    assert is_placeholder_name(None, phone)
    assert not is_placeholder_name("Maria Silva", phone)
    assert mask_phone("+55 11 98765-4321") == "***4321"
    assert mask_phone("12") == "***"
