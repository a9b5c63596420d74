from __future__ import annotations

import re

from .errors import InvalidIdentifierError

_PROVIDER_PREFIXES = ("whatsapp:", "sms:", "tel:")
_PERSONAL_SUFFIXES = ("@c.us", "@s.whatsapp.net")
_NON_PERSONAL_MARKERS = ("@g.us", "@newsletter", "@broadcast")
# Linked ids hide the real number; their digits are not a phone.
_OPAQUE_ID_SUFFIXES = ("@lid",)
_E164_PATTERN = re.compile(r"^\+?[1-9]\d{9,14}$")


def strip_provider_address(raw: str) -> str:
    value = raw.strip()
    lowered = value.lower()
    for prefix in _PROVIDER_PREFIXES:
        if lowered.startswith(prefix):
            value = value[len(prefix):]
            lowered = lowered[len(prefix):]
            break
    for suffix in _PERSONAL_SUFFIXES:
        if lowered.endswith(suffix):
            value = value[: -len(suffix)]
            break
    return value.strip()


def is_group_or_broadcast(raw: str | None) -> bool:
    if not raw:
        return False
    lowered = raw.strip().lower()
    return any(marker in lowered for marker in _NON_PERSONAL_MARKERS)


def is_opaque_identifier(raw: str | None) -> bool:
    if not raw:
        return False
    lowered = raw.strip().lower()
    return any(lowered.endswith(suffix) for suffix in _OPAQUE_ID_SUFFIXES)


def normalize_phone(raw: str | None, *, default_country_code: str = "55") -> str:
    """Return the canonical digits-only form of a sender phone.

    Bare local numbers (10 or 11 digits) get the default country code. Numbers
    written with a leading ``+`` or with 12 or more digits already carry one
    and are kept as they are.
    """
    if raw is None or not raw.strip():
        raise InvalidIdentifierError("phone is empty")
    if is_group_or_broadcast(raw):
        raise InvalidIdentifierError("group and broadcast identifiers are not customer phones")
    if is_opaque_identifier(raw):
        raise InvalidIdentifierError("linked ids are not customer phones")

    stripped = strip_provider_address(raw)
    if not _E164_PATTERN.match(re.sub(r"[\s().-]", "", stripped)):
        raise InvalidIdentifierError(f"phone is not a valid number: {mask_phone(stripped)}")

    digits = "".join(ch for ch in stripped if ch.isdigit())
    if stripped.startswith("+"):
        return digits
    if len(digits) in (10, 11):
        return f"{default_country_code}{digits}"
    if 12 <= len(digits) <= 15:
        return digits
    raise InvalidIdentifierError(f"phone has an unsupported length: {mask_phone(stripped)}")


def canonical_phone(phone: str) -> str:
    """Identity key for a normalized phone.

    Brazilian mobiles appear both with and without the ninth digit; both
    spellings map to the 13-digit form so they share one customer.
    """
    if phone.startswith("55") and len(phone) == 12 and phone[4] in "6789":
        return phone[:4] + "9" + phone[4:]
    return phone


def default_display_name(phone: str) -> str:
    return f"WhatsApp {phone[-4:]}"


def is_placeholder_name(display_name: str | None, phone: str) -> bool:
    if display_name is None or not display_name.strip():
        return True
    return display_name.strip() in {default_display_name(phone), phone}


def mask_phone(phone: str) -> str:
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "***"
