"""Normalization helpers for CRM-entered customer data.

Managers type birthdays and phone numbers by hand, so every provider
payload goes through these before it is built.
"""

from __future__ import annotations

import re
from typing import Any

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATE_SEPARATORS = re.compile(r"[./-]")
_NON_DIGITS = re.compile(r"\D")
_CYRILLIC = re.compile(r"[а-яёА-ЯЁ]")

DEFAULT_GOODS_NAME = "Товар"
GOODS_NAME_MAX_LENGTH = 200


def format_birthday(birthday: str | None) -> str | None:
    """Normalize a birthday to YYYY-MM-DD.

    ISO dates pass through unchanged. Other dates separated by dots,
    dashes, or slashes are reordered day-first or year-first by the width
    of the leading part, with zero-padded day and month.
    Anything else is returned as entered.

    Args:
        birthday: Raw birthday string from the CRM.

    Returns:
        Normalized date string, or None when the input is empty.
    """
    if not birthday:
        return None
    if _ISO_DATE.match(birthday):
        return birthday
    parts = _DATE_SEPARATORS.split(birthday)
    if len(parts) == 3:
        if len(parts[0]) == 4:
            year, month, day = parts
        else:
            day, month, year = parts
        return f"{year}-{month:0>2}-{day:0>2}"
    return birthday


def format_phone_international(phone: str | None) -> str | None:
    """Format a Moldovan phone number as +373XXXXXXXX."""
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    if digits.startswith("373"):
        return "+" + digits
    if digits.startswith("0"):
        return "+373" + digits[1:]
    return "+373" + digits


def format_phone_national(phone: str | None) -> str | None:
    """Format a Moldovan phone number with a leading trunk 0."""
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    if digits.startswith("373"):
        digits = "0" + digits[3:]
    if not digits.startswith("0"):
        digits = "0" + digits
    return digits


def contains_cyrillic(value: str | None) -> bool:
    return bool(value) and _CYRILLIC.search(value) is not None


def goods_name_from_items(items: list[dict[str, Any]]) -> str:
    """Describe order items in one line for the provider's goods field."""
    if not items:
        return DEFAULT_GOODS_NAME

    def _name(item: dict[str, Any]) -> str:
        offer = item.get("offer") or {}
        return offer.get("displayName") or offer.get("name") or DEFAULT_GOODS_NAME

    if len(items) == 1:
        return _name(items[0])
    return ", ".join(_name(item) for item in items)[:GOODS_NAME_MAX_LENGTH]
