"""Plate and phone normalization for walk-up entries."""

import re
from typing import Optional

from app.config import settings
from app.domain.exceptions import InvalidPhoneError, InvalidPlateError

# 10-digit local mobile number, first digit 6-9
_MOBILE_PATTERN = re.compile(r"^[6-9]\d{9}$")
# Registration marks: letters and digits only after normalization, e.g. KL07AB1234
_PLATE_PATTERN = re.compile(r"^[A-Z0-9]{4,12}$")


def normalize_plate(plate: str) -> str:
    """Uppercase a plate number and drop whitespace, dashes and dots.

    Args:
        plate: Plate as typed by the operator, e.g. ``"kl 07 ab-1234"``

    Returns:
        str: Normalized plate like ``"KL07AB1234"``

    Raises:
        InvalidPlateError: If nothing plate-like remains after cleaning
    """
    if not plate or not plate.strip():
        raise InvalidPlateError("Vehicle number is required")

    cleaned = re.sub(r"[\s\-.]", "", plate).upper()
    if not _PLATE_PATTERN.match(cleaned):
        raise InvalidPlateError(f"Invalid vehicle number: {plate!r}")
    return cleaned


def normalize_phone(phone: str, country_code: Optional[str] = None) -> str:
    """Reduce a phone number to its 10-digit local form.

    Accepted formats:
    - +919876543210 (international)
    - 919876543210 (country code, no plus)
    - 09876543210 (trunk prefix)
    - 98765 43210 / 98765-43210 (local with separators)

    Raises:
        InvalidPhoneError: If the result is not a valid local mobile number
    """
    if not phone or not phone.strip():
        raise InvalidPhoneError("Customer phone is required")

    country_code = country_code or settings.PHONE_COUNTRY_CODE
    cleaned = re.sub(r"\D", "", phone)

    if cleaned.startswith(country_code) and len(cleaned) == 10 + len(country_code):
        cleaned = cleaned[len(country_code):]
    elif cleaned.startswith("0") and len(cleaned) == 11:
        cleaned = cleaned[1:]

    if not _MOBILE_PATTERN.match(cleaned):
        raise InvalidPhoneError(
            "Invalid phone number. Must be a valid 10-digit mobile number."
        )
    return cleaned


def is_valid_phone(phone: str) -> bool:
    try:
        normalize_phone(phone)
    except InvalidPhoneError:
        return False
    return True


def mask_phone(phone: str, visible_chars: int = 4) -> str:
    """Mask a phone number for log lines, e.g. '******3210'."""
    if len(phone) <= visible_chars:
        return "*" * len(phone)
    return "*" * (len(phone) - visible_chars) + phone[-visible_chars:]
