"""Client phone numbers as shown on threads.

Numbers arrive from several places (the client record, the phone number
table, messenger profiles) in whatever shape the operator typed them.
Threads carry E.164 when the number parses and the raw text otherwise.
"""

from __future__ import annotations

import phonenumbers
from phonenumbers import PhoneNumber, PhoneNumberFormat

from . import config


def _region(country_code: str | None) -> str:
    return (country_code or config.DEFAULT_PHONE_COUNTRY or "US").upper()


def _parse(raw, region: str) -> PhoneNumber | None:
    """Parse *raw* and keep it only if its length is possible for its region.

    Possible rather than valid, so numbers with unassigned prefixes survive.
    """
    text = str(raw or "").strip()
    if not text:
        return None
    try:
        number = phonenumbers.parse(text, region)
    except phonenumbers.NumberParseException:
        return None
    return number if phonenumbers.is_possible_number(number) else None


def normalize_phone(raw_number, country_code: str | None = None) -> str | None:
    """E.164 form of *raw_number*, or None when it does not parse."""
    number = _parse(raw_number, _region(country_code))
    if number is None:
        return None
    return phonenumbers.format_number(number, PhoneNumberFormat.E164)


def thread_phone(raw_number) -> str:
    """Phone stored on a thread: E.164 when possible, else the trimmed input."""
    text = str(raw_number or "").strip()
    return normalize_phone(text) or text


def format_phone(e164_number, country_code: str | None = None) -> str:
    """Display form: national inside the display country, international outside it.

    Unparseable input is returned unchanged.
    """
    if not e164_number:
        return ""
    region = _region(country_code)
    number = _parse(e164_number, region)
    if number is None:
        return e164_number
    home = (phonenumbers.region_code_for_number(number) or "").upper() == region
    style = PhoneNumberFormat.NATIONAL if home else PhoneNumberFormat.INTERNATIONAL
    return phonenumbers.format_number(number, style)
