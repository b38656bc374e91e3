"""
Phone number normalisation for the M-Pesa rail.

Daraja only accepts MSISDNs in the 254XXXXXXXXX form. Users type numbers as
0712 345 678, +254-712-345678, 712345678 and so on, so everything is folded
into the canonical form before it is stored or sent anywhere.
"""

import re

from app.core.exceptions import InvalidPhoneFormat

COUNTRY_CODE = "254"
CANONICAL_PATTERN = re.compile(r"^254[17]\d{8}$")
_SEPARATORS = re.compile(r"[\s\-().]")


def normalize_phone_number(raw: str) -> str:
    """
    Return the canonical 2547XXXXXXXX / 2541XXXXXXXX form of ``raw``.
    Raises InvalidPhoneFormat when the input cannot be mapped to exactly
    twelve digits with a Safaricom carrier prefix.
    """
    if raw is None:
        raise InvalidPhoneFormat()

    phone = _SEPARATORS.sub("", str(raw))
    if phone.startswith("+"):
        phone = phone[1:]

    if not phone.isdigit():
        raise InvalidPhoneFormat()

    if phone.startswith("0"):
        phone = COUNTRY_CODE + phone[1:]
    elif not phone.startswith(COUNTRY_CODE):
        phone = COUNTRY_CODE + phone

    if not CANONICAL_PATTERN.match(phone):
        raise InvalidPhoneFormat()
    return phone


def mask_phone_number(phone: str) -> str:
    """254712345678 -> 2547******78, for logs."""
    if not phone or len(phone) < 6:
        return "***"
    return phone[:4] + "*" * (len(phone) - 6) + phone[-2:]
