# app/payments/phone.py
from __future__ import annotations

import re

from app.payments.errors import PaymentValidationError

COUNTRY_CODE = "254"
MSISDN_LENGTH = 12
# Daraja rejects an AccountReference longer than this
ACCOUNT_REFERENCE_MAX = 12

_NON_DIGITS = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def format_msisdn(phone: str) -> str:
    """
    Bring a Kenyan number into 2547XXXXXXXX form.
    Accepts 07..., 7... (9 digits), 254... and +254..., with any separators.
    Unrecognized shapes are returned as bare digits so validation can reject them.
    """
    cleaned = _NON_DIGITS.sub("", phone or "")
    if cleaned.startswith(COUNTRY_CODE):
        return cleaned
    if cleaned.startswith("0"):
        return COUNTRY_CODE + cleaned[1:]
    if len(cleaned) == 9:
        return COUNTRY_CODE + cleaned
    return cleaned


def is_valid_msisdn(phone: str) -> bool:
    formatted = format_msisdn(phone)
    return len(formatted) == MSISDN_LENGTH and formatted.startswith(COUNTRY_CODE)


def normalize_msisdn(phone: str) -> str:
    formatted = format_msisdn(phone)
    if len(formatted) != MSISDN_LENGTH or not formatted.startswith(COUNTRY_CODE):
        raise PaymentValidationError("phone", "Invalid phone number format")
    return formatted


def generate_account_reference(invoice_number: str) -> str:
    """Alphanumerics of the invoice number, uppercased. Long numbers keep their tail, where the sequence sits."""
    reference = _NON_ALNUM.sub("", invoice_number or "").upper()
    return reference[-ACCOUNT_REFERENCE_MAX:]
