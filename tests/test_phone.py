import pytest

from app.payments.errors import PaymentValidationError
from app.payments.phone import (
    ACCOUNT_REFERENCE_MAX,
    format_msisdn,
    generate_account_reference,
    is_valid_msisdn,
    normalize_msisdn,
)


@pytest.mark.parametrize(
    "raw",
    ["0712345678", "712345678", "254712345678", "+254712345678", "+254 712 345 678", "0712-345-678"],
)
def test_normalize_accepts_common_kenyan_shapes(raw):
    assert normalize_msisdn(raw) == "254712345678"


def test_safaricom_01_prefix_numbers_are_accepted():
    assert normalize_msisdn("0110123456") == "254110123456"


@pytest.mark.parametrize("raw", ["", "12345", "07123456789", "+15550000000", "abc"])
def test_normalize_rejects_other_shapes(raw):
    with pytest.raises(PaymentValidationError) as exc:
        normalize_msisdn(raw)
    assert exc.value.field == "phone"
    assert not is_valid_msisdn(raw)


def test_format_returns_bare_digits_for_unknown_shapes():
    assert format_msisdn("+1 (555) 000") == "1555000"


def test_account_reference_strips_and_uppercases():
    assert generate_account_reference("inv-2024/001") == "INV2024001"
    assert generate_account_reference("") == ""


def test_account_reference_fits_daraja_limit():
    reference = generate_account_reference("acme-invoice-2024-000123")
    assert reference == "CE2024000123"
    assert len(reference) == ACCOUNT_REFERENCE_MAX
