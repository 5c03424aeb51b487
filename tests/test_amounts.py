from decimal import Decimal

import pytest

from consultpay.core.errors import ValidationError
from consultpay.services.amounts import (
    convert_approximate,
    from_provider_units,
    normalize_currency,
    to_provider_units,
    validate_amount,
)


def test_major_to_smallest_units():
    assert to_provider_units(Decimal("50.00"), "USD") == 5000
    assert to_provider_units("19.99", "ngn") == 1999
    assert to_provider_units(50.1, "usd") == 5010


def test_zero_decimal_currency_is_not_multiplied():
    assert to_provider_units(Decimal("1500"), "jpy") == 1500
    assert from_provider_units(1500, "JPY") == Decimal("1500")


def test_rounds_half_up_to_currency_exponent():
    assert to_provider_units("10.005", "usd") == 1001
    assert to_provider_units("10.004", "usd") == 1000


def test_smallest_to_major_units():
    assert from_provider_units(5000, "usd") == Decimal("50.00")
    assert from_provider_units(None, "usd") == Decimal("0")


@pytest.mark.parametrize("amount,currency", [
    (Decimal("50.00"), "usd"),
    (Decimal("0.01"), "ngn"),
    (Decimal("9999999.99"), "eur"),
    (Decimal("12345"), "krw"),
])
def test_round_trip(amount, currency):
    assert from_provider_units(to_provider_units(amount, currency), currency) == amount


def test_validate_amount_bounds():
    assert validate_amount("50", "usd") == Decimal("50.00")
    for bad in (0, -5, "10000000.00"):
        with pytest.raises(ValidationError):
            validate_amount(bad, "usd")


@pytest.mark.parametrize("bad", ["abc", "NaN", "Infinity", True, None])
def test_invalid_amounts_rejected(bad):
    with pytest.raises(ValidationError) as exc:
        validate_amount(bad, "usd")
    assert exc.value.field == "amount"


def test_normalize_currency():
    assert normalize_currency(" USD ") == "usd"
    with pytest.raises(ValidationError):
        normalize_currency("US")
    with pytest.raises(ValidationError):
        normalize_currency("12a")


def test_approximate_conversion_eur_to_ngn():
    amount, rate = convert_approximate(Decimal("10.00"), "EUR", "NGN")
    assert amount == Decimal("16000.00")
    assert rate == Decimal("1600")


def test_conversion_without_rate_fails():
    with pytest.raises(ValidationError):
        convert_approximate(Decimal("10"), "gbp", "ngn")
