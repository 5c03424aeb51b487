"""Conversion between major currency units and provider smallest units.

Callers always deal in major units (``Decimal("50.00")`` is fifty dollars);
only provider adapters see smallest units (cents, kobo, pesewas).
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from consultpay.core.errors import ValidationError

MAX_AMOUNT = Decimal("9999999.99")

# ISO 4217 currencies without a minor unit (Stripe "zero-decimal" list)
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg",
    "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

# Approximate rates only: no live exchange-rate source is wired in.
# Keys are (from, to); a rate multiplies the "from" amount.
APPROXIMATE_RATES = {
    ("eur", "ngn"): Decimal("1600"),
}


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().lower()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid currency code: {currency!r}", field="currency")
    return code


def currency_exponent(currency: str) -> int:
    return 0 if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES else 2


def quantize(amount, currency: str) -> Decimal:
    exp = currency_exponent(currency)
    return _to_decimal(amount).quantize(Decimal(1).scaleb(-exp), rounding=ROUND_HALF_UP)


def validate_amount(amount, currency: str) -> Decimal:
    value = quantize(amount, currency)
    if value <= 0:
        raise ValidationError("Amount must be greater than zero", field="amount")
    if value > MAX_AMOUNT:
        raise ValidationError("Amount exceeds the maximum allowed", field="amount")
    return value


def to_provider_units(amount, currency: str) -> int:
    exp = currency_exponent(currency)
    return int(quantize(amount, currency).scaleb(exp))


def from_provider_units(units, currency: str) -> Decimal:
    if units is None:
        return Decimal("0")
    exp = currency_exponent(currency)
    return quantize(Decimal(int(units)).scaleb(-exp), currency)


def convert_approximate(amount, from_currency: str, to_currency: str) -> tuple[Decimal, Decimal]:
    """Convert with the static table; returns (converted_amount, rate_used)."""
    src, dst = normalize_currency(from_currency), normalize_currency(to_currency)
    if src == dst:
        return quantize(amount, dst), Decimal("1")
    rate = APPROXIMATE_RATES.get((src, dst))
    if rate is None:
        raise ValidationError(f"No conversion available from {src.upper()} to {dst.upper()}", field="currency")
    return quantize(_to_decimal(amount) * rate, dst), rate


def _to_decimal(amount) -> Decimal:
    if isinstance(amount, bool):
        raise ValidationError(f"Invalid amount: {amount!r}", field="amount")
    try:
        # str() keeps floats like 50.1 from dragging binary noise along
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {amount!r}", field="amount")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}", field="amount")
    return value
