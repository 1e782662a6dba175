"""Fixed-precision helpers for BTC and USD amounts."""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from app.core.exceptions import ValidationError

BTC_PLACES = Decimal("0.00000001")
USD_PLACES = Decimal("0.01")
RATE_PLACES = Decimal("0.01")
ZERO = Decimal("0")

Number = Union[str, int, float, Decimal]


def to_decimal(value: Number, field: str = "amount") -> Decimal:
    """Convert to Decimal without going through binary float repr"""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number", field=field)
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field)
    return result


def quantize_btc(amount: Number) -> Decimal:
    return to_decimal(amount).quantize(BTC_PLACES, rounding=ROUND_HALF_UP)


def quantize_usd(amount: Number) -> Decimal:
    return to_decimal(amount).quantize(USD_PLACES, rounding=ROUND_HALF_UP)


def btc_to_usd(amount: Number, rate: Number) -> Decimal:
    """USD value of a BTC amount at the given BTC/USD rate"""
    return quantize_usd(to_decimal(amount) * to_decimal(rate, "rate"))


def ensure_precision(value: Decimal, places: Decimal, field: str = "amount") -> Decimal:
    """Reject values finer than ``places`` instead of rounding them"""
    if value != value.quantize(places, rounding=ROUND_HALF_UP):
        digits = -places.as_tuple().exponent
        raise ValidationError(f"{field} cannot have more than {digits} decimal places", field=field)
    return value
