"""
Fixed-point currency arithmetic.

Amounts are ``Decimal`` values with at most two fractional digits. Floats are
rejected outright: ``Decimal(0.1)`` is not ``Decimal("0.1")``.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

from order_settlement.core.errors import PrecisionError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
MINOR_UNITS_PER_MAJOR = 100

AmountLike = Union[Decimal, int, str]


def parse_amount(value: AmountLike) -> Decimal:
    """
    Convert a value to a two-digit fixed-point amount.

    Args:
        value: Decimal, int or numeric string

    Returns:
        Decimal: Amount quantized to cents

    Raises:
        PrecisionError: If the value is a float, not finite, or has more
            than two significant fractional digits
    """
    if isinstance(value, float) or isinstance(value, bool):
        raise PrecisionError(f"Amounts must not be floats: {value!r}", value=value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as e:
        raise PrecisionError(f"Not a decimal amount: {value!r}", value=value) from e

    if not amount.is_finite():
        raise PrecisionError(f"Amount must be finite: {value!r}", value=value)

    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation as e:
        # More digits than the decimal context precision can hold.
        raise PrecisionError(f"Amount out of range: {value!r}", value=value) from e
    if quantized != amount:
        raise PrecisionError(
            f"Amount {amount} has more than two fractional digits", value=value
        )
    return quantized


def to_minor_units(amount: AmountLike) -> int:
    """
    Convert an amount to integer minor units for gateway wire formats.

    Example: Decimal("26.00") -> 2600
    """
    return int(parse_amount(amount) * MINOR_UNITS_PER_MAJOR)


def from_minor_units(minor: int) -> Decimal:
    """Inverse of ``to_minor_units``."""
    return (Decimal(int(minor)) / MINOR_UNITS_PER_MAJOR).quantize(CENT)


def line_total(unit_price: AmountLike, quantity: int) -> Decimal:
    """Unit price multiplied by an integer quantity."""
    return parse_amount(unit_price) * int(quantity)


def sum_amounts(amounts: Iterable[AmountLike]) -> Decimal:
    """Exact sum of amounts, starting from 0.00."""
    total = ZERO
    for amount in amounts:
        total += parse_amount(amount)
    return total


def apply_rate(amount: AmountLike, rate: Decimal) -> Decimal:
    """
    Apply a rate (e.g. tax) and round to cents.

    Rounding is ROUND_HALF_UP, the usual commercial convention.
    """
    return (parse_amount(amount) * Decimal(rate)).quantize(CENT, rounding=ROUND_HALF_UP)
