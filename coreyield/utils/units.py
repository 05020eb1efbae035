"""
Conversion between whole-token Decimal amounts and integer base units.
"""
from decimal import Decimal
from typing import Union

from coreyield.exceptions import ValidationError

Number = Union[Decimal, int, str]


def to_decimal(value: Number) -> Decimal:
    """Coerce user input to Decimal without going through float."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(value)
    except ArithmeticError as e:
        raise ValidationError(f"Not a decimal amount: {value!r}") from e


def to_base_units(amount: Number, decimals: int) -> int:
    """
    Convert a whole-token amount into integer base units.

    Rounds DOWN so the ledger is never asked for more than the caller typed.
    Exact for any number of digits.
    """
    if decimals < 0:
        raise ValidationError(f"Token decimals must be >= 0, got {decimals}")
    value = to_decimal(amount)
    if not value.is_finite():
        raise ValidationError(f"Not a finite amount: {amount!r}")
    numerator, denominator = value.as_integer_ratio()
    return numerator * 10 ** decimals // denominator


def from_base_units(raw: int, decimals: int) -> Decimal:
    """Convert integer base units into a whole-token Decimal."""
    # no context rounding
    return Decimal(f"{int(raw)}E-{decimals}")


def require_positive(amount: Number, field_name: str = "amount") -> Decimal:
    """Return `amount` as Decimal, raising ValidationError unless it is > 0."""
    value = to_decimal(amount)
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"{field_name} must be > 0, got {amount}")
    return value
