"""
Money Handling Module

Parses and formats balances with exact Decimal precision. Balances carry two
fractional digits. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, getcontext
from typing import Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# NUMERIC(15, 2) holds at most 13 integer digits
MAX_AMOUNT = Decimal("9999999999999.99")

AmountLike = Union[Decimal, int, str]


def parse_amount(value: AmountLike, field: str = "amount") -> Decimal:
    """
    Convert user input into a two-place Decimal.

    Args:
        value: Decimal, int or numeric string (floats are rejected)
        field: Name used in error messages

    Returns:
        Decimal quantized to cents

    Raises:
        ValidationError: If the value is not a finite number, has
            sub-cent precision or exceeds MAX_AMOUNT
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be a decimal string, not {type(value).__name__}")

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"invalid {field}: {value!r}") from None

    if not amount.is_finite():
        raise ValidationError(f"invalid {field}: {value!r}")

    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation:
        raise ValidationError(f"{field} is too large: {value}") from None

    if quantized != amount:
        raise ValidationError(f"{field} has more than two decimal places: {value}")

    if abs(quantized) > MAX_AMOUNT:
        raise ValidationError(f"{field} is too large: {value} (max {MAX_AMOUNT})")

    return quantized


def to_cents(amount: Decimal) -> int:
    """Scale a two-place Decimal to integer cents"""
    return int(amount.quantize(CENT) * 100)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a two-place Decimal"""
    return (Decimal(cents) / 100).quantize(CENT)


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{amount:.2f}"
