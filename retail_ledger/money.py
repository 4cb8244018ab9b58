"""
Money Module

Fixed-point monetary amounts with two fractional digits. NEVER uses float
for monetary values; every amount in the ledger is a quantized Decimal.
"""

from decimal import Decimal, Inexact, InvalidOperation, ROUND_HALF_UP, getcontext, localcontext
from typing import Union

from .errors import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, str]


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert a caller-supplied value to a two-place Decimal

    Args:
        value: Decimal, int or numeric string

    Returns:
        Decimal quantized to two fractional digits

    Raises:
        InvalidAmountError: If the value is a float, not numeric, not finite,
            or carries more than two fractional digits
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(
            f"Amount must be Decimal, int or str, got {type(value).__name__}",
            value=value,
        )

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(value.strip() if isinstance(value, str) else value)
        except InvalidOperation:
            raise InvalidAmountError(f"Cannot convert '{value}' to an amount", value=value)
    else:
        raise InvalidAmountError(
            f"Amount must be Decimal, int or str, got {type(value).__name__}",
            value=value,
        )

    if not amount.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {value}", value=value)

    try:
        quantized = amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmountError(
            f"Amount {value} exceeds {getcontext().prec} significant digits", value=value
        )
    if quantized != amount:
        raise InvalidAmountError(
            f"Amount {value} has more than two fractional digits", value=value
        )
    return quantized


def require_positive(value: AmountLike) -> Decimal:
    """Convert and check that an amount is strictly positive"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidAmountError(f"Amount must be positive, got {amount}", value=value)
    return amount


def require_non_negative(value: AmountLike) -> Decimal:
    """Convert and check that an amount is zero or positive"""
    amount = to_amount(value)
    if amount < ZERO:
        raise InvalidAmountError(f"Amount cannot be negative, got {amount}", value=value)
    return amount


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{amount:,.2f}"


def add_amounts(left: Decimal, right: Decimal) -> Decimal:
    """
    Exact sum of two amounts

    Raises:
        InvalidAmountError: If the sum cannot be held at two places within
            the context precision (it would otherwise be silently rounded)
    """
    left, right = to_amount(left), to_amount(right)
    with localcontext() as ctx:
        ctx.traps[Inexact] = True
        try:
            total = left + right
        except Inexact:
            raise InvalidAmountError(
                f"Sum of {left} and {right} exceeds {ctx.prec} significant digits",
                left=left, right=right,
            )
    return to_amount(total)
