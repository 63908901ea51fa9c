"""
Minor-unit amount handling.

All balances are integers in minor currency units (e.g. pence). Percentage
math goes through Decimal and is rounded half-up back to int; floats are
rejected outright.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .errors import InvalidAmountError

HUNDRED = Decimal("100")


def validate_minor_units(value: object, context: str = "amount", allow_zero: bool = False) -> int:
    """Validate that a value is a non-negative integer amount in minor units.

    Args:
        value: Candidate amount
        context: Name used in error messages (e.g. "tip amount")
        allow_zero: Whether zero is accepted

    Returns:
        The amount as int

    Raises:
        InvalidAmountError: If the value is not an int, is negative, or is
            zero when zero is not allowed
    """
    # bool is an int subclass; True must not pass as 1 penny
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(
            f"Invalid {context}: must be an integer in minor units, got {type(value).__name__}"
        )
    if value < 0:
        raise InvalidAmountError(f"Invalid {context}: cannot be negative (got {value})")
    if value == 0 and not allow_zero:
        raise InvalidAmountError(f"Invalid {context}: cannot be zero")
    return value


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """Convert a percentage to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def validate_percentage(value: Union[int, float, str, Decimal], context: str = "percentage") -> Decimal:
    """Parse an ownership percentage.

    Raises:
        ValueError: If the value is not a finite number between 0 and 100
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid {context}: must be a number, got bool")
    try:
        pct = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid {context}: not a number ({value!r})")
    if not pct.is_finite() or not Decimal("0") <= pct <= HUNDRED:
        raise ValueError(f"Invalid {context}: must be between 0 and 100 (got {value})")
    return pct


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest whole minor unit, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage_of(amount: int, percent: Union[int, float, str, Decimal]) -> int:
    """Integer share of ``amount`` at ``percent`` (0-100), rounded half-up."""
    return round_half_up(Decimal(amount) * to_decimal(percent) / HUNDRED)


def format_minor_units(amount: int, symbol: str = "£") -> str:
    """Render minor units for display, e.g. 1250 -> '£12.50'."""
    major = (Decimal(amount) / HUNDRED).quantize(Decimal("0.01"))
    sign = "-" if major < 0 else ""
    return f"{sign}{symbol}{abs(major):,.2f}"
