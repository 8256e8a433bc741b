"""
Decimal helpers for credit amounts.

Credits carry two decimals; every computed amount is rounded half-up to the cent.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from backend.app.core.exceptions import InvalidAmountError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """
    Convert user input to Decimal without binary float artifacts.

    Floats go through their shortest repr, so 1.1 becomes Decimal("1.1").

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"{value!r} is not a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"{value!r} is not a number") from None
    else:
        raise ValueError(f"{value!r} is not a number")

    if not result.is_finite():
        raise ValueError(f"{value!r} is not a finite number")
    return result


def parse_amount(value: Any, allow_zero: bool = False) -> Decimal:
    """
    Validate a credit amount: positive (or zero when allowed), at most 2 decimals.

    Raises:
        InvalidAmountError
    """
    try:
        amount = to_decimal(value)
    except ValueError:
        raise InvalidAmountError(value) from None

    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmountError(value)
    if amount != amount.quantize(CENT):
        raise InvalidAmountError(value, reason="Amount must have at most 2 decimal places")
    return quantize(amount)
