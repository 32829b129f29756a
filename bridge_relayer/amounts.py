"""
Decimal amount translation between asset denominations.

Amounts travel as decimal strings and are scaled through plain integers,
so no float ever touches a value that ends up on-chain. Example of the
problem this avoids:

    float("0.1") * 1e8 = 9999999.999999998, not 10000000
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Union

from .errors import InvalidAmount

_DECIMAL_RE = re.compile(r"^(\d+)(?:\.(\d+))?$")


def to_base_units(amount: str, decimals: int) -> int:
    """
    Parse a decimal string into integer base units (amount * 10**decimals).

    Trailing zeros past `decimals` are accepted, any other extra digit is not:

        >>> to_base_units("0.00500000", 8)
        500000
        >>> to_base_units("1.50", 1)
        15
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    if not isinstance(amount, str):
        raise InvalidAmount(amount, "expected a decimal string")

    match = _DECIMAL_RE.match(amount.strip())
    if match is None:
        raise InvalidAmount(amount)

    whole, fraction = match.group(1), match.group(2) or ""
    if len(fraction) > decimals:
        excess = fraction[decimals:]
        if excess.strip("0"):
            raise InvalidAmount(amount, f"more than {decimals} fractional digits")
        fraction = fraction[:decimals]

    return int(whole) * 10**decimals + int(fraction.ljust(decimals, "0") or "0")


def from_base_units(value: int, decimals: int) -> str:
    """Format integer base units as a decimal string with exactly `decimals` digits."""
    if value < 0:
        raise InvalidAmount(value, "negative value")
    if decimals == 0:
        return str(value)
    whole, fraction = divmod(value, 10**decimals)
    return f"{whole}.{fraction:0{decimals}d}"


def rescale(value: int, from_precision: int, to_precision: int) -> int:
    """Rescale base units between precisions. Scaling down truncates."""
    if to_precision >= from_precision:
        return value * 10 ** (to_precision - from_precision)
    return value // 10 ** (from_precision - to_precision)


def translate(amount: str, from_precision: int, to_precision: int) -> str:
    """
    Translate a decimal amount from one denomination to another.

    Going to a finer precision appends zeros. Going to a coarser precision
    truncates toward zero; digits below the target precision are dropped,
    never rounded.

        >>> translate("0.00500000", 8, 18)
        '0.005000000000000000'
        >>> translate("1.999999", 6, 2)
        '1.99'
    """
    units = to_base_units(amount, from_precision)
    return from_base_units(rescale(units, from_precision, to_precision), to_precision)


def normalize_decimal(value: Union[int, float, str, Decimal]) -> str:
    """
    Render a payload number as a plain decimal string (no exponent).

    JSON numbers arrive as float; going through str() first keeps the
    shortest repr instead of the binary expansion.
    """
    if isinstance(value, bool):
        raise InvalidAmount(value, "boolean is not an amount")
    try:
        if isinstance(value, Decimal):
            dec_value = value
        elif isinstance(value, str):
            dec_value = Decimal(value.strip())
        else:
            dec_value = Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmount(value) from None

    if not dec_value.is_finite() or dec_value < 0:
        raise InvalidAmount(value, "must be a finite non-negative number")

    text = format(dec_value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
