"""Token amount conversion between display units and integer base units."""
from decimal import Decimal, InvalidOperation, localcontext
from typing import Union

from app.core.exceptions import InvalidAmount

DISPLAY_PLACES = 6
# uint256 has 78 decimal digits
_PRECISION = 78

AmountLike = Union[Decimal, str, int, float]


def to_decimal(amount: AmountLike) -> Decimal:
    """Parse an amount without going through binary floating point."""
    try:
        # str() first so 16.5 becomes Decimal("16.5"), not its binary expansion
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise InvalidAmount(f"Amount must be finite: {amount!r}")
    return value


def to_base_units(amount: AmountLike, decimals: int) -> int:
    """
    Convert a display amount to base units.

    Raises InvalidAmount for negative values or values with more fractional
    digits than the token supports.
    """
    value = to_decimal(amount)
    if value < 0:
        raise InvalidAmount(f"Amount must not be negative: {value}")

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"Amount {value} exceeds token precision of {decimals} decimals"
            )
        return int(scaled)


def from_base_units(base_units: int, decimals: int) -> Decimal:
    """Convert base units back to an exact display amount."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(int(base_units)).scaleb(-decimals)


def format_amount(base_units: int, decimals: int, places: int = DISPLAY_PLACES) -> str:
    """Render base units as a fixed-point string, e.g. 500000 @6 -> '0.500000'."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        quantum = Decimal(1).scaleb(-places)
        return format(from_base_units(base_units, decimals).quantize(quantum), "f")
