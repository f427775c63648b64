"""
Costbook Costing Engine — Decimal Values
==========================================
Every quantity, unit cost and total in the engine is a Decimal.

RULES (NON-NEGOTIABLE):
- No floats in engine state (floats are converted through str())
- Money is rounded ROUND_HALF_UP to currency places
- Average cost carries extra places to bound drift
- NaN / Infinity are rejected at the boundary
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

DecimalLike = Union[Decimal, int, str, float]

ZERO = Decimal("0")
ONE = Decimal("1")

DEFAULT_CURRENCY_PLACES = 2
DEFAULT_AVERAGE_COST_EXTRA_PLACES = 4


def to_decimal(value: DecimalLike, field_name: str = "value") -> Decimal:
    """
    Convert an external numeric input into a finite Decimal.

    Floats go through str() so that 0.1 stays 0.1.
    """
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be numeric, got bool.")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"{field_name} is not a number: {value!r}.") from None
    else:
        raise ValueError(
            f"{field_name} must be Decimal, int, str or float, "
            f"got {type(value).__name__}."
        )
    if not result.is_finite():
        raise ValueError(f"{field_name} must be finite, got {value!r}.")
    return result


def _exponent(places: int) -> Decimal:
    return ONE.scaleb(-places)


def quantize_money(value: Decimal, places: int = DEFAULT_CURRENCY_PLACES) -> Decimal:
    """Round to currency precision."""
    return value.quantize(_exponent(places), rounding=ROUND_HALF_UP)


def quantize_cost(
    value: Decimal,
    places: int = DEFAULT_CURRENCY_PLACES + DEFAULT_AVERAGE_COST_EXTRA_PLACES,
) -> Decimal:
    """Round a unit cost (average or derived) to cost precision."""
    return value.quantize(_exponent(places), rounding=ROUND_HALF_UP)


def line_cost(quantity: Decimal, unit_cost: Decimal, places: int = DEFAULT_CURRENCY_PLACES) -> Decimal:
    """quantity × unit_cost at money precision."""
    return quantize_money(quantity * unit_cost, places)
