"""
Decimal precision helpers

Quantities are held to 3 places, unit costs to 4 and money to 2,
all rounded half-up.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from .config import settings

ZERO = Decimal('0')

QUANTITY_QUANT = Decimal(1).scaleb(-settings.QUANTITY_DECIMAL_PLACES)
COST_QUANT = Decimal(1).scaleb(-settings.COST_DECIMAL_PLACES)
MONEY_QUANT = Decimal(1).scaleb(-settings.CURRENCY_DECIMAL_PLACES)


def to_decimal(value: Any) -> Decimal:
    """Convert to Decimal via str so floats do not leak binary error"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_quantity(value: Any) -> Decimal:
    return to_decimal(value).quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)


def round_cost(value: Any) -> Decimal:
    return to_decimal(value).quantize(COST_QUANT, rounding=ROUND_HALF_UP)


def round_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def line_total(quantity: Any, unit_cost: Any) -> Decimal:
    """quantity x unit cost, rounded to currency precision"""
    return round_money(to_decimal(quantity) * to_decimal(unit_cost))


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
