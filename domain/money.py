"""
Domain: Money helpers.

All monetary amounts are `Decimal` values rounded half-up to cents. Floats never
enter the domain; values coming from the store or the wire go through `to_money`.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Convert an int/str/Decimal (or float from JSON) into a cent-rounded Decimal."""

    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"Invalid monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for value in values:
        total += value
    return to_money(total)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    """`amount × percent / 100`, rounded to cents."""

    return to_money(amount * percent / Decimal(100))
