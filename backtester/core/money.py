"""Decimal helpers for monetary arithmetic.

Money never travels as float inside the ledger or the cost model. Values
coming from floats (CSV loaders, env settings) go through ``str`` first so
that ``0.1`` becomes ``Decimal("0.1")`` rather than its binary expansion.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")
ONE = Decimal("1")
CENT = Decimal("0.01")


def to_decimal(value: Any, *, field: str = "value") -> Decimal:
    """Coerce ints, strings, floats and Decimals into a Decimal."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError(f"{field}: bool is not a monetary amount")
    if isinstance(value, (int, float, str)):
        try:
            return Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"{field}: cannot convert {value!r} to Decimal") from exc
    raise TypeError(f"{field}: unsupported type {type(value).__name__}")


def round2(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp(value: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    return max(lower, min(value, upper))


__all__ = ["ZERO", "ONE", "CENT", "to_decimal", "round2", "clamp"]
