"""
Fractional sibling ordering.

Order keys are Decimals. Between any two distinct keys there is always
another key, so inserting a node never renumbers its siblings.
"""

from __future__ import annotations
from decimal import ROUND_FLOOR, Decimal, localcontext
from typing import Optional


FIRST_KEY = Decimal(1)


def _precision_for(*keys: Decimal) -> int:
    # Enough digits to hold every key exactly plus one more place
    high = max(k.adjusted() for k in keys)
    low = min(k.as_tuple().exponent for k in keys)
    return max(28, high - low + 4)


def key_between(before: Optional[Decimal], after: Optional[Decimal]) -> Decimal:
    """
    A key strictly between `before` and `after`.

    None means "open end": key_between(None, k) < k, key_between(k, None) > k.
    Whole numbers are preferred when one fits.
    """
    if before is None and after is None:
        return FIRST_KEY
    keys = [k for k in (before, after) if k is not None]
    with localcontext() as ctx:
        ctx.prec = _precision_for(*keys)
        if before is None:
            return after.to_integral_value(rounding=ROUND_FLOOR) - 1
        if after is None:
            return before.to_integral_value(rounding=ROUND_FLOOR) + 1
        if before >= after:
            raise ValueError(f"order keys out of order: {before} >= {after}")
        whole = before.to_integral_value(rounding=ROUND_FLOOR) + 1
        if whole < after:
            return whole
        return ((before + after) / 2).normalize()
