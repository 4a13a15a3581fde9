"""Annualized return calculations over daily aggregates and fee income.

Pure functions of their inputs; callers fetch rows from the store.
"""

from collections.abc import Sequence
from decimal import Decimal

from rebalancer.models import DailyAggregate

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")
_DAYS_PER_YEAR = Decimal("365")

# Windows shorter than this use simple annualization
COMPOUND_MIN_DAYS = 3

SIMPLE_APY_MIN = Decimal("-1000")
SIMPLE_APY_MAX = Decimal("10000")
RETURN_MIN = Decimal("-0.99")
RETURN_MAX = Decimal("10")
COMPOUND_APY_MIN = Decimal("-1000")
COMPOUND_APY_MAX = Decimal("100000")
FEE_APY_MAX = Decimal("9999")


def clamp(value: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    return max(lower, min(upper, value))


def annualized_return(rows: Sequence[DailyAggregate]) -> Decimal:
    """Annualized return in percent for daily rows ordered oldest to newest.

    Uses first open to last close. Two-day windows are annualized simply
    (daily return x 365) to avoid compounding noise; three or more days are
    compounded with the total return clamped to [-0.99, 10].

    Returns:
        APY percent, 0 with fewer than 2 rows or a non-positive first open.
    """
    if len(rows) < 2:
        return _ZERO

    start_value = rows[0].open_value
    end_value = rows[-1].close_value
    if start_value <= _ZERO:
        return _ZERO

    total_return = (end_value - start_value) / start_value
    days = len(rows)

    if days < COMPOUND_MIN_DAYS:
        simple = total_return / days * _DAYS_PER_YEAR * _HUNDRED
        return clamp(simple, SIMPLE_APY_MIN, SIMPLE_APY_MAX)

    clamped_return = clamp(total_return, RETURN_MIN, RETURN_MAX)
    growth = (_ONE + clamped_return) ** (_DAYS_PER_YEAR / Decimal(days))
    return clamp((growth - _ONE) * _HUNDRED, COMPOUND_APY_MIN, COMPOUND_APY_MAX)


def fee_apy(
    claimed_total: Decimal,
    unclaimed_total: Decimal,
    current_total_value: Decimal,
    days: int,
) -> Decimal:
    """Fee-only APY percent: (claimed + unclaimed) / value x 365/days x 100.

    Returns 0 when the current value or total fees are not positive; the
    result is capped at FEE_APY_MAX.
    """
    if current_total_value <= _ZERO or days <= 0:
        return _ZERO

    total_fees = claimed_total + unclaimed_total
    if total_fees <= _ZERO:
        return _ZERO

    apy = total_fees / current_total_value * (_DAYS_PER_YEAR / Decimal(days)) * _HUNDRED
    return min(apy, FEE_APY_MAX)
