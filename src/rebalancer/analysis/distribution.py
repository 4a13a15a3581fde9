"""Bucket distribution shape detection.

A bid-ask deployment leaves a recognizable slope across buckets: quote
stacked toward low prices after a bid, base stacked toward high prices after
an ask. Once price has swept through the range, the surviving token's slope
tells whether the position still carries the shape of the side it just
completed (and needs redeploying) or has already been redeployed.

The check compares the mean amount of the lower-priced half of the buckets
against the upper-priced half with a tolerance margin, which is robust to the
uneven per-bucket rounding a real deposit produces.
"""

from collections.abc import Sequence
from decimal import Decimal

from rebalancer.models import Direction, PriceBucket, Token

DEFAULT_TOLERANCE = Decimal("0.10")


def half_means(buckets: Sequence[PriceBucket], token: Token) -> tuple[Decimal, Decimal]:
    """Return mean token amount of the first and second half of the buckets.

    The split point is the integer midpoint, so for an odd count the middle
    bucket belongs to the second half.

    Args:
        buckets: Buckets ordered by ascending price (at least 2).
        token: Which token amount to average.
    """
    mid = len(buckets) // 2
    first = buckets[:mid]
    second = buckets[mid:]
    first_mean = Decimal(sum(b.amount_of(token) for b in first)) / len(first)
    second_mean = Decimal(sum(b.amount_of(token) for b in second)) / len(second)
    return first_mean, second_mean


def is_monotonic(
    buckets: Sequence[PriceBucket],
    token: Token,
    direction: Direction,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> bool:
    """Check whether a token's amounts rise or fall across the price range.

    ASCENDING holds when the second-half mean exceeds the first-half mean by
    more than the tolerance margin; DESCENDING is the mirror image.
    Fewer than two buckets never qualify.

    Args:
        buckets: Buckets ordered by ascending price.
        token: BASE or QUOTE amounts.
        direction: Slope to test for.
        tolerance: Relative margin, e.g. 0.10 for 10%.

    Returns:
        True if the distribution slopes in the given direction.
    """
    if len(buckets) < 2:
        return False

    first_mean, second_mean = half_means(buckets, token)
    factor = Decimal("1") + tolerance

    if direction is Direction.ASCENDING:
        return second_mean > first_mean * factor
    return first_mean > second_mean * factor
