"""Reference-currency valuation of bucketed positions.

Base token amounts are valued at each bucket's own price; quote token amounts
are already in the reference currency. Unclaimed fees are valued at the
current active price.

CRITICAL: All computations use Decimal. Raw int amounts are scaled by
10**decimals before pricing.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from rebalancer.config import RegimeSettings
from rebalancer.models import Position, PositionValue, PriceBucket, Regime

_ZERO = Decimal("0")


@dataclass(frozen=True)
class BucketValue:
    """Value of a bucket set split by token."""

    total_value: Decimal
    base_value: Decimal
    quote_value: Decimal

    @property
    def side_ratio(self) -> Decimal:
        """Fraction of value held in the base token (0 when empty)."""
        if self.total_value == _ZERO:
            return _ZERO
        return self.base_value / self.total_value


def scale(amount: int, decimals: int) -> Decimal:
    """Convert a raw token amount to whole-token units."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def value_buckets(
    buckets: Sequence[PriceBucket], base_decimals: int, quote_decimals: int
) -> BucketValue:
    """Sum the reference value of all buckets."""
    base_value = _ZERO
    quote_value = _ZERO
    for bucket in buckets:
        base_value += scale(bucket.base_amount, base_decimals) * bucket.price
        quote_value += scale(bucket.quote_amount, quote_decimals)
    return BucketValue(
        total_value=base_value + quote_value,
        base_value=base_value,
        quote_value=quote_value,
    )


def classify_regime(
    side_ratio: Decimal,
    ask_threshold: Decimal = Decimal("0.95"),
    bid_threshold: Decimal = Decimal("0.05"),
) -> Regime:
    """Classify a side ratio: >= ask threshold is ASK, <= bid threshold is BID."""
    if side_ratio >= ask_threshold:
        return Regime.ASK
    if side_ratio <= bid_threshold:
        return Regime.BID
    return Regime.MIXED


def weighted_average_price(
    buckets: Sequence[PriceBucket], base_decimals: int, quote_decimals: int
) -> Decimal:
    """Value-weighted average price of everything the position holds.

    Quote amounts are converted to base units at their own bucket price, so
    the result is total reference value over total base-equivalent units.
    Buckets with a non-positive price contribute only their base side.
    """
    total_value = _ZERO
    total_base_units = _ZERO
    for bucket in buckets:
        base_amount = scale(bucket.base_amount, base_decimals)
        quote_amount = scale(bucket.quote_amount, quote_decimals)

        total_value += base_amount * bucket.price
        total_base_units += base_amount

        if bucket.price > _ZERO:
            total_value += quote_amount
            total_base_units += quote_amount / bucket.price

    if total_base_units == _ZERO:
        return _ZERO
    return total_value / total_base_units


class BucketValuation:
    """Values positions for a single base/quote pair.

    Args:
        base_decimals: Decimal places of the base token.
        quote_decimals: Decimal places of the quote token.
        regime_settings: Side-ratio cutoffs for regime classification.
    """

    def __init__(
        self,
        base_decimals: int,
        quote_decimals: int,
        regime_settings: RegimeSettings | None = None,
    ) -> None:
        self._base_decimals = base_decimals
        self._quote_decimals = quote_decimals
        self._regime = regime_settings or RegimeSettings()

    @property
    def ask_threshold(self) -> Decimal:
        return self._regime.ask_threshold

    @property
    def bid_threshold(self) -> Decimal:
        return self._regime.bid_threshold

    def value(self, buckets: Sequence[PriceBucket]) -> BucketValue:
        return value_buckets(buckets, self._base_decimals, self._quote_decimals)

    def weighted_average_price(self, buckets: Sequence[PriceBucket]) -> tuple[Decimal, Regime]:
        """Return (avg_price, regime) for a bucket set."""
        side_ratio = self.value(buckets).side_ratio
        avg_price = weighted_average_price(buckets, self._base_decimals, self._quote_decimals)
        return avg_price, self.classify(side_ratio)

    def classify(self, side_ratio: Decimal) -> Regime:
        return classify_regime(side_ratio, self.ask_threshold, self.bid_threshold)

    def fee_values(self, position: Position, current_price: Decimal) -> tuple[Decimal, Decimal]:
        """Value unclaimed (base, quote) fees at the current price."""
        return (
            scale(position.unclaimed_fee_base, self._base_decimals) * current_price,
            scale(position.unclaimed_fee_quote, self._quote_decimals),
        )

    def token_value(self, base_amount: int, quote_amount: int, price: Decimal) -> tuple[Decimal, Decimal]:
        """Value raw (base, quote) amounts at a single price."""
        return (
            scale(base_amount, self._base_decimals) * price,
            scale(quote_amount, self._quote_decimals),
        )

    def value_position(
        self,
        position: Position,
        current_price: Decimal,
        last_bid_price: Decimal | None = None,
        last_ask_price: Decimal | None = None,
    ) -> PositionValue:
        """Build the full PositionValue for one position at the current price."""
        bucket_value = self.value(position.buckets)
        side_ratio = bucket_value.side_ratio
        avg_price = weighted_average_price(
            position.buckets, self._base_decimals, self._quote_decimals
        )
        fee_base_value, fee_quote_value = self.fee_values(position, current_price)

        prices = [b.price for b in position.buckets]
        return PositionValue(
            key=position.key,
            total_value=bucket_value.total_value,
            base_value=bucket_value.base_value,
            quote_value=bucket_value.quote_value,
            price_range_min=min(prices) if prices else _ZERO,
            price_range_max=max(prices) if prices else _ZERO,
            bucket_count=len(position.buckets),
            base_amount=position.base_total,
            quote_amount=position.quote_total,
            fee_base=position.unclaimed_fee_base,
            fee_quote=position.unclaimed_fee_quote,
            fee_base_value=fee_base_value,
            fee_quote_value=fee_quote_value,
            fee_value=fee_base_value + fee_quote_value,
            regime=self.classify(side_ratio),
            side_ratio=side_ratio,
            weighted_avg_price=avg_price,
            last_bid_price=last_bid_price,
            last_ask_price=last_ask_price,
        )
