"""Per-position regime transition detection.

Remembers the last observed side ratio of every position and emits a
PriceHistoryRecord when a position crosses fully into the ask (base-heavy)
or bid (quote-heavy) regime. The record captures the weighted average price
at which the position completed that side.

Lifecycle: an entry is created on the first observation of a position and
updated on every later one. Entries for positions that disappear from the
position source are dropped by evict_absent() when eviction is enabled.
"""

import time
from collections.abc import Callable, Iterable
from decimal import Decimal

from rebalancer.config import RegimeSettings
from rebalancer.logging import get_logger, short_key
from rebalancer.models import PriceHistoryRecord, Side

logger = get_logger(__name__)


class RegimeTracker:
    """Detects bid/ask regime transitions from consecutive side ratios.

    Args:
        settings: Ask/bid side-ratio thresholds.
        clock: Returns the current time in milliseconds.
    """

    def __init__(
        self,
        settings: RegimeSettings | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._settings = settings or RegimeSettings()
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._last_ratio: dict[str, Decimal] = {}

    def last_ratio(self, position_key: str) -> Decimal | None:
        return self._last_ratio.get(position_key)

    @property
    def tracked_keys(self) -> set[str]:
        return set(self._last_ratio)

    def on_observation(
        self,
        position_key: str,
        side_ratio: Decimal,
        avg_price: Decimal,
        base_value: Decimal,
        quote_value: Decimal,
    ) -> PriceHistoryRecord | None:
        """Record an observation and return a history record on a transition.

        With no prior ratio, a record is seeded only when the position is
        already fully in one regime. Afterwards a record is emitted when the
        ratio crosses up through the ask threshold or down through the bid
        threshold. The stored ratio is always updated.
        """
        ask_threshold = self._settings.ask_threshold
        bid_threshold = self._settings.bid_threshold
        previous = self._last_ratio.get(position_key)

        price_type: Side | None = None
        if previous is None:
            if side_ratio >= ask_threshold:
                price_type = Side.ASK
            elif side_ratio <= bid_threshold:
                price_type = Side.BID
        elif previous < ask_threshold <= side_ratio:
            price_type = Side.ASK
        elif previous > bid_threshold >= side_ratio:
            price_type = Side.BID

        self._last_ratio[position_key] = side_ratio

        if price_type is None:
            return None

        record = PriceHistoryRecord(
            position_key=position_key,
            timestamp_ms=self._clock(),
            price_type=price_type,
            avg_price=avg_price,
            amount=base_value if price_type is Side.ASK else quote_value,
        )
        logger.info(
            "regime_transition",
            position_key=short_key(position_key),
            price_type=price_type.value,
            seeded=previous is None,
            side_ratio=str(side_ratio),
            avg_price=str(avg_price),
        )
        return record

    def evict_absent(self, active_keys: Iterable[str]) -> list[str]:
        """Drop entries for positions not in active_keys. Returns evicted keys."""
        active = set(active_keys)
        evicted = [key for key in self._last_ratio if key not in active]
        for key in evicted:
            del self._last_ratio[key]
        if evicted:
            logger.info(
                "regime_entries_evicted",
                count=len(evicted),
                position_keys=[short_key(k) for k in evicted],
            )
        return evicted
