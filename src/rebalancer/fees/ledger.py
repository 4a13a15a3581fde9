"""Fee accrual bookkeeping: claim thresholds, claim records, reinvest balances.

Claimed fees are appended as ClaimedFeeRecord rows. When reinvestment is
enabled the claimed raw amounts are also added to the position's
AccumulatedFee balance, which a later redeploy consumes one token at a time.
"""

from decimal import Decimal

from rebalancer.analysis.valuation import scale
from rebalancer.analytics.yield_metrics import fee_apy
from rebalancer.clock import Clock, days_ago_ms, now_ms
from rebalancer.config import FeeClaimSettings
from rebalancer.data.store import TrackerStore
from rebalancer.logging import get_logger, short_key
from rebalancer.models import AccumulatedFee, ClaimedFeeRecord, Token

logger = get_logger(__name__)

_ZERO = Decimal("0")


class FeeAccrualLedger:
    """Tracks claimed and accumulated fees for all positions.

    Args:
        store: Durable tracker store.
        settings: Claim thresholds and reinvestment flag.
        base_decimals: Decimal places of the base token.
        quote_decimals: Decimal places of the quote token.
        clock: Returns the current time in milliseconds.
    """

    def __init__(
        self,
        store: TrackerStore,
        settings: FeeClaimSettings | None = None,
        base_decimals: int = 9,
        quote_decimals: int = 6,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or FeeClaimSettings()
        self._base_decimals = base_decimals
        self._quote_decimals = quote_decimals
        self._clock = clock or now_ms

    @property
    def reinvest_enabled(self) -> bool:
        return self._settings.auto_reinvest

    def should_claim(self, unclaimed_total: Decimal, threshold: Decimal | None = None) -> bool:
        """True when the aggregate unclaimed value exceeds the global threshold."""
        limit = self._settings.threshold_usd if threshold is None else threshold
        return unclaimed_total > limit

    def should_claim_position(
        self, unclaimed_position: Decimal, minimum: Decimal | None = None
    ) -> bool:
        """True when a single position's unclaimed value is worth a claim."""
        floor = self._settings.min_position_usd if minimum is None else minimum
        return unclaimed_position >= floor

    async def record_claim(
        self,
        position_key: str,
        tx_ref: str,
        claimed_base: int,
        claimed_quote: int,
        price: Decimal,
    ) -> ClaimedFeeRecord | None:
        """Append a claim record and accumulate it for reinvestment.

        Returns None if the transaction was already recorded.
        """
        base_value = scale(claimed_base, self._base_decimals) * price
        quote_value = scale(claimed_quote, self._quote_decimals)
        record = ClaimedFeeRecord(
            timestamp_ms=self._clock(),
            position_key=position_key,
            tx_ref=tx_ref,
            claimed_base=claimed_base,
            claimed_quote=claimed_quote,
            claimed_base_value=base_value,
            claimed_quote_value=quote_value,
            total_claimed_value=base_value + quote_value,
            price_at_claim=price,
        )

        if not await self._store.insert_claimed_fee(record):
            return None

        if self._settings.auto_reinvest:
            await self._store.add_accumulated_fee(position_key, claimed_base, claimed_quote)

        logger.info(
            "fee_claim_recorded",
            position_key=short_key(position_key),
            tx_ref=tx_ref,
            claimed_base=claimed_base,
            claimed_quote=claimed_quote,
            total_value=str(record.total_claimed_value),
            accumulated=self._settings.auto_reinvest,
        )
        return record

    async def accumulated(self) -> list[AccumulatedFee]:
        return await self._store.get_accumulated_fees()

    async def total_accumulated(self, token: Token) -> int:
        """Sum of one token's accumulated balance across all positions."""
        fees = await self._store.get_accumulated_fees()
        return sum(fee.amount_of(token) for fee in fees)

    async def consume(self, token: Token) -> None:
        """Clear one token's accumulated balance across all positions."""
        pruned = await self._store.clear_accumulated_token(token)
        logger.info("accumulated_fees_consumed", token=token.value, rows_pruned=pruned)

    def accumulated_value(self, fee_base: int, fee_quote: int, price: Decimal) -> Decimal:
        return scale(fee_base, self._base_decimals) * price + scale(fee_quote, self._quote_decimals)

    async def fee_apy(
        self, days: int, current_total_value: Decimal, unclaimed_total: Decimal
    ) -> Decimal:
        """Fee APY over a trailing window of `days` including unclaimed fees."""
        if current_total_value <= _ZERO:
            return _ZERO
        since = days_ago_ms(self._clock(), days)
        claimed = await self._store.sum_claimed_fees_since(since)
        return fee_apy(claimed, unclaimed_total, current_total_value, days)
