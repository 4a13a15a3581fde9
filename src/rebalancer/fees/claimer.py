"""Daily fee claim pass across all positions.

Runs at most once per UTC day during the configured check hour. A pass
claims only when the aggregate unclaimed fee value across all positions
exceeds the global threshold; positions below the per-position minimum are
skipped within the pass. One failed claim is logged and the pass moves on;
a claim whose transaction the ledger already holds is reported apart from
failures.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from rebalancer.analysis.valuation import BucketValuation
from rebalancer.clock import Clock, now_ms, utc_date, utc_hour
from rebalancer.config import FeeClaimSettings
from rebalancer.engine.retry import Sleep
from rebalancer.exceptions import FeeClaimError
from rebalancer.fees.ledger import FeeAccrualLedger
from rebalancer.logging import get_logger, short_key
from rebalancer.models import ClaimedFeeRecord, Position
from rebalancer.position.source import PositionSource

logger = get_logger(__name__)

_ZERO = Decimal("0")


@dataclass
class ClaimPassResult:
    """Summary of one claim pass."""

    aggregate_value: Decimal = _ZERO
    triggered: bool = False
    claimed: list[ClaimedFeeRecord] = field(default_factory=list)
    already_recorded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class FeeClaimer:
    """Claims accrued swap fees and records them in the ledger.

    Args:
        source: Position source performing the claim.
        ledger: Fee ledger receiving claim records.
        settings: Schedule, thresholds and pacing.
        sleep: Awaitable delay between claims.
        clock: Returns the current time in milliseconds.
    """

    def __init__(
        self,
        source: PositionSource,
        ledger: FeeAccrualLedger,
        settings: FeeClaimSettings | None = None,
        sleep: Sleep | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._source = source
        self._ledger = ledger
        self._settings = settings or FeeClaimSettings()
        self._sleep: Sleep = sleep or asyncio.sleep
        self._clock = clock or now_ms
        self._last_check_date: str | None = None

    def is_due(self, now: int | None = None) -> bool:
        """True once per UTC day during the check hour; marks the day as checked."""
        if not self._settings.enabled:
            return False
        timestamp = self._clock() if now is None else now
        today = utc_date(timestamp)
        if utc_hour(timestamp) != self._settings.check_hour or self._last_check_date == today:
            return False
        self._last_check_date = today
        return True

    async def run(self, positions: Sequence[Position], current_price: Decimal) -> ClaimPassResult:
        """Claim fees for every position worth claiming, if the aggregate qualifies."""
        valuation = BucketValuation(self._source.base_decimals, self._source.quote_decimals)
        position_fees = [
            (position, sum(valuation.fee_values(position, current_price), _ZERO))
            for position in positions
        ]
        result = ClaimPassResult(aggregate_value=sum((v for _, v in position_fees), _ZERO))

        if not self._ledger.should_claim(result.aggregate_value):
            logger.info(
                "fee_claim_below_threshold",
                aggregate_value=str(result.aggregate_value),
                threshold=str(self._settings.threshold_usd),
            )
            return result

        result.triggered = True
        logger.info(
            "fee_claim_pass_started",
            aggregate_value=str(result.aggregate_value),
            positions=len(position_fees),
        )

        for position, fee_value in position_fees:
            if not self._ledger.should_claim_position(fee_value):
                result.skipped.append(position.key)
                logger.debug(
                    "fee_claim_position_skipped",
                    position_key=short_key(position.key),
                    fee_value=str(fee_value),
                )
                continue

            try:
                record = await self._claim(position, current_price)
            except Exception as e:
                result.failed.append(position.key)
                logger.error(
                    "fee_claim_failed",
                    position_key=short_key(position.key),
                    error=str(e),
                )
            else:
                if record is None:
                    # claimed on the source, ledger already holds the tx ref
                    result.already_recorded.append(position.key)
                    logger.warning("fee_claim_already_recorded", position_key=short_key(position.key))
                else:
                    result.claimed.append(record)

            await self._sleep(self._settings.inter_claim_delay)

        logger.info(
            "fee_claim_pass_completed",
            claimed=len(result.claimed),
            already_recorded=len(result.already_recorded),
            skipped=len(result.skipped),
            failed=len(result.failed),
        )
        return result

    async def _claim(self, position: Position, current_price: Decimal) -> ClaimedFeeRecord | None:
        tx_refs = await self._source.claim_fees(position.key)
        if not tx_refs:
            raise FeeClaimError("claim returned no transaction reference")
        return await self._ledger.record_claim(
            position.key,
            tx_refs[-1],
            position.unclaimed_fee_base,
            position.unclaimed_fee_quote,
            current_price,
        )
