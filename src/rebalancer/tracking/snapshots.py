"""Throttled total-value snapshots and daily aggregate maintenance.

Every evaluate() call values all positions and returns a fresh Snapshot.
Only one durable snapshot row is written per snapshot interval; regime
transition detection and price-history rows are never throttled.

Each persisted snapshot also upserts the current UTC day's aggregate
(open/close/high/low/pnl) and applies the retention policy. A store failure
is logged and never prevents the computed Snapshot from being returned.
"""

from collections.abc import Sequence
from decimal import Decimal

from rebalancer.analysis.valuation import BucketValuation
from rebalancer.clock import Clock, day_window_ms, days_ago_ms, now_ms, utc_date
from rebalancer.config import RegimeSettings, TrackerSettings
from rebalancer.data.store import TrackerStore
from rebalancer.logging import get_logger, short_key
from rebalancer.models import (
    DailyAggregate,
    OperationRecord,
    Position,
    PositionValue,
    Side,
    Snapshot,
)
from rebalancer.tracking.regime import RegimeTracker

logger = get_logger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class SnapshotStore:
    """Values positions each tick and persists throttled snapshots.

    Args:
        store: Durable tracker store.
        regime_tracker: Per-position regime memory (shared with the orchestrator).
        settings: Snapshot interval and retention configuration.
        regime_settings: Side-ratio thresholds used for valuation.
        clock: Returns the current time in milliseconds.
    """

    def __init__(
        self,
        store: TrackerStore,
        regime_tracker: RegimeTracker,
        settings: TrackerSettings | None = None,
        regime_settings: RegimeSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._regime_tracker = regime_tracker
        self._settings = settings or TrackerSettings()
        self._regime_settings = regime_settings or RegimeSettings()
        self._clock = clock or now_ms
        self._last_persisted_ms: int | None = None
        self._latest: Snapshot | None = None

    @property
    def latest(self) -> Snapshot | None:
        """Most recent computed snapshot, persisted or not."""
        return self._latest

    @property
    def last_persisted_ms(self) -> int | None:
        return self._last_persisted_ms

    @property
    def interval_ms(self) -> int:
        return self._settings.snapshot_interval_seconds * 1000

    async def bootstrap(self) -> None:
        """Load the last persisted snapshot time so restarts keep the throttle."""
        try:
            self._last_persisted_ms = await self._store.get_latest_snapshot_timestamp()
        except Exception as e:
            logger.error("snapshot_bootstrap_failed", error=str(e))
            return
        logger.info("snapshot_store_bootstrapped", last_persisted_ms=self._last_persisted_ms)

    def valuation(self, base_decimals: int, quote_decimals: int) -> BucketValuation:
        return BucketValuation(base_decimals, quote_decimals, self._regime_settings)

    def position_value(
        self, position: Position, base_decimals: int, quote_decimals: int
    ) -> Decimal:
        """Reference value of a single position's buckets (no side effects)."""
        return self.valuation(base_decimals, quote_decimals).value(position.buckets).total_value

    async def evaluate(
        self,
        positions: Sequence[Position],
        current_price: Decimal,
        base_decimals: int,
        quote_decimals: int,
    ) -> Snapshot:
        """Value all positions and return a Snapshot.

        The durable row is written only if the snapshot interval has elapsed
        since the last persisted one.
        """
        now = self._clock()
        valuation = self.valuation(base_decimals, quote_decimals)

        values: list[PositionValue] = []
        for position in positions:
            values.append(await self._observe(valuation, position, current_price))

        total_value = sum((v.total_value for v in values), _ZERO)
        snapshot = Snapshot(
            timestamp_ms=now,
            total_value=total_value,
            current_price=current_price,
            positions=tuple(values),
        )

        if self._should_persist(now):
            persisted = await self._persist(snapshot)
            if persisted:
                snapshot = Snapshot(
                    timestamp_ms=now,
                    total_value=total_value,
                    current_price=current_price,
                    positions=tuple(values),
                    persisted=True,
                )
                await self._upsert_daily(total_value, now)
                await self._apply_retention(now)

        self._latest = snapshot
        return snapshot

    async def record_operation(self, operation: OperationRecord) -> None:
        """Append an operation and recompute today's operation count."""
        try:
            await self._store.insert_operation(operation)
            start, end = day_window_ms(operation.timestamp_ms)
            count = await self._store.count_operations_between(start, end)
            await self._store.set_operation_count(utc_date(operation.timestamp_ms), count)
        except Exception as e:
            logger.error(
                "operation_record_failed",
                position_key=short_key(operation.position_key),
                error=str(e),
            )
            return

        logger.info(
            "operation_recorded",
            position_key=short_key(operation.position_key),
            action=operation.action.value,
            before_value=str(operation.before_value),
            after_value=str(operation.after_value),
            today_operations=count,
        )

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    async def _observe(
        self,
        valuation: BucketValuation,
        position: Position,
        current_price: Decimal,
    ) -> PositionValue:
        try:
            last_prices = await self._store.get_last_prices(position.key)
        except Exception as e:
            logger.warning(
                "last_prices_unavailable", position_key=short_key(position.key), error=str(e)
            )
            last_prices = {}

        value = valuation.value_position(
            position,
            current_price,
            last_bid_price=last_prices.get(Side.BID),
            last_ask_price=last_prices.get(Side.ASK),
        )

        record = self._regime_tracker.on_observation(
            position.key,
            value.side_ratio,
            value.weighted_avg_price,
            value.base_value,
            value.quote_value,
        )
        if record is not None:
            if record.price_type is Side.BID:
                value.last_bid_price = record.avg_price
            else:
                value.last_ask_price = record.avg_price
            try:
                await self._store.insert_price_history(record)
            except Exception as e:
                logger.error(
                    "price_history_write_failed",
                    position_key=short_key(position.key),
                    error=str(e),
                )
        return value

    def _should_persist(self, now: int) -> bool:
        if self._last_persisted_ms is None:
            return True
        return now - self._last_persisted_ms >= self.interval_ms

    async def _persist(self, snapshot: Snapshot) -> bool:
        try:
            await self._store.insert_snapshot(snapshot)
        except Exception as e:
            logger.error("snapshot_write_failed", error=str(e))
            return False

        self._last_persisted_ms = snapshot.timestamp_ms
        logger.info(
            "snapshot_persisted",
            total_value=str(snapshot.total_value),
            current_price=str(snapshot.current_price),
            positions=len(snapshot.positions),
        )
        return True

    async def _upsert_daily(self, total_value: Decimal, now: int) -> None:
        today = utc_date(now)
        try:
            existing = await self._store.get_daily_pnl(today)
            if existing is None:
                previous = await self._store.get_previous_daily_pnl(today)
                open_value = previous.close_value if previous is not None else total_value
                # operations recorded before the day row existed
                operation_count = await self._store.count_operations_between(*day_window_ms(now))
                aggregate = DailyAggregate(
                    date=today,
                    open_value=open_value,
                    close_value=total_value,
                    high_value=total_value,
                    low_value=total_value,
                    pnl=_ZERO,
                    pnl_percent=_ZERO,
                    operation_count=operation_count,
                )
            else:
                aggregate = existing
                aggregate.close_value = total_value
                aggregate.high_value = max(existing.high_value, total_value)
                aggregate.low_value = min(existing.low_value, total_value)

            aggregate.pnl = aggregate.close_value - aggregate.open_value
            aggregate.pnl_percent = (
                aggregate.pnl / aggregate.open_value * _HUNDRED
                if aggregate.open_value > _ZERO
                else _ZERO
            )
            await self._store.upsert_daily_pnl(aggregate)
        except Exception as e:
            logger.error("daily_pnl_update_failed", date=today, error=str(e))
            return

        logger.debug(
            "daily_pnl_updated",
            date=today,
            open_value=str(aggregate.open_value),
            close_value=str(aggregate.close_value),
            pnl=str(aggregate.pnl),
        )

    async def _apply_retention(self, now: int) -> None:
        try:
            snapshots = await self._store.delete_snapshots_before(
                days_ago_ms(now, self._settings.snapshot_retention_days)
            )
            operations = await self._store.delete_operations_before(
                days_ago_ms(now, self._settings.operation_retention_days)
            )
        except Exception as e:
            logger.error("retention_cleanup_failed", error=str(e))
            return

        if snapshots or operations:
            logger.info("retention_cleanup", snapshots=snapshots, operations=operations)
