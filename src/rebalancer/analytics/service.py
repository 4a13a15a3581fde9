"""Read-only analytics projections over the tracker store.

Every projection degrades to zero / empty output when the store fails, so a
presentation layer polling these methods never sees an exception.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from rebalancer.analysis.valuation import scale
from rebalancer.analytics.yield_metrics import annualized_return, fee_apy
from rebalancer.clock import Clock, MS_PER_DAY, day_window_ms, days_ago_ms, now_ms, utc_date
from rebalancer.config import PoolSettings
from rebalancer.data.store import TrackerStore
from rebalancer.logging import get_logger
from rebalancer.models import (
    ClaimedFeeRecord,
    DailyAggregate,
    OperationRecord,
    PositionValue,
    Snapshot,
)

logger = get_logger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_MS_PER_HOUR = 60 * 60 * 1000


@dataclass
class Summary:
    """Dashboard-level summary of the tracked positions."""

    current_total_value: Decimal = _ZERO
    today_pnl: Decimal = _ZERO
    today_pnl_percent: Decimal = _ZERO
    total_pnl: Decimal = _ZERO
    total_pnl_percent: Decimal = _ZERO
    apy_7d: Decimal = _ZERO
    apy_30d: Decimal = _ZERO
    position_count: int = 0
    today_operations: int = 0
    first_snapshot_date: str | None = None
    last_update_time: int = 0
    total_unclaimed_fee_value: Decimal = _ZERO
    total_claimed_fee_value: Decimal = _ZERO
    today_claimed_fee_value: Decimal = _ZERO
    fee_apy_7d: Decimal = _ZERO
    total_accumulated_fee_value: Decimal = _ZERO
    accumulated_fee_base: int = 0
    accumulated_fee_quote: int = 0

    def to_dict(self) -> dict:
        """Serialize to JSON-safe dict with Decimal values as strings."""
        return {
            "current_total_value": str(self.current_total_value),
            "today_pnl": str(self.today_pnl),
            "today_pnl_percent": str(self.today_pnl_percent),
            "total_pnl": str(self.total_pnl),
            "total_pnl_percent": str(self.total_pnl_percent),
            "apy_7d": str(self.apy_7d),
            "apy_30d": str(self.apy_30d),
            "position_count": self.position_count,
            "today_operations": self.today_operations,
            "first_snapshot_date": self.first_snapshot_date,
            "last_update_time": self.last_update_time,
            "total_unclaimed_fee_value": str(self.total_unclaimed_fee_value),
            "total_claimed_fee_value": str(self.total_claimed_fee_value),
            "today_claimed_fee_value": str(self.today_claimed_fee_value),
            "fee_apy_7d": str(self.fee_apy_7d),
            "total_accumulated_fee_value": str(self.total_accumulated_fee_value),
            "accumulated_fee_base": self.accumulated_fee_base,
            "accumulated_fee_quote": self.accumulated_fee_quote,
        }


@dataclass
class DailyValuePoint:
    """Per-day closing value with the day's range."""

    date: str
    timestamp_ms: int
    value: Decimal
    high: Decimal
    low: Decimal


@dataclass
class DailyFeePoint:
    date: str
    claimed: Decimal


class AnalyticsService:
    """Computes read-only projections for a presentation layer.

    Args:
        store: Durable tracker store.
        pool: Token decimals for valuing accumulated fees.
        clock: Returns the current time in milliseconds.
    """

    def __init__(
        self,
        store: TrackerStore,
        pool: PoolSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._pool = pool or PoolSettings()
        self._clock = clock or now_ms

    async def summary(self) -> Summary:
        """Current value, PnL, APY, operation and fee figures."""
        try:
            return await self._build_summary()
        except Exception as e:
            logger.error("analytics_summary_failed", error=str(e))
            return Summary()

    async def apy(self, days: int) -> Decimal:
        """Annualized return percent over the most recent `days` daily rows."""
        try:
            rows = await self._store.get_recent_daily_pnl(days)
        except Exception as e:
            logger.error("analytics_apy_failed", days=days, error=str(e))
            return _ZERO
        return annualized_return(rows)

    async def value_history(self, hours: int = 24) -> list[tuple[int, Decimal]]:
        """(timestamp_ms, total_value) of persisted snapshots within the last hours."""
        since = self._clock() - hours * _MS_PER_HOUR
        try:
            return await self._store.get_snapshot_values(since)
        except Exception as e:
            logger.error("analytics_value_history_failed", error=str(e))
            return []

    async def daily_value_history(self, days: int = 30) -> list[DailyValuePoint]:
        """Per-day close value with high/low, oldest first."""
        rows = await self.daily_pnl(days)
        return [
            DailyValuePoint(
                date=row.date,
                timestamp_ms=_end_of_day_ms(row.date),
                value=row.close_value,
                high=row.high_value,
                low=row.low_value,
            )
            for row in rows
        ]

    async def daily_pnl(self, days: int = 30) -> list[DailyAggregate]:
        """Most recent daily aggregates, oldest first."""
        try:
            return await self._store.get_recent_daily_pnl(days)
        except Exception as e:
            logger.error("analytics_daily_pnl_failed", error=str(e))
            return []

    async def operations(self, count: int = 50) -> list[OperationRecord]:
        try:
            return await self._store.get_recent_operations(count)
        except Exception as e:
            logger.error("analytics_operations_failed", error=str(e))
            return []

    async def claimed_fees(self, count: int = 50) -> list[ClaimedFeeRecord]:
        try:
            return await self._store.get_recent_claimed_fees(count)
        except Exception as e:
            logger.error("analytics_claimed_fees_failed", error=str(e))
            return []

    async def fee_history(self, days: int = 30) -> list[DailyFeePoint]:
        """Claimed fee totals for each of the last `days` UTC days, oldest first."""
        now = self._clock()
        first_day_start = day_window_ms(now)[0] - (days - 1) * MS_PER_DAY
        try:
            records = await self._store.get_claimed_fees_since(first_day_start)
        except Exception as e:
            logger.error("analytics_fee_history_failed", error=str(e))
            records = []

        totals: dict[str, Decimal] = {}
        for record in records:
            date = utc_date(record.timestamp_ms)
            totals[date] = totals.get(date, _ZERO) + record.total_claimed_value

        points = []
        for offset in range(days):
            date = utc_date(first_day_start + offset * MS_PER_DAY)
            points.append(DailyFeePoint(date=date, claimed=totals.get(date, _ZERO)))
        return points

    async def latest_positions(self) -> list[PositionValue]:
        """Position valuations of the most recent persisted snapshot."""
        try:
            snapshot = await self._store.get_latest_snapshot()
        except Exception as e:
            logger.error("analytics_latest_positions_failed", error=str(e))
            return []
        return list(snapshot.positions) if snapshot else []

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    async def _build_summary(self) -> Summary:
        now = self._clock()
        today = utc_date(now)
        today_start, today_end = day_window_ms(now)

        latest: Snapshot | None = await self._store.get_latest_snapshot()
        summary = Summary()
        if latest is not None:
            summary.current_total_value = latest.total_value
            summary.position_count = len(latest.positions)
            summary.last_update_time = latest.timestamp_ms
            summary.total_unclaimed_fee_value = latest.unclaimed_fee_value

        today_row = await self._store.get_daily_pnl(today)
        if today_row is not None:
            summary.today_pnl = today_row.pnl
            summary.today_pnl_percent = today_row.pnl_percent

        first_row = await self._store.get_first_daily_pnl()
        last_row = await self._store.get_last_daily_pnl()
        if first_row is not None and last_row is not None:
            summary.first_snapshot_date = first_row.date
            summary.total_pnl = last_row.close_value - first_row.open_value
            if first_row.open_value > _ZERO:
                summary.total_pnl_percent = summary.total_pnl / first_row.open_value * _HUNDRED

        summary.apy_7d = annualized_return(await self._store.get_recent_daily_pnl(7))
        summary.apy_30d = annualized_return(await self._store.get_recent_daily_pnl(30))
        summary.today_operations = await self._store.count_operations_between(
            today_start, today_end
        )

        summary.total_claimed_fee_value = await self._store.sum_claimed_fees_since(0)
        claimed_today = await self._store.get_claimed_fees_since(today_start)
        summary.today_claimed_fee_value = sum(
            (r.total_claimed_value for r in claimed_today if r.timestamp_ms < today_end), _ZERO
        )
        claimed_7d = await self._store.sum_claimed_fees_since(days_ago_ms(now, 7))
        summary.fee_apy_7d = fee_apy(
            claimed_7d, summary.total_unclaimed_fee_value, summary.current_total_value, 7
        )

        accumulated = await self._store.get_accumulated_fees()
        summary.accumulated_fee_base = sum(f.fee_base for f in accumulated)
        summary.accumulated_fee_quote = sum(f.fee_quote for f in accumulated)
        price = latest.current_price if latest is not None else _ZERO
        summary.total_accumulated_fee_value = scale(
            summary.accumulated_fee_base, self._pool.base_decimals
        ) * price + scale(summary.accumulated_fee_quote, self._pool.quote_decimals)
        return summary


def _end_of_day_ms(date: str) -> int:
    day = datetime.strptime(date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    end = day + timedelta(days=1) - timedelta(seconds=1)
    return int(end.timestamp() * 1000)
