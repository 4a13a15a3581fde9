"""Tests for AnalyticsService read-only projections."""

import sqlite3
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fakes import FakeClock, PositionFactory

from rebalancer.analytics.service import AnalyticsService
from rebalancer.analytics.yield_metrics import annualized_return, fee_apy
from rebalancer.config import FeeClaimSettings
from rebalancer.data.store import TrackerStore
from rebalancer.fees.ledger import FeeAccrualLedger
from rebalancer.models import DailyAggregate, OperationRecord, Side
from rebalancer.tracking.regime import RegimeTracker
from rebalancer.tracking.snapshots import SnapshotStore

SOL = 10**9
USDC = 10**6
# 2024-03-01 23:59:59 UTC
END_OF_BASE_DAY_MS = 1_709_337_599_000


@pytest.fixture
def service(store: TrackerStore, clock: FakeClock) -> AnalyticsService:
    return AnalyticsService(store, clock=clock)


@pytest_asyncio.fixture
async def populated(
    store: TrackerStore,
    clock: FakeClock,
    position_factory: PositionFactory,
) -> TrackerStore:
    await store.upsert_daily_pnl(
        DailyAggregate(
            date="2024-02-29",
            open_value=Decimal("380"),
            close_value=Decimal("390"),
            high_value=Decimal("395"),
            low_value=Decimal("378"),
            pnl=Decimal("10"),
            pnl_percent=Decimal("0"),
        )
    )
    snapshot_store = SnapshotStore(store, RegimeTracker(clock=clock), clock=clock)
    positions = [
        position_factory("pos-quote", ["100", "101"], quote=[100 * USDC, 200 * USDC], fee_quote=2 * USDC),
        position_factory("pos-base", ["100", "101"], base=[SOL, 0], first_bucket_id=200),
    ]
    await snapshot_store.evaluate(positions, Decimal("100"), 9, 6)
    await snapshot_store.record_operation(
        OperationRecord(
            timestamp_ms=clock.now_ms,
            position_key="pos-quote",
            action=Side.BID,
            before_value=Decimal("300"),
            after_value=Decimal("300"),
            amount_processed=300 * USDC,
            tx_ref="tx-op",
        )
    )
    ledger = FeeAccrualLedger(store, FeeClaimSettings(), clock=clock)
    await ledger.record_claim("pos-quote", "tx-claim", 0, 3 * USDC, Decimal("100"))
    return store


class TestSummary:
    @pytest.mark.asyncio
    async def test_empty_store_is_all_zero(self, service: AnalyticsService) -> None:
        summary = await service.summary()

        assert summary.current_total_value == Decimal("0")
        assert summary.position_count == 0
        assert summary.first_snapshot_date is None
        assert summary.apy_7d == Decimal("0")

    @pytest.mark.asyncio
    async def test_populated_summary(
        self,
        service: AnalyticsService,
        populated: TrackerStore,
        clock: FakeClock,
    ) -> None:
        summary = await service.summary()

        assert summary.current_total_value == Decimal("400")
        assert summary.position_count == 2
        assert summary.last_update_time == clock.now_ms
        assert summary.today_pnl == Decimal("10")
        assert summary.total_pnl == Decimal("20")
        assert summary.total_pnl_percent == Decimal("20") / Decimal("380") * Decimal("100")
        assert summary.first_snapshot_date == "2024-02-29"
        assert summary.today_operations == 1
        assert summary.total_unclaimed_fee_value == Decimal("2")
        assert summary.total_claimed_fee_value == Decimal("3")
        assert summary.today_claimed_fee_value == Decimal("3")
        assert summary.accumulated_fee_quote == 3 * USDC
        assert summary.total_accumulated_fee_value == Decimal("3")
        assert summary.fee_apy_7d == fee_apy(Decimal("3"), Decimal("2"), Decimal("400"), 7)
        assert summary.apy_7d == annualized_return(await populated.get_recent_daily_pnl(7))
        assert summary.apy_7d > Decimal("0")

    @pytest.mark.asyncio
    async def test_to_dict_uses_strings_for_decimals(
        self,
        service: AnalyticsService,
        populated: TrackerStore,
    ) -> None:
        data = (await service.summary()).to_dict()

        assert data["current_total_value"] == "400"
        assert data["position_count"] == 2
        assert data["accumulated_fee_quote"] == 3 * USDC


class TestHistories:
    @pytest.mark.asyncio
    async def test_value_history(
        self,
        service: AnalyticsService,
        populated: TrackerStore,
        clock: FakeClock,
    ) -> None:
        assert await service.value_history(24) == [(clock.now_ms, Decimal("400"))]

    @pytest.mark.asyncio
    async def test_daily_value_history_stamps_end_of_day(
        self,
        service: AnalyticsService,
        populated: TrackerStore,
    ) -> None:
        points = await service.daily_value_history(30)

        assert [p.date for p in points] == ["2024-02-29", "2024-03-01"]
        assert points[-1].timestamp_ms == END_OF_BASE_DAY_MS
        assert points[-1].value == Decimal("400")
        assert points[0].high == Decimal("395")

    @pytest.mark.asyncio
    async def test_fee_history_has_one_point_per_day(
        self,
        service: AnalyticsService,
        populated: TrackerStore,
    ) -> None:
        points = await service.fee_history(3)

        assert [p.date for p in points] == ["2024-02-28", "2024-02-29", "2024-03-01"]
        assert [p.claimed for p in points] == [Decimal("0"), Decimal("0"), Decimal("3")]

    @pytest.mark.asyncio
    async def test_operations_claims_and_positions(
        self,
        service: AnalyticsService,
        populated: TrackerStore,
    ) -> None:
        operations = await service.operations()
        claims = await service.claimed_fees()
        positions = await service.latest_positions()

        assert [op.tx_ref for op in operations] == ["tx-op"]
        assert [c.tx_ref for c in claims] == ["tx-claim"]
        assert sorted(p.key for p in positions) == ["pos-base", "pos-quote"]

    @pytest.mark.asyncio
    async def test_apy_over_window(
        self,
        service: AnalyticsService,
        populated: TrackerStore,
    ) -> None:
        # 380 -> 400 over two days, simple annualization
        expected = (Decimal("20") / Decimal("380")) / 2 * Decimal("365") * Decimal("100")
        assert await service.apy(7) == expected


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_failures_degrade_to_empty(self, clock: FakeClock) -> None:
        failing = AsyncMock(spec=TrackerStore)
        error = sqlite3.OperationalError("database is locked")
        for name in (
            "get_latest_snapshot",
            "get_recent_daily_pnl",
            "get_snapshot_values",
            "get_recent_operations",
            "get_recent_claimed_fees",
            "get_claimed_fees_since",
        ):
            getattr(failing, name).side_effect = error
        service = AnalyticsService(failing, clock=clock)

        summary = await service.summary()

        assert summary.current_total_value == Decimal("0")
        assert await service.apy(7) == Decimal("0")
        assert await service.value_history() == []
        assert await service.daily_value_history() == []
        assert await service.operations() == []
        assert await service.claimed_fees() == []
        assert await service.latest_positions() == []
        assert all(p.claimed == Decimal("0") for p in await service.fee_history(7))
