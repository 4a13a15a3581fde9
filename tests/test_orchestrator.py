"""Tests for the rebalancer orchestrator.

Tests verify:
- A tick values all positions and persists a throttled snapshot
- A swept position is redeployed once and not re-triggered on later ticks
- The daily claim pass runs at most once per day from inside a tick
- Regime memory for vanished positions is evicted
- Loop errors back off and the loop continues; stop() ends it after the tick
- Observation reads are retried; the phase-2 deposit is sent once per tick
- A withdrawn position is resumed next tick; stale pending rows are cleared
- Leftover pending redeploys are reported on start
- build_components wires paper mode and rejects live mode without a source
"""

from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from fakes import FakeClock, FakeSleep, PositionFactory

from rebalancer.config import AppSettings, RetrySettings
from rebalancer.data.database import TrackerDatabase
from rebalancer.data.store import TrackerStore
from rebalancer.engine.decision import RebalanceDecisionEngine
from rebalancer.engine.executor import RebalanceExecutor
from rebalancer.engine.retry import RetryPolicy, Sleep
from rebalancer.exceptions import PositionSourceError
from rebalancer.fees.claimer import FeeClaimer
from rebalancer.fees.ledger import FeeAccrualLedger
from rebalancer.main import build_components
from rebalancer.models import PendingRedeploy, Side
from rebalancer.orchestrator import _ERROR_BACKOFF_SECONDS, Orchestrator
from rebalancer.position.paper_source import PaperPositionSource
from rebalancer.tracking.regime import RegimeTracker
from rebalancer.tracking.snapshots import SnapshotStore

SOL = 10**9
USDC = 10**6


class StoppingSleep:
    """Records delays and stops the orchestrator after a number of sleeps."""

    def __init__(self, stop_after: int) -> None:
        self.stop_after = stop_after
        self.calls: list[float] = []
        self.orchestrator: Orchestrator | None = None

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if len(self.calls) >= self.stop_after and self.orchestrator is not None:
            await self.orchestrator.stop()


@pytest.fixture
def source(position_factory: PositionFactory) -> PaperPositionSource:
    paper = PaperPositionSource(active_price=Decimal("100"))
    paper.add_position(
        position_factory("pos-1", ["101", "102", "103"], base=[SOL, 2 * SOL, 3 * SOL])
    )
    return paper


def _orchestrator(
    settings: AppSettings,
    source: PaperPositionSource,
    store: TrackerStore,
    clock: FakeClock,
    sleep: Sleep,
) -> tuple[Orchestrator, RegimeTracker]:
    regime_tracker = RegimeTracker(settings.regime, clock=clock)
    snapshot_store = SnapshotStore(
        store, regime_tracker, settings.tracker, settings.regime, clock=clock
    )
    ledger = FeeAccrualLedger(store, settings.fee_claim, clock=clock)
    executor = RebalanceExecutor(
        source,
        store,
        snapshot_store,
        ledger,
        settings.rebalance,
        sleep=sleep,
        clock=clock,
    )
    orchestrator = Orchestrator(
        settings=settings,
        source=source,
        snapshot_store=snapshot_store,
        regime_tracker=regime_tracker,
        decision_engine=RebalanceDecisionEngine(settings.rebalance),
        executor=executor,
        fee_claimer=FeeClaimer(source, ledger, settings.fee_claim, sleep=sleep, clock=clock),
        retry_policy=RetryPolicy.from_settings(settings.retry, sleep=sleep),
        sleep=sleep,
    )
    return orchestrator, regime_tracker


class TestTick:
    @pytest.mark.asyncio
    async def test_unswept_position_is_only_tracked(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, fake_sleep)

        result = await orchestrator.run_tick()

        assert result.checked == 1
        assert result.rebalanced == 0
        assert result.total_value == Decimal("614")
        assert result.snapshot is not None and result.snapshot.persisted is True
        assert await store.count_snapshots() == 1

    @pytest.mark.asyncio
    async def test_swept_position_redeployed_once(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, fake_sleep)
        source.set_active_price(Decimal("110"))

        first = await orchestrator.run_tick()
        clock.advance(30)
        second = await orchestrator.run_tick()

        assert first.rebalanced == 1
        assert first.failed == 0
        assert second.rebalanced == 0
        operations = await store.get_recent_operations(10)
        assert len(operations) == 1
        assert operations[0].action is Side.BID

    @pytest.mark.asyncio
    async def test_failed_redeploy_counted_and_retried_next_tick(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, fake_sleep)
        source.set_active_price(Decimal("110"))
        source.fail_next("remove_all_liquidity")

        first = await orchestrator.run_tick()
        second = await orchestrator.run_tick()

        assert first.failed == 1
        assert second.rebalanced == 1

    @pytest.mark.asyncio
    async def test_claim_pass_runs_once_per_day(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, fake_sleep)

        first = await orchestrator.run_tick()
        second = await orchestrator.run_tick()

        assert first.claim is not None
        assert first.claim.triggered is False
        assert second.claim is None

    @pytest.mark.asyncio
    async def test_vanished_positions_are_evicted(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        orchestrator, regime_tracker = _orchestrator(mock_settings, source, store, clock, fake_sleep)

        await orchestrator.run_tick()
        assert regime_tracker.tracked_keys == {"pos-1"}

        source.remove_position("pos-1")
        await orchestrator.run_tick()
        assert regime_tracker.tracked_keys == set()


    @pytest.mark.asyncio
    async def test_observation_read_is_retried(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, fake_sleep)
        source.fail_next("get_positions")

        result = await orchestrator.run_tick()

        assert result.checked == 1
        assert fake_sleep.calls[0] == mock_settings.retry.base_delay


class TestPendingRedeploys:
    @pytest.mark.asyncio
    async def test_phase_two_submitted_once_per_tick(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, fake_sleep)
        source.set_active_price(Decimal("110"))
        add = AsyncMock(side_effect=PositionSourceError("confirmation timed out"))

        with patch.object(source, "add_liquidity_single_sided", add):
            result = await orchestrator.run_tick()

        assert result.failed == 1
        assert add.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_add_is_resumed_next_tick(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, fake_sleep)
        source.set_active_price(Decimal("110"))
        source.fail_next("add_liquidity_single_sided")

        first = await orchestrator.run_tick()
        clock.advance(30)
        second = await orchestrator.run_tick()
        clock.advance(600)
        third = await orchestrator.run_tick()

        assert (first.failed, first.rebalanced) == (1, 0)
        assert (second.failed, second.rebalanced) == (0, 1)
        assert third.rebalanced == 0
        assert third.total_value == Decimal("614")
        assert await store.get_pending_redeploys() == []

        position = (await source.get_positions())[0]
        assert position.quote_total == 614 * USDC
        operations = await store.get_recent_operations(10)
        assert len(operations) == 1
        assert operations[0].action is Side.BID

    @pytest.mark.asyncio
    async def test_stale_pending_row_is_cleared(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        await store.save_pending_redeploy(
            PendingRedeploy(position_key="pos-1", action=Side.BID, amount=1, removed_at_ms=clock.now_ms)
        )
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, fake_sleep)

        result = await orchestrator.run_tick()

        assert result.rebalanced == 0
        assert result.failed == 0
        assert await store.get_pending_redeploys() == []
        assert await store.get_recent_operations(10) == []


class TestLoop:
    @pytest.mark.asyncio
    async def test_error_backs_off_and_loop_continues(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
    ) -> None:
        mock_settings.retry = RetrySettings(max_attempts=1)
        sleep = StoppingSleep(stop_after=2)
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, sleep)
        sleep.orchestrator = orchestrator
        source.fail_next("get_positions")

        await orchestrator.start()

        assert sleep.calls == [_ERROR_BACKOFF_SECONDS, mock_settings.rebalance.monitor_interval]
        assert orchestrator.is_running is False
        assert await store.count_snapshots() == 1

    @pytest.mark.asyncio
    async def test_start_reports_pending_and_bootstraps(
        self,
        mock_settings: AppSettings,
        source: PaperPositionSource,
        store: TrackerStore,
        clock: FakeClock,
    ) -> None:
        await store.save_pending_redeploy(
            PendingRedeploy(position_key="pos-gone", action=Side.BID, amount=1, removed_at_ms=clock.now_ms)
        )
        sleep = StoppingSleep(stop_after=1)
        orchestrator, _ = _orchestrator(mock_settings, source, store, clock, sleep)
        sleep.orchestrator = orchestrator

        await orchestrator.start()

        assert sleep.calls == [mock_settings.rebalance.monitor_interval]
        assert len(await store.get_pending_redeploys()) == 1


class TestBuildComponents:
    def test_paper_mode_wiring(self, mock_settings: AppSettings, tmp_path: Path) -> None:
        components = build_components(mock_settings, TrackerDatabase(str(tmp_path / "t.db")))

        assert isinstance(components["source"], PaperPositionSource)
        assert isinstance(components["orchestrator"], Orchestrator)
        assert isinstance(components["fee_claimer"], FeeClaimer)

    def test_claiming_disabled(self, mock_settings: AppSettings, tmp_path: Path) -> None:
        mock_settings.fee_claim.enabled = False
        components = build_components(mock_settings, TrackerDatabase(str(tmp_path / "t.db")))
        assert components["fee_claimer"] is None

    def test_live_mode_requires_source(self, mock_settings: AppSettings, tmp_path: Path) -> None:
        mock_settings.mode = "live"
        with pytest.raises(RuntimeError, match="PositionSource"):
            build_components(mock_settings, TrackerDatabase(str(tmp_path / "t.db")))
