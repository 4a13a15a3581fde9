"""Main rebalancer orchestrator: wires the tick pipeline and runs the loop.

Each tick:
  1. OBSERVE: Fetch positions and the active price from the position source
  2. TRACK: Value positions, detect regime transitions, persist throttled snapshot
  3. EVICT: Drop regime memory for positions that disappeared
  4. CLAIM: Run the daily fee claim pass when due
  5. DECIDE & EXECUTE: Finish pending redeploys, then redeploy qualifying
     positions one at a time

Positions are processed strictly sequentially. stop() only prevents the next
tick from starting; a tick already inside a redeploy runs to completion.

Works identically with the paper source and a live source supplied by the
host application; the orchestrator only talks to the PositionSource ABC.
"""

import asyncio
import itertools
from dataclasses import dataclass
from decimal import Decimal

import structlog

from rebalancer.config import AppSettings
from rebalancer.engine.decision import RebalanceDecisionEngine
from rebalancer.engine.executor import RebalanceExecutor
from rebalancer.engine.retry import RetryPolicy, Sleep
from rebalancer.fees.claimer import ClaimPassResult, FeeClaimer
from rebalancer.logging import get_logger, short_key
from rebalancer.models import PendingRedeploy, Snapshot
from rebalancer.position.source import PositionSource
from rebalancer.tracking.regime import RegimeTracker
from rebalancer.tracking.snapshots import SnapshotStore

logger = get_logger(__name__)

# Pause after an unexpected loop error before the next tick
_ERROR_BACKOFF_SECONDS = 10.0


@dataclass
class TickResult:
    """Outcome counts of one evaluation tick."""

    checked: int = 0
    rebalanced: int = 0
    failed: int = 0
    total_value: Decimal = Decimal("0")
    current_price: Decimal = Decimal("0")
    snapshot: Snapshot | None = None
    claim: ClaimPassResult | None = None


class Orchestrator:
    """Periodic evaluation loop over all positions.

    Args:
        settings: Application-wide settings.
        source: Position source (paper or live).
        snapshot_store: Valuation and throttled persistence.
        regime_tracker: Per-position regime memory.
        decision_engine: Redeploy decision logic.
        executor: Two-phase redeploy executor.
        fee_claimer: Daily claim pass, or None to disable claiming.
        retry_policy: Retry policy for the observation reads.
        sleep: Awaitable delay used for pacing and the loop interval.
    """

    def __init__(
        self,
        settings: AppSettings,
        source: PositionSource,
        snapshot_store: SnapshotStore,
        regime_tracker: RegimeTracker,
        decision_engine: RebalanceDecisionEngine,
        executor: RebalanceExecutor,
        fee_claimer: FeeClaimer | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._settings = settings
        self._source = source
        self._snapshot_store = snapshot_store
        self._regime_tracker = regime_tracker
        self._decision_engine = decision_engine
        self._executor = executor
        self._fee_claimer = fee_claimer
        self._retry = retry_policy or RetryPolicy(sleep=sleep)
        self._sleep: Sleep = sleep or asyncio.sleep
        self._running = False
        self._cycle_lock = asyncio.Lock()
        self._tick_counter = itertools.count(1)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Bootstrap persistent state, report leftover redeploys, then loop."""
        logger.info(
            "orchestrator_starting",
            mode=self._settings.mode,
            monitor_interval=self._settings.rebalance.monitor_interval,
            price_gate_enabled=self._settings.rebalance.price_gate_enabled,
            fee_claim_enabled=self._fee_claimer is not None,
        )
        await self._snapshot_store.bootstrap()
        await self._report_pending_redeploys()

        self._running = True
        try:
            await self._run_loop()
        finally:
            logger.info("orchestrator_stopped")

    async def stop(self) -> None:
        """Signal the loop to stop after the current tick."""
        logger.info("orchestrator_stopping_gracefully")
        self._running = False

    async def _run_loop(self) -> None:
        while self._running:
            try:
                async with self._cycle_lock:
                    await self.run_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("orchestrator_tick_error", error=str(e), exc_info=True)
                await self._sleep(_ERROR_BACKOFF_SECONDS)
                continue
            if self._running:
                await self._sleep(self._settings.rebalance.monitor_interval)

    async def run_tick(self) -> TickResult:
        """Run one full evaluation over all positions."""
        structlog.contextvars.bind_contextvars(tick=next(self._tick_counter))
        try:
            return await self._tick()
        finally:
            structlog.contextvars.unbind_contextvars("tick")

    async def _tick(self) -> TickResult:
        # 1. OBSERVE (reads only, safe to retry)
        positions = await self._retry.run(self._source.get_positions, operation="get_positions")
        current_price = await self._retry.run(
            self._source.get_active_price, operation="get_active_price"
        )

        # 2. TRACK
        snapshot = await self._snapshot_store.evaluate(
            positions,
            current_price,
            self._source.base_decimals,
            self._source.quote_decimals,
        )
        result = TickResult(
            checked=len(positions),
            total_value=snapshot.total_value,
            current_price=current_price,
            snapshot=snapshot,
        )

        # 3. EVICT
        if self._settings.tracker.regime_eviction == "absent":
            self._regime_tracker.evict_absent(p.key for p in positions)

        # 4. CLAIM
        if self._fee_claimer is not None and self._fee_claimer.is_due():
            result.claim = await self._fee_claimer.run(positions, current_price)

        # 5. DECIDE & EXECUTE
        pending = await self._pending_by_key()
        for position in positions:
            item = pending.get(position.key)
            if item is not None and not position.has_liquidity:
                outcome = await self._executor.resume(item, position, current_price)
            else:
                if item is not None:
                    await self._executor.discard_pending(item)
                decision = self._decision_engine.decide(position, current_price)
                if decision is None:
                    continue
                outcome = await self._executor.execute(decision)

            if outcome.success:
                result.rebalanced += 1
            else:
                result.failed += 1
                logger.warning(
                    "rebalance_deferred_to_next_tick",
                    position_key=short_key(position.key),
                    phase=outcome.failed_phase,
                    state=outcome.state.value,
                )
            await self._sleep(self._settings.rebalance.inter_position_delay)

        logger.info(
            "tick_completed",
            checked=result.checked,
            rebalanced=result.rebalanced,
            failed=result.failed,
            total_value=str(result.total_value),
            current_price=str(current_price),
            snapshot_persisted=snapshot.persisted,
        )
        return result

    async def _pending_by_key(self) -> dict[str, PendingRedeploy]:
        try:
            pending = await self._executor.pending_redeploys()
        except Exception as e:
            logger.error("pending_redeploy_lookup_failed", error=str(e))
            return {}
        return {item.position_key: item for item in pending}

    async def _report_pending_redeploys(self) -> None:
        pending = await self._pending_by_key()
        for item in pending.values():
            logger.warning(
                "pending_redeploy_found",
                position_key=short_key(item.position_key),
                action=item.action.value,
                amount=item.amount,
                removed_at_ms=item.removed_at_ms,
            )
