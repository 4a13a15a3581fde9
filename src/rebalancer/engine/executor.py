"""Two-phase redeploy execution.

A redeploy withdraws 100% of a position's liquidity (phase 1, "remove"),
waits for the source state to settle, then re-adds it single-sided across
the same bucket range with the bid-ask strategy (phase 2, "add").

Between the phases the position is REMOVED_PENDING_REDEPLOY. That state is
persisted in the pending_redeploys table. Phase 2 is a single submission per
tick: a deposit is never re-sent within the tick that attempted it. If it
fails the pending row stays and the orchestrator calls resume() on a later
tick, re-adding the withdrawn amount to the now empty position.

Failures never propagate out of execute() or resume(): they are logged and
reported in the returned RedeployOutcome.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from rebalancer.clock import Clock, now_ms
from rebalancer.config import RebalanceSettings
from rebalancer.data.store import TrackerStore
from rebalancer.engine.retry import Sleep
from rebalancer.exceptions import RebalanceExecutionError
from rebalancer.fees.ledger import FeeAccrualLedger
from rebalancer.logging import get_logger, short_key
from rebalancer.models import (
    OperationRecord,
    PendingRedeploy,
    Position,
    RebalanceDecision,
    Side,
    Token,
)
from rebalancer.position.source import BID_ASK_STRATEGY, PositionSource
from rebalancer.tracking.snapshots import SnapshotStore

logger = get_logger(__name__)

PHASE_REMOVE = "remove"
PHASE_ADD = "add"


class RedeployState(str, Enum):
    """Saga state of a position during a redeploy."""

    STABLE = "stable"
    REMOVED_PENDING_REDEPLOY = "removed_pending_redeploy"


@dataclass
class RedeployOutcome:
    """Result of one redeploy attempt."""

    position_key: str
    action: Side
    state: RedeployState
    success: bool = False
    amount_deployed: int = 0
    reinvested: int = 0
    tx_refs: list[str] = field(default_factory=list)
    failed_phase: str | None = None
    error: str | None = None
    operation: OperationRecord | None = None


class RebalanceExecutor:
    """Executes redeploy decisions against a position source.

    Args:
        source: Position source performing the mutations.
        store: Durable store holding pending redeploy markers.
        snapshot_store: Values positions and records operations.
        ledger: Accumulated fee balances for reinvestment.
        settings: Settle delay between phases.
        sleep: Awaitable delay used for the settle wait.
        clock: Returns the current time in milliseconds.
    """

    def __init__(
        self,
        source: PositionSource,
        store: TrackerStore,
        snapshot_store: SnapshotStore,
        ledger: FeeAccrualLedger,
        settings: RebalanceSettings | None = None,
        sleep: Sleep | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._snapshot_store = snapshot_store
        self._ledger = ledger
        self._settings = settings or RebalanceSettings()
        self._sleep: Sleep = sleep or asyncio.sleep
        self._clock = clock or now_ms

    async def pending_redeploys(self) -> list[PendingRedeploy]:
        return await self._store.get_pending_redeploys()

    async def discard_pending(self, pending: PendingRedeploy) -> None:
        """Drop a pending row whose position holds liquidity again."""
        logger.warning(
            "pending_redeploy_stale",
            position_key=short_key(pending.position_key),
            action=pending.action.value,
            removed_at_ms=pending.removed_at_ms,
        )
        await self._clear_pending(pending.position_key)

    async def execute(self, decision: RebalanceDecision) -> RedeployOutcome:
        """Run both phases for a decision and record the operation on success."""
        position = decision.position
        outcome = RedeployOutcome(
            position_key=position.key,
            action=decision.action,
            state=RedeployState.STABLE,
        )
        before_value = self._snapshot_store.position_value(
            position, self._source.base_decimals, self._source.quote_decimals
        )

        logger.info(
            "rebalance_started",
            position_key=short_key(position.key),
            action=decision.action.value,
            amount=decision.amount,
            before_value=str(before_value),
        )

        try:
            outcome.tx_refs.extend(await self._remove(decision))
        except RebalanceExecutionError as e:
            return self._failed(outcome, e)

        outcome.state = RedeployState.REMOVED_PENDING_REDEPLOY
        await self._mark_pending(decision)
        await self._sleep(self._settings.settle_delay)

        return await self._redeploy(decision, outcome, before_value)

    async def resume(
        self,
        pending: PendingRedeploy,
        position: Position,
        current_price: Decimal,
    ) -> RedeployOutcome:
        """Finish phase 2 for a position withdrawn on an earlier tick.

        The pending row's action and amount are re-added; the settle wait
        already happened when the row was written. The operation's before
        value is the withdrawn amount at the current price.
        """
        decision = RebalanceDecision(position=position, action=pending.action, amount=pending.amount)
        outcome = RedeployOutcome(
            position_key=position.key,
            action=pending.action,
            state=RedeployState.REMOVED_PENDING_REDEPLOY,
        )
        withdrawn = (pending.amount, 0) if decision.token is Token.BASE else (0, pending.amount)
        base_value, quote_value = self._snapshot_store.valuation(
            self._source.base_decimals, self._source.quote_decimals
        ).token_value(*withdrawn, current_price)
        before_value = base_value + quote_value

        logger.info(
            "rebalance_resumed",
            position_key=short_key(position.key),
            action=pending.action.value,
            amount=pending.amount,
            removed_at_ms=pending.removed_at_ms,
            before_value=str(before_value),
        )
        return await self._redeploy(decision, outcome, before_value)

    async def _redeploy(
        self,
        decision: RebalanceDecision,
        outcome: RedeployOutcome,
        before_value: Decimal,
    ) -> RedeployOutcome:
        position = decision.position
        outcome.reinvested = await self._reinvest_amount(decision)
        outcome.amount_deployed = decision.amount + outcome.reinvested
        try:
            outcome.tx_refs.extend(await self._add(decision, outcome.amount_deployed))
        except RebalanceExecutionError as e:
            return self._failed(outcome, e)

        outcome.state = RedeployState.STABLE
        outcome.success = True
        await self._clear_pending(position.key)

        if outcome.reinvested > 0:
            try:
                await self._ledger.consume(decision.token)
            except Exception as e:
                logger.error(
                    "accumulated_fee_clear_failed",
                    position_key=short_key(position.key),
                    token=decision.token.value,
                    error=str(e),
                )

        after_value = await self._value_after(position.key, before_value)
        operation = OperationRecord(
            timestamp_ms=self._clock(),
            position_key=position.key,
            action=decision.action,
            before_value=before_value,
            after_value=after_value,
            amount_processed=decision.amount,
            tx_ref=outcome.tx_refs[-1] if outcome.tx_refs else None,
        )
        await self._snapshot_store.record_operation(operation)
        outcome.operation = operation

        logger.info(
            "rebalance_completed",
            position_key=short_key(position.key),
            action=decision.action.value,
            amount_deployed=outcome.amount_deployed,
            reinvested=outcome.reinvested,
            after_value=str(after_value),
        )
        return outcome

    def _failed(self, outcome: RedeployOutcome, error: RebalanceExecutionError) -> RedeployOutcome:
        outcome.failed_phase = error.phase
        outcome.error = str(error)
        logger.error(
            "rebalance_failed",
            position_key=short_key(outcome.position_key),
            action=outcome.action.value,
            phase=error.phase,
            state=outcome.state.value,
            error=str(error),
        )
        return outcome

    # ──────────────────────────────────────────────
    # Phases
    # ──────────────────────────────────────────────

    async def _remove(self, decision: RebalanceDecision) -> list[str]:
        try:
            return await self._source.remove_all_liquidity(
                decision.position.key, decision.position.bucket_range
            )
        except Exception as e:
            raise RebalanceExecutionError(str(e), PHASE_REMOVE) from e

    async def _add(self, decision: RebalanceDecision, amount: int) -> list[str]:
        position = decision.position
        try:
            return await self._source.add_liquidity_single_sided(
                position.key,
                decision.token,
                amount,
                position.bucket_range,
                strategy=BID_ASK_STRATEGY,
            )
        except Exception as e:
            raise RebalanceExecutionError(str(e), PHASE_ADD) from e

    # ──────────────────────────────────────────────
    # Bookkeeping
    # ──────────────────────────────────────────────

    async def _reinvest_amount(self, decision: RebalanceDecision) -> int:
        if not self._ledger.reinvest_enabled:
            return 0
        try:
            amount = await self._ledger.total_accumulated(decision.token)
        except Exception as e:
            logger.warning(
                "accumulated_fee_lookup_failed",
                position_key=short_key(decision.position.key),
                error=str(e),
            )
            return 0
        if amount > 0:
            logger.info(
                "reinvesting_accumulated_fees",
                position_key=short_key(decision.position.key),
                token=decision.token.value,
                amount=amount,
            )
        return amount

    async def _mark_pending(self, decision: RebalanceDecision) -> None:
        pending = PendingRedeploy(
            position_key=decision.position.key,
            action=decision.action,
            amount=decision.amount,
            removed_at_ms=self._clock(),
        )
        try:
            await self._store.save_pending_redeploy(pending)
        except Exception as e:
            logger.error(
                "pending_redeploy_write_failed",
                position_key=short_key(decision.position.key),
                error=str(e),
            )

    async def _clear_pending(self, position_key: str) -> None:
        try:
            await self._store.delete_pending_redeploy(position_key)
        except Exception as e:
            logger.error(
                "pending_redeploy_clear_failed",
                position_key=short_key(position_key),
                error=str(e),
            )

    async def _value_after(self, position_key: str, before_value: Decimal) -> Decimal:
        try:
            positions = await self._source.get_positions()
        except Exception as e:
            logger.warning(
                "after_value_unavailable", position_key=short_key(position_key), error=str(e)
            )
            return before_value
        for position in positions:
            if position.key == position_key:
                return self._snapshot_store.position_value(
                    position, self._source.base_decimals, self._source.quote_decimals
                )
        return before_value
