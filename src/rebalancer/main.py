"""Entry point for the bid-ask rebalancer.

Wires all components together and starts the orchestrator. Handles
SIGINT/SIGTERM for graceful shutdown: the current tick finishes, no new tick
starts.

Component wiring order (in build_components):
1. TrackerDatabase + TrackerStore (durable state)
2. PositionSource (PaperPositionSource in paper mode, host-supplied in live mode)
3. RegimeTracker (per-position regime memory)
4. SnapshotStore (valuation and throttled snapshots)
5. FeeAccrualLedger (claimed / accumulated fees)
6. RebalanceDecisionEngine + RebalanceExecutor
7. FeeClaimer (daily claim pass)
8. AnalyticsService (read-only projections)
9. Orchestrator (evaluation loop, RetryPolicy for source reads)
"""

import asyncio
import signal
from typing import Any

from rebalancer.analytics.service import AnalyticsService
from rebalancer.config import AppSettings
from rebalancer.data.database import TrackerDatabase
from rebalancer.data.store import TrackerStore
from rebalancer.engine.decision import RebalanceDecisionEngine
from rebalancer.engine.executor import RebalanceExecutor
from rebalancer.engine.retry import RetryPolicy
from rebalancer.fees.claimer import FeeClaimer
from rebalancer.fees.ledger import FeeAccrualLedger
from rebalancer.logging import get_logger, setup_logging
from rebalancer.orchestrator import Orchestrator
from rebalancer.position.paper_source import PaperPositionSource
from rebalancer.position.source import PositionSource
from rebalancer.tracking.regime import RegimeTracker
from rebalancer.tracking.snapshots import SnapshotStore


def build_components(
    settings: AppSettings,
    database: TrackerDatabase,
    source: PositionSource | None = None,
) -> dict[str, Any]:
    """Build the component graph around an (unconnected) database.

    Args:
        settings: Application-wide settings.
        database: Tracker database; connected by the caller.
        source: Position source for live mode. Paper mode builds its own.

    Returns:
        Dict mapping component names to instances.

    Raises:
        RuntimeError: Live mode without a position source.
    """
    if source is None:
        if settings.mode == "live":
            raise RuntimeError("live mode requires a PositionSource from the host application")
        source = PaperPositionSource(
            base_decimals=settings.pool.base_decimals,
            quote_decimals=settings.pool.quote_decimals,
        )

    store = TrackerStore(database)
    regime_tracker = RegimeTracker(settings.regime)
    snapshot_store = SnapshotStore(
        store,
        regime_tracker,
        settings=settings.tracker,
        regime_settings=settings.regime,
    )
    ledger = FeeAccrualLedger(
        store,
        settings=settings.fee_claim,
        base_decimals=settings.pool.base_decimals,
        quote_decimals=settings.pool.quote_decimals,
    )
    executor = RebalanceExecutor(
        source,
        store,
        snapshot_store,
        ledger,
        settings=settings.rebalance,
    )
    fee_claimer = (
        FeeClaimer(source, ledger, settings=settings.fee_claim)
        if settings.fee_claim.enabled
        else None
    )
    orchestrator = Orchestrator(
        settings=settings,
        source=source,
        snapshot_store=snapshot_store,
        regime_tracker=regime_tracker,
        decision_engine=RebalanceDecisionEngine(settings.rebalance),
        executor=executor,
        fee_claimer=fee_claimer,
        retry_policy=RetryPolicy.from_settings(settings.retry),
    )

    return {
        "store": store,
        "source": source,
        "regime_tracker": regime_tracker,
        "snapshot_store": snapshot_store,
        "ledger": ledger,
        "executor": executor,
        "fee_claimer": fee_claimer,
        "analytics": AnalyticsService(store, settings.pool),
        "orchestrator": orchestrator,
    }


def _setup_signal_handlers(orchestrator: Orchestrator) -> None:
    """Register SIGINT/SIGTERM to stop the orchestrator after the current tick.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("rebalancer.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(orchestrator.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def run(source: PositionSource | None = None) -> None:
    """Run the rebalancer until a shutdown signal arrives."""
    settings = AppSettings()

    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("rebalancer.main")

    async with TrackerDatabase(settings.tracker.db_path) as database:
        components = build_components(settings, database, source)
        orchestrator: Orchestrator = components["orchestrator"]
        position_source: PositionSource = components["source"]

        _setup_signal_handlers(orchestrator)

        logger.info(
            "rebalancer_starting",
            mode=settings.mode,
            pool=settings.pool.address or None,
            pair=f"{settings.pool.base_symbol}/{settings.pool.quote_symbol}",
            db_path=settings.tracker.db_path,
        )

        try:
            await position_source.connect()
            await orchestrator.start()
        finally:
            await position_source.close()
            logger.info("rebalancer_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
