"""Typed SQLite read/write abstraction for value tracking.

Provides TrackerStore with typed methods for snapshots, operations, daily
aggregates, claimed fees, regime price history, accumulated fees and pending
redeploys. All SQL is isolated behind this interface.

CRITICAL: All monetary values and raw token amounts are stored as TEXT in
SQLite, restored as Decimal / int on read.
"""

import json
from decimal import Decimal

from rebalancer.clock import now_ms
from rebalancer.data.database import TrackerDatabase
from rebalancer.exceptions import StoreError
from rebalancer.logging import get_logger, short_key
from rebalancer.models import (
    AccumulatedFee,
    ClaimedFeeRecord,
    DailyAggregate,
    OperationRecord,
    PendingRedeploy,
    PositionValue,
    PriceHistoryRecord,
    Side,
    Snapshot,
    Token,
)

logger = get_logger(__name__)

_FEE_COLUMNS = {Token.BASE: "fee_base", Token.QUOTE: "fee_quote"}

_DAILY_COLUMNS = (
    "date, open_value, close_value, high_value, low_value, pnl, pnl_percent, operation_count"
)

_OPERATION_COLUMNS = (
    "id, timestamp_ms, position_key, action, before_value, after_value, "
    "amount_processed, tx_ref"
)

_CLAIMED_FEE_COLUMNS = (
    "id, timestamp_ms, position_key, tx_ref, claimed_base, claimed_quote, "
    "claimed_base_value, claimed_quote_value, total_claimed_value, price_at_claim"
)


class TrackerStore:
    """Async SQLite store for the value-tracking pipeline.

    Wraps TrackerDatabase with typed read/write methods. All SQL access
    goes through self._database.db (the aiosqlite Connection).

    Usage:
        async with TrackerDatabase("data/tracker.db") as database:
            store = TrackerStore(database)
            await store.insert_snapshot(snapshot)
    """

    def __init__(self, database: TrackerDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Snapshots
    # ──────────────────────────────────────────────

    async def insert_snapshot(self, snapshot: Snapshot) -> int:
        """Persist a snapshot with its positions serialized as JSON."""
        positions_json = json.dumps([p.to_dict() for p in snapshot.positions])
        cursor = await self._database.db.execute(
            "INSERT INTO snapshots (timestamp_ms, total_value, current_price, positions_json) "
            "VALUES (?, ?, ?, ?)",
            (
                snapshot.timestamp_ms,
                str(snapshot.total_value),
                str(snapshot.current_price),
                positions_json,
            ),
        )
        await self._database.db.commit()
        return cursor.lastrowid or 0

    async def get_latest_snapshot_timestamp(self) -> int | None:
        cursor = await self._database.db.execute("SELECT MAX(timestamp_ms) FROM snapshots")
        row = await cursor.fetchone()
        return row[0] if row else None

    async def get_first_snapshot_timestamp(self) -> int | None:
        cursor = await self._database.db.execute("SELECT MIN(timestamp_ms) FROM snapshots")
        row = await cursor.fetchone()
        return row[0] if row else None

    async def get_latest_snapshot(self) -> Snapshot | None:
        """Return the most recent persisted snapshot with its positions restored."""
        cursor = await self._database.db.execute(
            "SELECT id, timestamp_ms, total_value, current_price, positions_json "
            "FROM snapshots ORDER BY timestamp_ms DESC, id DESC LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        try:
            positions = tuple(PositionValue.from_dict(p) for p in json.loads(row[4]))
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError(f"snapshot {row[0]} has unreadable positions: {e}") from e
        return Snapshot(
            timestamp_ms=row[1],
            total_value=Decimal(row[2]),
            current_price=Decimal(row[3]),
            positions=positions,
            persisted=True,
        )

    async def get_snapshot_values(self, since_ms: int) -> list[tuple[int, Decimal]]:
        """Return (timestamp_ms, total_value) pairs since a time, oldest first."""
        cursor = await self._database.db.execute(
            "SELECT timestamp_ms, total_value FROM snapshots "
            "WHERE timestamp_ms >= ? ORDER BY timestamp_ms ASC",
            (since_ms,),
        )
        rows = await cursor.fetchall()
        return [(row[0], Decimal(row[1])) for row in rows]

    async def count_snapshots(self) -> int:
        cursor = await self._database.db.execute("SELECT COUNT(*) FROM snapshots")
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def delete_snapshots_before(self, cutoff_ms: int) -> int:
        cursor = await self._database.db.execute(
            "DELETE FROM snapshots WHERE timestamp_ms < ?", (cutoff_ms,)
        )
        await self._database.db.commit()
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────

    async def insert_operation(self, operation: OperationRecord) -> int:
        cursor = await self._database.db.execute(
            "INSERT INTO operations "
            "(timestamp_ms, position_key, action, before_value, after_value, "
            "amount_processed, tx_ref) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                operation.timestamp_ms,
                operation.position_key,
                operation.action.value,
                str(operation.before_value),
                str(operation.after_value),
                str(operation.amount_processed),
                operation.tx_ref,
            ),
        )
        await self._database.db.commit()
        return cursor.lastrowid or 0

    async def count_operations_between(self, start_ms: int, end_ms: int) -> int:
        """Count operations with start_ms <= timestamp < end_ms."""
        cursor = await self._database.db.execute(
            "SELECT COUNT(*) FROM operations WHERE timestamp_ms >= ? AND timestamp_ms < ?",
            (start_ms, end_ms),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_recent_operations(self, count: int) -> list[OperationRecord]:
        """Return the most recent operations, newest first."""
        cursor = await self._database.db.execute(
            f"SELECT {_OPERATION_COLUMNS} FROM operations "
            "ORDER BY timestamp_ms DESC, id DESC LIMIT ?",
            (count,),
        )
        rows = await cursor.fetchall()
        return [
            OperationRecord(
                id=row[0],
                timestamp_ms=row[1],
                position_key=row[2],
                action=Side(row[3]),
                before_value=Decimal(row[4]),
                after_value=Decimal(row[5]),
                amount_processed=int(row[6]),
                tx_ref=row[7],
            )
            for row in rows
        ]

    async def delete_operations_before(self, cutoff_ms: int) -> int:
        cursor = await self._database.db.execute(
            "DELETE FROM operations WHERE timestamp_ms < ?", (cutoff_ms,)
        )
        await self._database.db.commit()
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Daily aggregates
    # ──────────────────────────────────────────────

    async def get_daily_pnl(self, date: str) -> DailyAggregate | None:
        cursor = await self._database.db.execute(
            f"SELECT {_DAILY_COLUMNS} FROM daily_pnl WHERE date = ?", (date,)
        )
        row = await cursor.fetchone()
        return _daily_from_row(row) if row else None

    async def get_previous_daily_pnl(self, date: str) -> DailyAggregate | None:
        """Return the latest aggregate strictly before the given date."""
        cursor = await self._database.db.execute(
            f"SELECT {_DAILY_COLUMNS} FROM daily_pnl WHERE date < ? "
            "ORDER BY date DESC LIMIT 1",
            (date,),
        )
        row = await cursor.fetchone()
        return _daily_from_row(row) if row else None

    async def upsert_daily_pnl(self, aggregate: DailyAggregate) -> None:
        """Insert or update a day's values, leaving operation_count untouched."""
        await self._database.db.execute(
            "INSERT INTO daily_pnl "
            "(date, open_value, close_value, high_value, low_value, pnl, pnl_percent, "
            "operation_count) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(date) DO UPDATE SET "
            "open_value = excluded.open_value, close_value = excluded.close_value, "
            "high_value = excluded.high_value, low_value = excluded.low_value, "
            "pnl = excluded.pnl, pnl_percent = excluded.pnl_percent",
            (
                aggregate.date,
                str(aggregate.open_value),
                str(aggregate.close_value),
                str(aggregate.high_value),
                str(aggregate.low_value),
                str(aggregate.pnl),
                str(aggregate.pnl_percent),
                aggregate.operation_count,
            ),
        )
        await self._database.db.commit()

    async def set_operation_count(self, date: str, count: int) -> None:
        """Overwrite the operation count of an existing day row."""
        await self._database.db.execute(
            "UPDATE daily_pnl SET operation_count = ? WHERE date = ?", (count, date)
        )
        await self._database.db.commit()

    async def get_recent_daily_pnl(self, days: int) -> list[DailyAggregate]:
        """Return the most recent `days` aggregates ordered oldest to newest."""
        cursor = await self._database.db.execute(
            f"SELECT {_DAILY_COLUMNS} FROM daily_pnl ORDER BY date DESC LIMIT ?",
            (days,),
        )
        rows = await cursor.fetchall()
        return [_daily_from_row(row) for row in reversed(rows)]

    async def get_first_daily_pnl(self) -> DailyAggregate | None:
        cursor = await self._database.db.execute(
            f"SELECT {_DAILY_COLUMNS} FROM daily_pnl ORDER BY date ASC LIMIT 1"
        )
        row = await cursor.fetchone()
        return _daily_from_row(row) if row else None

    async def get_last_daily_pnl(self) -> DailyAggregate | None:
        cursor = await self._database.db.execute(
            f"SELECT {_DAILY_COLUMNS} FROM daily_pnl ORDER BY date DESC LIMIT 1"
        )
        row = await cursor.fetchone()
        return _daily_from_row(row) if row else None

    # ──────────────────────────────────────────────
    # Claimed fees
    # ──────────────────────────────────────────────

    async def insert_claimed_fee(self, record: ClaimedFeeRecord) -> bool:
        """Append a claim record. Returns False if the tx_ref was already recorded."""
        cursor = await self._database.db.execute(
            "INSERT OR IGNORE INTO claimed_fees "
            "(timestamp_ms, position_key, tx_ref, claimed_base, claimed_quote, "
            "claimed_base_value, claimed_quote_value, total_claimed_value, price_at_claim) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.timestamp_ms,
                record.position_key,
                record.tx_ref,
                str(record.claimed_base),
                str(record.claimed_quote),
                str(record.claimed_base_value),
                str(record.claimed_quote_value),
                str(record.total_claimed_value),
                str(record.price_at_claim),
            ),
        )
        await self._database.db.commit()
        inserted = cursor.rowcount > 0
        if not inserted:
            logger.warning("claimed_fee_duplicate_tx", tx_ref=record.tx_ref)
        return inserted

    async def sum_claimed_fees_since(self, since_ms: int = 0) -> Decimal:
        """Sum total_claimed_value of claims at or after since_ms."""
        cursor = await self._database.db.execute(
            "SELECT total_claimed_value FROM claimed_fees WHERE timestamp_ms >= ?",
            (since_ms,),
        )
        rows = await cursor.fetchall()
        return sum((Decimal(row[0]) for row in rows), Decimal("0"))

    async def get_recent_claimed_fees(self, count: int) -> list[ClaimedFeeRecord]:
        """Return the most recent claim records, newest first."""
        cursor = await self._database.db.execute(
            f"SELECT {_CLAIMED_FEE_COLUMNS} FROM claimed_fees "
            "ORDER BY timestamp_ms DESC, id DESC LIMIT ?",
            (count,),
        )
        rows = await cursor.fetchall()
        return [_claimed_fee_from_row(row) for row in rows]

    async def get_claimed_fees_since(self, since_ms: int) -> list[ClaimedFeeRecord]:
        """Return claim records at or after since_ms, oldest first."""
        cursor = await self._database.db.execute(
            f"SELECT {_CLAIMED_FEE_COLUMNS} FROM claimed_fees "
            "WHERE timestamp_ms >= ? ORDER BY timestamp_ms ASC, id ASC",
            (since_ms,),
        )
        rows = await cursor.fetchall()
        return [_claimed_fee_from_row(row) for row in rows]

    # ──────────────────────────────────────────────
    # Regime price history
    # ──────────────────────────────────────────────

    async def insert_price_history(self, record: PriceHistoryRecord) -> None:
        await self._database.db.execute(
            "INSERT INTO position_price_history "
            "(position_key, timestamp_ms, price_type, avg_price, amount) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.position_key,
                record.timestamp_ms,
                record.price_type.value,
                str(record.avg_price),
                str(record.amount),
            ),
        )
        await self._database.db.commit()

    async def get_last_prices(self, position_key: str) -> dict[Side, Decimal]:
        """Return the latest recorded avg price per side for a position."""
        prices: dict[Side, Decimal] = {}
        for side in Side:
            cursor = await self._database.db.execute(
                "SELECT avg_price FROM position_price_history "
                "WHERE position_key = ? AND price_type = ? "
                "ORDER BY timestamp_ms DESC, id DESC LIMIT 1",
                (position_key, side.value),
            )
            row = await cursor.fetchone()
            if row is not None:
                prices[side] = Decimal(row[0])
        return prices

    # ──────────────────────────────────────────────
    # Accumulated fees
    # ──────────────────────────────────────────────

    async def get_accumulated_fees(self) -> list[AccumulatedFee]:
        cursor = await self._database.db.execute(
            "SELECT position_key, fee_base, fee_quote FROM accumulated_fees "
            "ORDER BY position_key ASC"
        )
        rows = await cursor.fetchall()
        return [
            AccumulatedFee(position_key=row[0], fee_base=int(row[1]), fee_quote=int(row[2]))
            for row in rows
        ]

    async def add_accumulated_fee(self, position_key: str, fee_base: int, fee_quote: int) -> None:
        """Add claimed amounts to a position's accumulated balance."""
        cursor = await self._database.db.execute(
            "SELECT fee_base, fee_quote FROM accumulated_fees WHERE position_key = ?",
            (position_key,),
        )
        row = await cursor.fetchone()
        current_base, current_quote = (int(row[0]), int(row[1])) if row else (0, 0)

        await self._database.db.execute(
            "INSERT OR REPLACE INTO accumulated_fees "
            "(position_key, fee_base, fee_quote, updated_at) VALUES (?, ?, ?, ?)",
            (
                position_key,
                str(current_base + fee_base),
                str(current_quote + fee_quote),
                now_ms(),
            ),
        )
        await self._database.db.commit()

    async def clear_accumulated_token(self, token: Token) -> int:
        """Zero one token's balance across all positions and prune empty rows.

        Returns the number of rows pruned.
        """
        column = _FEE_COLUMNS[token]
        await self._database.db.execute(
            f"UPDATE accumulated_fees SET {column} = '0', updated_at = ?",
            (now_ms(),),
        )
        cursor = await self._database.db.execute(
            "DELETE FROM accumulated_fees WHERE fee_base = '0' AND fee_quote = '0'"
        )
        await self._database.db.commit()
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Pending redeploys
    # ──────────────────────────────────────────────

    async def save_pending_redeploy(self, pending: PendingRedeploy) -> None:
        await self._database.db.execute(
            "INSERT OR REPLACE INTO pending_redeploys "
            "(position_key, action, amount, removed_at) VALUES (?, ?, ?, ?)",
            (pending.position_key, pending.action.value, str(pending.amount), pending.removed_at_ms),
        )
        await self._database.db.commit()
        logger.debug("pending_redeploy_saved", position_key=short_key(pending.position_key))

    async def delete_pending_redeploy(self, position_key: str) -> None:
        await self._database.db.execute(
            "DELETE FROM pending_redeploys WHERE position_key = ?", (position_key,)
        )
        await self._database.db.commit()

    async def get_pending_redeploys(self) -> list[PendingRedeploy]:
        cursor = await self._database.db.execute(
            "SELECT position_key, action, amount, removed_at FROM pending_redeploys "
            "ORDER BY removed_at ASC"
        )
        rows = await cursor.fetchall()
        return [
            PendingRedeploy(
                position_key=row[0],
                action=Side(row[1]),
                amount=int(row[2]),
                removed_at_ms=row[3],
            )
            for row in rows
        ]


def _daily_from_row(row) -> DailyAggregate:  # type: ignore[no-untyped-def]
    return DailyAggregate(
        date=row[0],
        open_value=Decimal(row[1]),
        close_value=Decimal(row[2]),
        high_value=Decimal(row[3]),
        low_value=Decimal(row[4]),
        pnl=Decimal(row[5]),
        pnl_percent=Decimal(row[6]),
        operation_count=row[7],
    )


def _claimed_fee_from_row(row) -> ClaimedFeeRecord:  # type: ignore[no-untyped-def]
    return ClaimedFeeRecord(
        id=row[0],
        timestamp_ms=row[1],
        position_key=row[2],
        tx_ref=row[3],
        claimed_base=int(row[4]),
        claimed_quote=int(row[5]),
        claimed_base_value=Decimal(row[6]),
        claimed_quote_value=Decimal(row[7]),
        total_claimed_value=Decimal(row[8]),
        price_at_claim=Decimal(row[9]),
    )
