"""Async SQLite database holding the value tracker's durable state.

aiosqlite keeps disk I/O off the event loop; WAL mode lets analytics
queries read while a tick writes.
"""

import os
from typing import Self

import aiosqlite

from rebalancer.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_ms INTEGER NOT NULL,
    total_value TEXT NOT NULL,
    current_price TEXT NOT NULL,
    positions_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_ms INTEGER NOT NULL,
    position_key TEXT NOT NULL,
    action TEXT NOT NULL,
    before_value TEXT NOT NULL,
    after_value TEXT NOT NULL,
    amount_processed TEXT NOT NULL,
    tx_ref TEXT
);

CREATE TABLE IF NOT EXISTS daily_pnl (
    date TEXT PRIMARY KEY,
    open_value TEXT NOT NULL,
    close_value TEXT NOT NULL,
    high_value TEXT NOT NULL,
    low_value TEXT NOT NULL,
    pnl TEXT NOT NULL,
    pnl_percent TEXT NOT NULL,
    operation_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS claimed_fees (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_ms INTEGER NOT NULL,
    position_key TEXT NOT NULL,
    tx_ref TEXT NOT NULL UNIQUE,
    claimed_base TEXT NOT NULL,
    claimed_quote TEXT NOT NULL,
    claimed_base_value TEXT NOT NULL,
    claimed_quote_value TEXT NOT NULL,
    total_claimed_value TEXT NOT NULL,
    price_at_claim TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS position_price_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    position_key TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    price_type TEXT NOT NULL,
    avg_price TEXT NOT NULL,
    amount TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS accumulated_fees (
    position_key TEXT PRIMARY KEY,
    fee_base TEXT NOT NULL DEFAULT '0',
    fee_quote TEXT NOT NULL DEFAULT '0',
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_redeploys (
    position_key TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    amount TEXT NOT NULL,
    removed_at INTEGER NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_snapshots_ts
    ON snapshots(timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_operations_ts
    ON operations(timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_claimed_fees_ts
    ON claimed_fees(timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_price_history_key_type_ts
    ON position_price_history(position_key, price_type, timestamp_ms);
"""


class TrackerDatabase:
    """Async SQLite connection manager for the value tracker.

    Owns the single aiosqlite connection shared by TrackerStore. Connecting
    creates every table and index idempotently, switches the journal to WAL
    and records the schema version on first use.

    Usage:
        # Context manager (recommended)
        async with TrackerDatabase("data/tracker.db") as database:
            store = TrackerStore(database)

        # Manual lifecycle
        database = TrackerDatabase("data/tracker.db")
        await database.connect()
        try:
            ...
        finally:
            await database.close()
    """

    def __init__(self, db_path: str = "data/tracker.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """The open aiosqlite connection.

        Raises RuntimeError before connect() and after close().
        """
        if self._connection is None:
            raise RuntimeError("Tracker database not connected. Call connect() first.")
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection, apply pragmas and create the schema.

        The parent directory of db_path is created when missing.
        """
        # data/ may not exist on a fresh checkout
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        # One writer (the tick loop), readers from analytics
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("tracker_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the connection; a no-op when already closed."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("tracker_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        """Create tracker tables and indexes if they do not exist."""
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        """Record the schema version on a fresh file, warn on a different one."""
        assert self._connection is not None
        cursor = await self._connection.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("tracker_schema_version_set", version=SCHEMA_VERSION)
        elif row[0] != SCHEMA_VERSION:
            logger.warning(
                "tracker_schema_version_mismatch",
                found=row[0],
                expected=SCHEMA_VERSION,
                db_path=self._db_path,
            )

    async def __aenter__(self) -> Self:
        """Connect on entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Close on exit, including when the body raised."""
        await self.close()
