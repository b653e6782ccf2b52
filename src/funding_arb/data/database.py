"""Async SQLite database manager for opportunities, positions and audit records.

One aiosqlite connection in WAL journal mode, shared by the opportunity
and position stores.

CRITICAL: All monetary/rate values are stored as TEXT and restored as Decimal.
"""

import os
from typing import Self

import aiosqlite

from funding_arb.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS opportunities (
    id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    long_exchange TEXT NOT NULL,
    short_exchange TEXT NOT NULL,
    status TEXT NOT NULL,
    initial_spread TEXT NOT NULL,
    current_spread TEXT NOT NULL,
    max_spread TEXT NOT NULL,
    max_spread_at REAL NOT NULL,
    min_spread TEXT NOT NULL,
    initial_apy TEXT NOT NULL,
    current_apy TEXT NOT NULL,
    max_apy TEXT NOT NULL,
    long_interval_hours INTEGER NOT NULL,
    short_interval_hours INTEGER NOT NULL,
    detected_at REAL NOT NULL,
    notification_count INTEGER NOT NULL DEFAULT 0,
    spread_sum TEXT NOT NULL DEFAULT '0',
    sample_count INTEGER NOT NULL DEFAULT 0,
    ended_at REAL,
    duration_ms INTEGER,
    disappear_reason TEXT
);

CREATE TABLE IF NOT EXISTS opportunity_history (
    id TEXT PRIMARY KEY,
    opportunity_id TEXT NOT NULL UNIQUE,
    symbol TEXT NOT NULL,
    long_exchange TEXT NOT NULL,
    short_exchange TEXT NOT NULL,
    initial_spread TEXT NOT NULL,
    max_spread TEXT NOT NULL,
    avg_spread TEXT NOT NULL,
    initial_apy TEXT NOT NULL,
    max_apy TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    notification_count INTEGER NOT NULL,
    disappear_reason TEXT NOT NULL,
    detected_at REAL NOT NULL,
    ended_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS notification_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    opportunity_id TEXT,
    symbol TEXT NOT NULL,
    long_exchange TEXT NOT NULL,
    short_exchange TEXT NOT NULL,
    notification_type TEXT NOT NULL,
    channel TEXT NOT NULL,
    message TEXT NOT NULL,
    spread TEXT NOT NULL,
    apy TEXT NOT NULL,
    is_debounced INTEGER NOT NULL DEFAULT 0,
    debounce_skipped_count INTEGER NOT NULL DEFAULT 0,
    sent_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS funding_rate_validations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    exchange TEXT NOT NULL,
    symbol TEXT NOT NULL,
    raw_rate TEXT NOT NULL,
    interval_hours INTEGER NOT NULL,
    passed INTEGER NOT NULL,
    reason TEXT NOT NULL,
    recorded_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    long_exchange TEXT NOT NULL,
    short_exchange TEXT NOT NULL,
    quantity TEXT NOT NULL,
    leverage INTEGER NOT NULL DEFAULT 3,
    status TEXT NOT NULL,
    long_order_id TEXT,
    short_order_id TEXT,
    long_entry_price TEXT,
    short_entry_price TEXT,
    long_size TEXT,
    short_size TEXT,
    entry_fee TEXT NOT NULL DEFAULT '0',
    open_long_rate TEXT,
    open_short_rate TEXT,
    failure_reason TEXT,
    group_id TEXT,
    stop_loss_percent TEXT,
    take_profit_percent TEXT,
    exit_suggested INTEGER NOT NULL DEFAULT 0,
    exit_suggested_at REAL,
    exit_suggestion_reason TEXT,
    cached_funding_pnl TEXT,
    close_reason TEXT,
    created_at REAL NOT NULL,
    opened_at REAL,
    closed_at REAL
);

CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    position_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    long_exchange TEXT NOT NULL,
    short_exchange TEXT NOT NULL,
    long_entry_price TEXT NOT NULL,
    long_exit_price TEXT NOT NULL,
    short_entry_price TEXT NOT NULL,
    short_exit_price TEXT NOT NULL,
    long_size TEXT NOT NULL,
    short_size TEXT NOT NULL,
    holding_duration INTEGER NOT NULL,
    price_diff_pnl TEXT NOT NULL,
    funding_pnl TEXT NOT NULL,
    total_fees TEXT NOT NULL,
    total_pnl TEXT NOT NULL,
    roi TEXT NOT NULL,
    status TEXT NOT NULL,
    close_reason TEXT NOT NULL,
    opened_at REAL NOT NULL,
    closed_at REAL NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_opportunity_one_active
    ON opportunities(symbol, long_exchange, short_exchange)
    WHERE status = 'ACTIVE';

CREATE INDEX IF NOT EXISTS idx_opportunity_status
    ON opportunities(status, symbol);

CREATE INDEX IF NOT EXISTS idx_notification_symbol_ts
    ON notification_logs(symbol, sent_at);

CREATE INDEX IF NOT EXISTS idx_position_user_status
    ON positions(user_id, status);

CREATE INDEX IF NOT EXISTS idx_position_group
    ON positions(group_id);

CREATE INDEX IF NOT EXISTS idx_position_symbol_status
    ON positions(symbol, status);

CREATE INDEX IF NOT EXISTS idx_trade_position
    ON trades(position_id);
"""


class ArbitrageDatabase:
    """Async SQLite connection manager.

    Creates the schema on connect and records SCHEMA_VERSION once. Rows
    come back as aiosqlite.Row so stores read columns by name.

    Usage:
        async with ArbitrageDatabase("data/arbitrage.db") as database:
            store = OpportunityStore(database)
    """

    def __init__(self, db_path: str = "data/arbitrage.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """The open aiosqlite connection; RuntimeError before connect()."""
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection, configure pragmas, and create the schema."""
        if self._db_path != ":memory:":
            db_dir = os.path.dirname(self._db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("arbitrage_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the connection; a no-op when already closed."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("arbitrage_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
