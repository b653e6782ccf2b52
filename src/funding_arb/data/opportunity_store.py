"""Typed SQLite read/write abstraction for opportunities and their audit trail.

Provides OpportunityStore with typed methods for the opportunity state machine
(ACTIVE -> EXPIRED/CLOSED), the write-once history table, notification logs and
funding rate validation records. All SQL is isolated behind this interface.

CRITICAL: All monetary/rate values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
import time
import uuid
from decimal import Decimal

import aiosqlite

from funding_arb.data.database import ArbitrageDatabase
from funding_arb.logging import get_logger
from funding_arb.models import (
    DisappearReason,
    FundingRateValidation,
    NotificationChannel,
    NotificationLogEntry,
    NotificationType,
    Opportunity,
    OpportunityHistory,
    OpportunityStatus,
)

logger = get_logger(__name__)

_OPPORTUNITY_COLUMNS = (
    "id, symbol, long_exchange, short_exchange, status, initial_spread, "
    "current_spread, max_spread, max_spread_at, min_spread, initial_apy, "
    "current_apy, max_apy, long_interval_hours, short_interval_hours, "
    "detected_at, notification_count, spread_sum, sample_count, ended_at, "
    "duration_ms, disappear_reason"
)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _row_to_opportunity(row: aiosqlite.Row) -> Opportunity:
    reason = row["disappear_reason"]
    return Opportunity(
        id=row["id"],
        symbol=row["symbol"],
        long_exchange=row["long_exchange"],
        short_exchange=row["short_exchange"],
        status=OpportunityStatus(row["status"]),
        initial_spread=Decimal(row["initial_spread"]),
        current_spread=Decimal(row["current_spread"]),
        max_spread=Decimal(row["max_spread"]),
        max_spread_at=row["max_spread_at"],
        min_spread=Decimal(row["min_spread"]),
        initial_apy=Decimal(row["initial_apy"]),
        current_apy=Decimal(row["current_apy"]),
        max_apy=Decimal(row["max_apy"]),
        long_interval_hours=row["long_interval_hours"],
        short_interval_hours=row["short_interval_hours"],
        detected_at=row["detected_at"],
        notification_count=row["notification_count"],
        spread_sum=Decimal(row["spread_sum"]),
        sample_count=row["sample_count"],
        ended_at=row["ended_at"],
        duration_ms=row["duration_ms"],
        disappear_reason=DisappearReason(reason) if reason else None,
    )


class OpportunityStore:
    """Async SQLite store for opportunities, history, notifications and validations.

    At most one ACTIVE row exists per (symbol, long_exchange, short_exchange);
    the schema enforces it with a partial unique index and upserts are
    serialized with an asyncio.Lock so read-modify-write cycles never interleave.

    Usage:
        async with ArbitrageDatabase("data/arbitrage.db") as database:
            store = OpportunityStore(database)
            opportunity, created = await store.upsert_active(...)
    """

    def __init__(self, database: ArbitrageDatabase) -> None:
        self._database = database
        self._lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Opportunity state machine
    # ──────────────────────────────────────────────

    async def upsert_active(
        self,
        symbol: str,
        long_exchange: str,
        short_exchange: str,
        spread: Decimal,
        apy: Decimal,
        long_interval_hours: int,
        short_interval_hours: int,
        now: float | None = None,
    ) -> tuple[Opportunity, bool]:
        """Create the ACTIVE opportunity for a key, or fold a new sample into it.

        max_spread/max_apy only ever grow and min_spread only ever shrinks;
        spread_sum and sample_count feed the running average.

        Returns:
            (opportunity, created) where created is True for a new row.
        """
        now = time.time() if now is None else now
        async with self._lock:
            existing = await self.get_active(symbol, long_exchange, short_exchange)
            if existing is None:
                opportunity = Opportunity(
                    id=_new_id(),
                    symbol=symbol,
                    long_exchange=long_exchange,
                    short_exchange=short_exchange,
                    status=OpportunityStatus.ACTIVE,
                    initial_spread=spread,
                    current_spread=spread,
                    max_spread=spread,
                    max_spread_at=now,
                    min_spread=spread,
                    initial_apy=apy,
                    current_apy=apy,
                    max_apy=apy,
                    long_interval_hours=long_interval_hours,
                    short_interval_hours=short_interval_hours,
                    detected_at=now,
                    spread_sum=spread,
                    sample_count=1,
                )
                await self._insert(opportunity)
                logger.info(
                    "opportunity_created",
                    opportunity_id=opportunity.id,
                    symbol=symbol,
                    long_exchange=long_exchange,
                    short_exchange=short_exchange,
                    spread=str(spread),
                    apy=str(apy),
                )
                return opportunity, True

            existing.current_spread = spread
            existing.current_apy = apy
            if spread > existing.max_spread:
                existing.max_spread = spread
                existing.max_spread_at = now
            if apy > existing.max_apy:
                existing.max_apy = apy
            if spread < existing.min_spread:
                existing.min_spread = spread
            existing.spread_sum += spread
            existing.sample_count += 1
            existing.long_interval_hours = long_interval_hours
            existing.short_interval_hours = short_interval_hours

            await self._database.db.execute(
                "UPDATE opportunities SET current_spread = ?, current_apy = ?, "
                "max_spread = ?, max_spread_at = ?, min_spread = ?, max_apy = ?, "
                "spread_sum = ?, sample_count = ?, long_interval_hours = ?, "
                "short_interval_hours = ? WHERE id = ?",
                (
                    str(existing.current_spread),
                    str(existing.current_apy),
                    str(existing.max_spread),
                    existing.max_spread_at,
                    str(existing.min_spread),
                    str(existing.max_apy),
                    str(existing.spread_sum),
                    existing.sample_count,
                    existing.long_interval_hours,
                    existing.short_interval_hours,
                    existing.id,
                ),
            )
            await self._database.db.commit()
            return existing, False

    async def touch_active(
        self, opportunity_id: str, spread: Decimal, apy: Decimal
    ) -> None:
        """Update only the current values of an ACTIVE opportunity.

        Used while the spread sits between the exit and entry thresholds.
        """
        await self._database.db.execute(
            "UPDATE opportunities SET current_spread = ?, current_apy = ? "
            "WHERE id = ? AND status = 'ACTIVE'",
            (str(spread), str(apy), opportunity_id),
        )
        await self._database.db.commit()

    async def end_opportunity(
        self,
        opportunity: Opportunity,
        reason: DisappearReason,
        status: OpportunityStatus = OpportunityStatus.EXPIRED,
        ended_at: float | None = None,
    ) -> OpportunityHistory | None:
        """Move an ACTIVE opportunity to a terminal status and snapshot it.

        The status transition is conditional on the row still being ACTIVE and
        the history insert is keyed on opportunity_id, so concurrent calls for
        the same opportunity produce exactly one history row.

        Returns:
            The history snapshot, or None if the opportunity was already ended.
        """
        ended_at = time.time() if ended_at is None else ended_at
        duration_ms = max(0, int((ended_at - opportunity.detected_at) * 1000))

        async with self._lock:
            cursor = await self._database.db.execute(
                "UPDATE opportunities SET status = ?, ended_at = ?, duration_ms = ?, "
                "disappear_reason = ? WHERE id = ? AND status = 'ACTIVE'",
                (status.value, ended_at, duration_ms, reason.value, opportunity.id),
            )
            if cursor.rowcount == 0:
                await self._database.db.commit()
                logger.debug("opportunity_already_ended", opportunity_id=opportunity.id)
                return None

            current = await self.get(opportunity.id)
            source = current if current is not None else opportunity
            history = OpportunityHistory(
                id=_new_id(),
                opportunity_id=source.id,
                symbol=source.symbol,
                long_exchange=source.long_exchange,
                short_exchange=source.short_exchange,
                initial_spread=source.initial_spread,
                max_spread=source.max_spread,
                avg_spread=source.avg_spread,
                initial_apy=source.initial_apy,
                max_apy=source.max_apy,
                duration_ms=duration_ms,
                notification_count=source.notification_count,
                disappear_reason=reason,
                detected_at=source.detected_at,
                ended_at=ended_at,
            )
            await self._database.db.execute(
                "INSERT OR IGNORE INTO opportunity_history "
                "(id, opportunity_id, symbol, long_exchange, short_exchange, "
                "initial_spread, max_spread, avg_spread, initial_apy, max_apy, "
                "duration_ms, notification_count, disappear_reason, detected_at, "
                "ended_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    history.id,
                    history.opportunity_id,
                    history.symbol,
                    history.long_exchange,
                    history.short_exchange,
                    str(history.initial_spread),
                    str(history.max_spread),
                    str(history.avg_spread),
                    str(history.initial_apy),
                    str(history.max_apy),
                    history.duration_ms,
                    history.notification_count,
                    history.disappear_reason.value,
                    history.detected_at,
                    history.ended_at,
                ),
            )
            await self._database.db.commit()

        opportunity.status = status
        opportunity.ended_at = ended_at
        opportunity.duration_ms = duration_ms
        opportunity.disappear_reason = reason
        logger.info(
            "opportunity_ended",
            opportunity_id=opportunity.id,
            symbol=opportunity.symbol,
            reason=reason.value,
            duration_ms=duration_ms,
        )
        return history

    async def increment_notification_count(self, opportunity_id: str) -> None:
        """Count one delivered notification.

        The history snapshot of an ended opportunity is kept in step, so the
        final DISAPPEARED notification sent after end_opportunity is included.
        """
        await self._database.db.execute(
            "UPDATE opportunities SET notification_count = notification_count + 1 "
            "WHERE id = ?",
            (opportunity_id,),
        )
        await self._database.db.execute(
            "UPDATE opportunity_history SET notification_count = notification_count + 1 "
            "WHERE opportunity_id = ?",
            (opportunity_id,),
        )
        await self._database.db.commit()

    async def _insert(self, opportunity: Opportunity) -> None:
        await self._database.db.execute(
            f"INSERT INTO opportunities ({_OPPORTUNITY_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                opportunity.id,
                opportunity.symbol,
                opportunity.long_exchange,
                opportunity.short_exchange,
                opportunity.status.value,
                str(opportunity.initial_spread),
                str(opportunity.current_spread),
                str(opportunity.max_spread),
                opportunity.max_spread_at,
                str(opportunity.min_spread),
                str(opportunity.initial_apy),
                str(opportunity.current_apy),
                str(opportunity.max_apy),
                opportunity.long_interval_hours,
                opportunity.short_interval_hours,
                opportunity.detected_at,
                opportunity.notification_count,
                str(opportunity.spread_sum),
                opportunity.sample_count,
                opportunity.ended_at,
                opportunity.duration_ms,
                opportunity.disappear_reason.value if opportunity.disappear_reason else None,
            ),
        )
        await self._database.db.commit()

    # ──────────────────────────────────────────────
    # Opportunity reads
    # ──────────────────────────────────────────────

    async def get_active(
        self, symbol: str, long_exchange: str, short_exchange: str
    ) -> Opportunity | None:
        cursor = await self._database.db.execute(
            f"SELECT {_OPPORTUNITY_COLUMNS} FROM opportunities "
            "WHERE symbol = ? AND long_exchange = ? AND short_exchange = ? "
            "AND status = 'ACTIVE'",
            (symbol, long_exchange, short_exchange),
        )
        row = await cursor.fetchone()
        return _row_to_opportunity(row) if row else None

    async def list_active(self, symbol: str | None = None) -> list[Opportunity]:
        """ACTIVE opportunities, optionally filtered by symbol."""
        if symbol is None:
            cursor = await self._database.db.execute(
                f"SELECT {_OPPORTUNITY_COLUMNS} FROM opportunities "
                "WHERE status = 'ACTIVE' ORDER BY detected_at ASC"
            )
        else:
            cursor = await self._database.db.execute(
                f"SELECT {_OPPORTUNITY_COLUMNS} FROM opportunities "
                "WHERE status = 'ACTIVE' AND symbol = ? ORDER BY detected_at ASC",
                (symbol,),
            )
        rows = await cursor.fetchall()
        return [_row_to_opportunity(row) for row in rows]

    async def list_opportunities(
        self, status: OpportunityStatus | None = None, limit: int = 100
    ) -> list[Opportunity]:
        """Most recent opportunities first, optionally filtered by status."""
        if status is None:
            cursor = await self._database.db.execute(
                f"SELECT {_OPPORTUNITY_COLUMNS} FROM opportunities "
                "ORDER BY detected_at DESC LIMIT ?",
                (limit,),
            )
        else:
            cursor = await self._database.db.execute(
                f"SELECT {_OPPORTUNITY_COLUMNS} FROM opportunities "
                "WHERE status = ? ORDER BY detected_at DESC LIMIT ?",
                (status.value, limit),
            )
        rows = await cursor.fetchall()
        return [_row_to_opportunity(row) for row in rows]

    async def get(self, opportunity_id: str) -> Opportunity | None:
        cursor = await self._database.db.execute(
            f"SELECT {_OPPORTUNITY_COLUMNS} FROM opportunities WHERE id = ?",
            (opportunity_id,),
        )
        row = await cursor.fetchone()
        return _row_to_opportunity(row) if row else None

    async def get_history(
        self, symbol: str | None = None, limit: int = 100
    ) -> list[OpportunityHistory]:
        """History snapshots, most recently ended first."""
        query = (
            "SELECT id, opportunity_id, symbol, long_exchange, short_exchange, "
            "initial_spread, max_spread, avg_spread, initial_apy, max_apy, "
            "duration_ms, notification_count, disappear_reason, detected_at, ended_at "
            "FROM opportunity_history"
        )
        params: tuple = ()
        if symbol is not None:
            query += " WHERE symbol = ?"
            params = (symbol,)
        query += " ORDER BY ended_at DESC LIMIT ?"
        cursor = await self._database.db.execute(query, (*params, limit))
        rows = await cursor.fetchall()
        return [
            OpportunityHistory(
                id=row["id"],
                opportunity_id=row["opportunity_id"],
                symbol=row["symbol"],
                long_exchange=row["long_exchange"],
                short_exchange=row["short_exchange"],
                initial_spread=Decimal(row["initial_spread"]),
                max_spread=Decimal(row["max_spread"]),
                avg_spread=Decimal(row["avg_spread"]),
                initial_apy=Decimal(row["initial_apy"]),
                max_apy=Decimal(row["max_apy"]),
                duration_ms=row["duration_ms"],
                notification_count=row["notification_count"],
                disappear_reason=DisappearReason(row["disappear_reason"]),
                detected_at=row["detected_at"],
                ended_at=row["ended_at"],
            )
            for row in rows
        ]

    # ──────────────────────────────────────────────
    # Notification logs and validation audit
    # ──────────────────────────────────────────────

    async def append_notification(self, entry: NotificationLogEntry) -> None:
        """Append a notification attempt. Rows are never updated."""
        await self._database.db.execute(
            "INSERT INTO notification_logs "
            "(opportunity_id, symbol, long_exchange, short_exchange, "
            "notification_type, channel, message, spread, apy, is_debounced, "
            "debounce_skipped_count, sent_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.opportunity_id,
                entry.symbol,
                entry.long_exchange,
                entry.short_exchange,
                entry.notification_type.value,
                entry.channel.value,
                entry.message,
                str(entry.spread),
                str(entry.apy),
                int(entry.is_debounced),
                entry.debounce_skipped_count,
                entry.sent_at,
            ),
        )
        await self._database.db.commit()

    async def list_notifications(
        self, symbol: str | None = None, limit: int = 100
    ) -> list[NotificationLogEntry]:
        query = (
            "SELECT opportunity_id, symbol, long_exchange, short_exchange, "
            "notification_type, channel, message, spread, apy, is_debounced, "
            "debounce_skipped_count, sent_at FROM notification_logs"
        )
        params: tuple = ()
        if symbol is not None:
            query += " WHERE symbol = ?"
            params = (symbol,)
        query += " ORDER BY sent_at DESC, id DESC LIMIT ?"
        cursor = await self._database.db.execute(query, (*params, limit))
        rows = await cursor.fetchall()
        return [
            NotificationLogEntry(
                opportunity_id=row["opportunity_id"],
                symbol=row["symbol"],
                long_exchange=row["long_exchange"],
                short_exchange=row["short_exchange"],
                notification_type=NotificationType(row["notification_type"]),
                channel=NotificationChannel(row["channel"]),
                message=row["message"],
                spread=Decimal(row["spread"]),
                apy=Decimal(row["apy"]),
                is_debounced=bool(row["is_debounced"]),
                debounce_skipped_count=row["debounce_skipped_count"],
                sent_at=row["sent_at"],
            )
            for row in rows
        ]

    async def record_validation(self, validation: FundingRateValidation) -> None:
        await self._database.db.execute(
            "INSERT INTO funding_rate_validations "
            "(exchange, symbol, raw_rate, interval_hours, passed, reason, recorded_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                validation.exchange,
                validation.symbol,
                validation.raw_rate,
                validation.interval_hours,
                int(validation.passed),
                validation.reason,
                validation.recorded_at,
            ),
        )
        await self._database.db.commit()

    async def list_validations(
        self, exchange: str | None = None, limit: int = 100
    ) -> list[FundingRateValidation]:
        query = (
            "SELECT exchange, symbol, raw_rate, interval_hours, passed, reason, "
            "recorded_at FROM funding_rate_validations"
        )
        params: tuple = ()
        if exchange is not None:
            query += " WHERE exchange = ?"
            params = (exchange,)
        query += " ORDER BY recorded_at DESC, id DESC LIMIT ?"
        cursor = await self._database.db.execute(query, (*params, limit))
        rows = await cursor.fetchall()
        return [
            FundingRateValidation(
                exchange=row["exchange"],
                symbol=row["symbol"],
                raw_rate=row["raw_rate"],
                interval_hours=row["interval_hours"],
                passed=bool(row["passed"]),
                reason=row["reason"],
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]
