"""Typed SQLite read/write abstraction for positions and realized trades.

CRITICAL: All monetary/rate values stored as TEXT in SQLite, restored as Decimal on read.
"""

import time
from decimal import Decimal

import aiosqlite

from funding_arb.data.database import ArbitrageDatabase
from funding_arb.logging import get_logger
from funding_arb.models import (
    CloseReason,
    ExitSuggestionReason,
    Position,
    PositionStatus,
    Trade,
    TradeStatus,
)

logger = get_logger(__name__)

_POSITION_FIELDS = (
    "id", "user_id", "symbol", "long_exchange", "short_exchange", "quantity",
    "leverage", "status", "long_order_id", "short_order_id", "long_entry_price",
    "short_entry_price", "long_size", "short_size", "entry_fee", "open_long_rate",
    "open_short_rate", "failure_reason", "group_id", "stop_loss_percent",
    "take_profit_percent", "exit_suggested", "exit_suggested_at",
    "exit_suggestion_reason", "cached_funding_pnl", "close_reason", "created_at",
    "opened_at", "closed_at",
)
_POSITION_COLUMNS = ", ".join(_POSITION_FIELDS)

_TRADE_FIELDS = (
    "id", "position_id", "user_id", "symbol", "long_exchange", "short_exchange",
    "long_entry_price", "long_exit_price", "short_entry_price", "short_exit_price",
    "long_size", "short_size", "holding_duration", "price_diff_pnl", "funding_pnl",
    "total_fees", "total_pnl", "roi", "status", "close_reason", "opened_at",
    "closed_at",
)
_TRADE_COLUMNS = ", ".join(_TRADE_FIELDS)


def _text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _position_params(position: Position) -> tuple:
    return (
        position.id,
        position.user_id,
        position.symbol,
        position.long_exchange,
        position.short_exchange,
        str(position.quantity),
        position.leverage,
        position.status.value,
        position.long_order_id,
        position.short_order_id,
        _text(position.long_entry_price),
        _text(position.short_entry_price),
        _text(position.long_size),
        _text(position.short_size),
        str(position.entry_fee),
        _text(position.open_long_rate),
        _text(position.open_short_rate),
        position.failure_reason,
        position.group_id,
        _text(position.stop_loss_percent),
        _text(position.take_profit_percent),
        int(position.exit_suggested),
        position.exit_suggested_at,
        position.exit_suggestion_reason.value if position.exit_suggestion_reason else None,
        _text(position.cached_funding_pnl),
        position.close_reason.value if position.close_reason else None,
        position.created_at,
        position.opened_at,
        position.closed_at,
    )


def _row_to_position(row: aiosqlite.Row) -> Position:
    suggestion = row["exit_suggestion_reason"]
    close_reason = row["close_reason"]
    return Position(
        id=row["id"],
        user_id=row["user_id"],
        symbol=row["symbol"],
        long_exchange=row["long_exchange"],
        short_exchange=row["short_exchange"],
        quantity=Decimal(row["quantity"]),
        leverage=row["leverage"],
        status=PositionStatus(row["status"]),
        long_order_id=row["long_order_id"],
        short_order_id=row["short_order_id"],
        long_entry_price=_dec(row["long_entry_price"]),
        short_entry_price=_dec(row["short_entry_price"]),
        long_size=_dec(row["long_size"]),
        short_size=_dec(row["short_size"]),
        entry_fee=Decimal(row["entry_fee"]),
        open_long_rate=_dec(row["open_long_rate"]),
        open_short_rate=_dec(row["open_short_rate"]),
        failure_reason=row["failure_reason"],
        group_id=row["group_id"],
        stop_loss_percent=_dec(row["stop_loss_percent"]),
        take_profit_percent=_dec(row["take_profit_percent"]),
        exit_suggested=bool(row["exit_suggested"]),
        exit_suggested_at=row["exit_suggested_at"],
        exit_suggestion_reason=ExitSuggestionReason(suggestion) if suggestion else None,
        cached_funding_pnl=_dec(row["cached_funding_pnl"]),
        close_reason=CloseReason(close_reason) if close_reason else None,
        created_at=row["created_at"],
        opened_at=row["opened_at"],
        closed_at=row["closed_at"],
    )


def _row_to_trade(row: aiosqlite.Row) -> Trade:
    return Trade(
        id=row["id"],
        position_id=row["position_id"],
        user_id=row["user_id"],
        symbol=row["symbol"],
        long_exchange=row["long_exchange"],
        short_exchange=row["short_exchange"],
        long_entry_price=Decimal(row["long_entry_price"]),
        long_exit_price=Decimal(row["long_exit_price"]),
        short_entry_price=Decimal(row["short_entry_price"]),
        short_exit_price=Decimal(row["short_exit_price"]),
        long_size=Decimal(row["long_size"]),
        short_size=Decimal(row["short_size"]),
        holding_duration=row["holding_duration"],
        price_diff_pnl=Decimal(row["price_diff_pnl"]),
        funding_pnl=Decimal(row["funding_pnl"]),
        total_fees=Decimal(row["total_fees"]),
        total_pnl=Decimal(row["total_pnl"]),
        roi=Decimal(row["roi"]),
        status=TradeStatus(row["status"]),
        close_reason=CloseReason(row["close_reason"]),
        opened_at=row["opened_at"],
        closed_at=row["closed_at"],
    )


class PositionStore:
    """Async SQLite store for positions and trades.

    Positions are written whole: callers mutate the dataclass and call save().
    Status transitions that must not race (OPEN -> CLOSING) go through
    transition(), which only succeeds when the row is in an expected status.
    """

    def __init__(self, database: ArbitrageDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def create(self, position: Position) -> Position:
        placeholders = ", ".join("?" for _ in _POSITION_FIELDS)
        await self._database.db.execute(
            f"INSERT INTO positions ({_POSITION_COLUMNS}) VALUES ({placeholders})",
            _position_params(position),
        )
        await self._database.db.commit()
        logger.debug(
            "position_created",
            position_id=position.id,
            symbol=position.symbol,
            group_id=position.group_id,
        )
        return position

    async def save(self, position: Position) -> None:
        """Persist every field of an existing position."""
        assignments = ", ".join(f"{name} = ?" for name in _POSITION_FIELDS[1:])
        params = _position_params(position)
        await self._database.db.execute(
            f"UPDATE positions SET {assignments} WHERE id = ?",
            (*params[1:], position.id),
        )
        await self._database.db.commit()

    async def transition(
        self,
        position_id: str,
        expected: tuple[PositionStatus, ...],
        new_status: PositionStatus,
    ) -> bool:
        """Atomically move a position to new_status if it is in an expected status."""
        marks = ", ".join("?" for _ in expected)
        cursor = await self._database.db.execute(
            f"UPDATE positions SET status = ? WHERE id = ? AND status IN ({marks})",
            (new_status.value, position_id, *(s.value for s in expected)),
        )
        await self._database.db.commit()
        return cursor.rowcount > 0

    async def set_exit_suggestion(
        self,
        position_id: str,
        reason: ExitSuggestionReason | None,
        at: float | None = None,
    ) -> None:
        """Set (reason given) or clear (reason None) the exit suggestion flag."""
        if reason is None:
            await self._database.db.execute(
                "UPDATE positions SET exit_suggested = 0, exit_suggested_at = NULL, "
                "exit_suggestion_reason = NULL WHERE id = ?",
                (position_id,),
            )
        else:
            await self._database.db.execute(
                "UPDATE positions SET exit_suggested = 1, exit_suggested_at = ?, "
                "exit_suggestion_reason = ? WHERE id = ?",
                (time.time() if at is None else at, reason.value, position_id),
            )
        await self._database.db.commit()

    async def set_cached_funding_pnl(self, position_id: str, value: Decimal) -> None:
        await self._database.db.execute(
            "UPDATE positions SET cached_funding_pnl = ? WHERE id = ?",
            (str(value), position_id),
        )
        await self._database.db.commit()

    async def insert_trade(self, trade: Trade) -> None:
        placeholders = ", ".join("?" for _ in _TRADE_FIELDS)
        await self._database.db.execute(
            f"INSERT INTO trades ({_TRADE_COLUMNS}) VALUES ({placeholders})",
            (
                trade.id,
                trade.position_id,
                trade.user_id,
                trade.symbol,
                trade.long_exchange,
                trade.short_exchange,
                str(trade.long_entry_price),
                str(trade.long_exit_price),
                str(trade.short_entry_price),
                str(trade.short_exit_price),
                str(trade.long_size),
                str(trade.short_size),
                trade.holding_duration,
                str(trade.price_diff_pnl),
                str(trade.funding_pnl),
                str(trade.total_fees),
                str(trade.total_pnl),
                str(trade.roi),
                trade.status.value,
                trade.close_reason.value,
                trade.opened_at,
                trade.closed_at,
            ),
        )
        await self._database.db.commit()
        logger.debug("trade_recorded", trade_id=trade.id, position_id=trade.position_id)

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get(self, position_id: str) -> Position | None:
        cursor = await self._database.db.execute(
            f"SELECT {_POSITION_COLUMNS} FROM positions WHERE id = ?",
            (position_id,),
        )
        row = await cursor.fetchone()
        return _row_to_position(row) if row else None

    async def list_by_user(
        self, user_id: str, status: PositionStatus | None = None
    ) -> list[Position]:
        if status is None:
            cursor = await self._database.db.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions WHERE user_id = ? "
                "ORDER BY created_at ASC",
                (user_id,),
            )
        else:
            cursor = await self._database.db.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions "
                "WHERE user_id = ? AND status = ? ORDER BY created_at ASC",
                (user_id, status.value),
            )
        rows = await cursor.fetchall()
        return [_row_to_position(row) for row in rows]

    async def list_by_status(
        self, status: PositionStatus, symbol: str | None = None
    ) -> list[Position]:
        if symbol is None:
            cursor = await self._database.db.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions WHERE status = ? "
                "ORDER BY created_at ASC",
                (status.value,),
            )
        else:
            cursor = await self._database.db.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions "
                "WHERE status = ? AND symbol = ? ORDER BY created_at ASC",
                (status.value, symbol),
            )
        rows = await cursor.fetchall()
        return [_row_to_position(row) for row in rows]

    async def list_with_conditions(self) -> list[Position]:
        """OPEN positions that carry a stop-loss or take-profit percent."""
        cursor = await self._database.db.execute(
            f"SELECT {_POSITION_COLUMNS} FROM positions WHERE status = 'OPEN' "
            "AND (stop_loss_percent IS NOT NULL OR take_profit_percent IS NOT NULL) "
            "ORDER BY created_at ASC"
        )
        rows = await cursor.fetchall()
        return [_row_to_position(row) for row in rows]

    async def list_by_group(
        self, group_id: str, status: PositionStatus | None = None
    ) -> list[Position]:
        if status is None:
            cursor = await self._database.db.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions WHERE group_id = ? "
                "ORDER BY created_at ASC",
                (group_id,),
            )
        else:
            cursor = await self._database.db.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions "
                "WHERE group_id = ? AND status = ? ORDER BY created_at ASC",
                (group_id, status.value),
            )
        rows = await cursor.fetchall()
        return [_row_to_position(row) for row in rows]

    async def list_trades(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[Trade]:
        if user_id is None:
            cursor = await self._database.db.execute(
                f"SELECT {_TRADE_COLUMNS} FROM trades ORDER BY closed_at DESC LIMIT ?",
                (limit,),
            )
        else:
            cursor = await self._database.db.execute(
                f"SELECT {_TRADE_COLUMNS} FROM trades WHERE user_id = ? "
                "ORDER BY closed_at DESC LIMIT ?",
                (user_id, limit),
            )
        rows = await cursor.fetchall()
        return [_row_to_trade(row) for row in rows]

    async def get_trade_for_position(self, position_id: str) -> Trade | None:
        cursor = await self._database.db.execute(
            f"SELECT {_TRADE_COLUMNS} FROM trades WHERE position_id = ?",
            (position_id,),
        )
        row = await cursor.fetchone()
        return _row_to_trade(row) if row else None
