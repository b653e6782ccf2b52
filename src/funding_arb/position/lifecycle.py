"""Position lifecycle management for two-venue delta-neutral positions.

Position flow:
1. Open: one open at a time per (user, symbol); check free balance covers
   each leg's margin plus a buffer, split the requested size into buckets,
   then for each bucket place the long BUY and short SELL concurrently
   (asyncio.gather). Both legs filled -> OPEN; one leg failed -> PARTIAL;
   both failed -> FAILED. A failed leg is never retried automatically.
2. Close: OPEN -> CLOSING, fetch live prices, close the long leg then the
   short leg with reduce-only orders. Both closed -> CLOSED plus a Trade
   record; one closed -> PARTIAL with the failed leg's reason; none closed ->
   back to OPEN and PositionCloseError.
3. Batch close: close every OPEN member of a group one by one, streaming
   progress to the group's room. A failing member never stops the batch.
4. Mark closed: database-only reconciliation of PARTIAL/FAILED positions
   after the surviving leg was closed by hand on the venue.

Leg failures are data (status + failure_reason), not exceptions.

Client events emitted on `events` as (room, payload):
    position:close:progress, position:close:success,
    position:close:partial, position:close:failed,
    batch:close:progress, batch:close:position:complete,
    batch:close:complete, batch:close:failed
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

from funding_arb.config import PositionSettings
from funding_arb.data.position_store import PositionStore
from funding_arb.events import EventBus
from funding_arb.exceptions import (
    ArbitrageError,
    InsufficientBalanceError,
    InvalidPositionStatusError,
    PositionCloseError,
    PositionLockedError,
    PositionNotFoundError,
    ValidationError,
)
from funding_arb.exchange.client import VenueConnector
from funding_arb.logging import bind_context, get_logger, unbind_context
from funding_arb.market_data.funding_feed import FundingFeed
from funding_arb.models import (
    BatchCloseResult,
    BatchPositionResult,
    CloseEstimate,
    CloseOutcome,
    CloseReason,
    CloseResult,
    OpenPositionRequest,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    Position,
    PositionGroup,
    PositionSide,
    PositionStatus,
    Trade,
    TradeStatus,
)
from funding_arb.normalizer import split_quantity
from funding_arb.pnl.calculator import (
    PnLCalculator,
    fetch_funding_pnl,
    price_diff_pnl,
    required_margin,
)
from funding_arb.position.groups import build_groups
from funding_arb.serialization import to_payload

logger = get_logger(__name__)

_FAILED_ORDER_STATUSES = (OrderStatus.REJECTED, OrderStatus.CANCELED, OrderStatus.EXPIRED)


def _new_id() -> str:
    return uuid4().hex[:16]


def position_room(position_id: str) -> str:
    return f"position:{position_id}"


def group_room(group_id: str) -> str:
    return f"group:{group_id}"


@dataclass
class _LegOutcome:
    """Result of one leg's order: either an OrderResult or an error message."""

    side: PositionSide
    result: OrderResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None


class PositionLifecycleManager:
    """Opens, closes and reconciles positions across two venues.

    Args:
        store: Position and trade persistence.
        connectors: Venue connectors by exchange name.
        pnl: Fee and PnL calculator.
        settings: Leverage, split and order timeout defaults.
        events: Bus receiving client-facing progress events.
        feed: Optional funding feed used to record the rates at open.
    """

    def __init__(
        self,
        store: PositionStore,
        connectors: dict[str, VenueConnector],
        pnl: PnLCalculator | None = None,
        settings: PositionSettings | None = None,
        events: EventBus | None = None,
        feed: FundingFeed | None = None,
    ) -> None:
        self._store = store
        self._connectors = connectors
        self._pnl = pnl or PnLCalculator()
        self._settings = settings or PositionSettings()
        self._events = events or EventBus("positions")
        self._feed = feed
        self._list_cache: dict[str, list[Position]] = {}
        self._batch_groups: set[str] = set()
        self._open_locks: dict[tuple[str, str], asyncio.Lock] = {}

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def store(self) -> PositionStore:
        return self._store

    # ──────────────────────────────────────────────
    # Open
    # ──────────────────────────────────────────────

    async def open_positions(self, request: OpenPositionRequest) -> list[Position]:
        """Open one position per split bucket.

        Buckets are opened one after another; every bucket gets its own
        Position regardless of the others' outcome. A group_id links them
        when split_count > 1.

        Raises:
            ValidationError: On a bad request (unknown venue, same venue on
                both legs, non-positive size, split count out of range).
            InsufficientBalanceError: When a venue's free balance is below the
                leg's margin plus buffer. No order is placed.
            PositionLockedError: When an open for the same user and symbol
                is still running.
        """
        self._validate_open(request)
        key = (request.user_id, request.symbol)
        lock = self._open_locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            logger.warning(
                "open_rejected_locked", user_id=request.user_id, symbol=request.symbol
            )
            raise PositionLockedError(
                f"An open for {request.symbol} is already in progress for {request.user_id}"
            )

        async with lock:
            return await self._open_locked(request)

    async def _open_locked(self, request: OpenPositionRequest) -> list[Position]:
        leverage = request.leverage or self._settings.default_leverage
        await self._check_balance(request, leverage)
        buckets = split_quantity(request.quantity, request.split_count)
        group_id = _new_id() if request.split_count > 1 else None

        logger.info(
            "open_positions_requested",
            user_id=request.user_id,
            symbol=request.symbol,
            long_exchange=request.long_exchange,
            short_exchange=request.short_exchange,
            quantity=str(request.quantity),
            split_count=request.split_count,
            group_id=group_id,
        )

        await self._apply_leverage(request, leverage)

        positions = []
        for quantity in buckets:
            positions.append(
                await self._open_one(request, quantity, leverage, group_id)
            )
        self.invalidate_cache(request.user_id)
        return positions

    async def _check_balance(self, request: OpenPositionRequest, leverage: int) -> None:
        """Require free balance on each venue for its leg's margin plus buffer."""
        long_connector = self._connectors[request.long_exchange]
        short_connector = self._connectors[request.short_exchange]
        currency = self._settings.balance_currency
        long_price, short_price, long_balance, short_balance = await asyncio.gather(
            long_connector.get_price(request.symbol),
            short_connector.get_price(request.symbol),
            long_connector.get_balance(currency),
            short_connector.get_balance(currency),
        )
        for exchange, price, balance in (
            (request.long_exchange, long_price, long_balance),
            (request.short_exchange, short_price, short_balance),
        ):
            required = required_margin(
                request.quantity, price, leverage, self._settings.margin_buffer
            )
            if balance.free < required:
                logger.warning(
                    "insufficient_balance",
                    user_id=request.user_id,
                    exchange=exchange,
                    required=str(required),
                    available=str(balance.free),
                )
                raise InsufficientBalanceError(exchange, required, balance.free)

    def _validate_open(self, request: OpenPositionRequest) -> None:
        if request.long_exchange == request.short_exchange:
            raise ValidationError("Long and short legs must be on different exchanges")
        for exchange in (request.long_exchange, request.short_exchange):
            if exchange not in self._connectors:
                raise ValidationError(f"Exchange not connected: {exchange}")
        if request.quantity <= 0:
            raise ValidationError(f"Quantity must be positive, got {request.quantity}")
        if not 1 <= request.split_count <= self._settings.max_split_count:
            raise ValidationError(
                f"Split count must be between 1 and {self._settings.max_split_count}, "
                f"got {request.split_count}"
            )
        if request.leverage is not None and request.leverage < 1:
            raise ValidationError(f"Leverage must be at least 1, got {request.leverage}")
        for name, value in (
            ("Stop-loss", request.stop_loss_percent),
            ("Take-profit", request.take_profit_percent),
        ):
            if value is not None and value <= 0:
                raise ValidationError(f"{name} percent must be positive, got {value}")

    async def _apply_leverage(self, request: OpenPositionRequest, leverage: int) -> None:
        """Set leverage on both venues. Failures are logged, not fatal."""
        results = await asyncio.gather(
            self._connectors[request.long_exchange].set_leverage(request.symbol, leverage),
            self._connectors[request.short_exchange].set_leverage(request.symbol, leverage),
            return_exceptions=True,
        )
        for exchange, result in zip((request.long_exchange, request.short_exchange), results):
            if isinstance(result, Exception):
                logger.warning(
                    "set_leverage_failed",
                    exchange=exchange,
                    symbol=request.symbol,
                    leverage=leverage,
                    error=str(result),
                )

    async def _open_one(
        self,
        request: OpenPositionRequest,
        quantity: Decimal,
        leverage: int,
        group_id: str | None,
    ) -> Position:
        position = Position(
            id=_new_id(),
            user_id=request.user_id,
            symbol=request.symbol,
            long_exchange=request.long_exchange,
            short_exchange=request.short_exchange,
            quantity=quantity,
            leverage=leverage,
            group_id=group_id,
            stop_loss_percent=request.stop_loss_percent,
            take_profit_percent=request.take_profit_percent,
        )
        position.open_long_rate, position.open_short_rate = self._current_rates(position)
        await self._store.create(position)

        position.status = PositionStatus.OPENING
        await self._store.save(position)

        long_leg, short_leg = await asyncio.gather(
            self._place_leg(
                PositionSide.LONG,
                position.long_exchange,
                OrderRequest(symbol=position.symbol, side=OrderSide.BUY, quantity=quantity),
            ),
            self._place_leg(
                PositionSide.SHORT,
                position.short_exchange,
                OrderRequest(symbol=position.symbol, side=OrderSide.SELL, quantity=quantity),
            ),
        )

        entry_fee = Decimal("0")
        for leg in (long_leg, short_leg):
            if leg.result is None:
                continue
            size = leg.result.filled_qty if leg.result.filled_qty > 0 else quantity
            fee = leg.result.fee or self._pnl.fill_fee(leg.result.average_price, size)
            entry_fee += fee
            if leg.side == PositionSide.LONG:
                position.long_order_id = leg.result.order_id
                position.long_entry_price = leg.result.average_price
                position.long_size = size
            else:
                position.short_order_id = leg.result.order_id
                position.short_entry_price = leg.result.average_price
                position.short_size = size
        position.entry_fee = entry_fee

        if long_leg.ok and short_leg.ok:
            position.status = PositionStatus.OPEN
            position.opened_at = time.time()
        elif long_leg.ok or short_leg.ok:
            failed, succeeded = (short_leg, long_leg) if long_leg.ok else (long_leg, short_leg)
            position.status = PositionStatus.PARTIAL
            position.opened_at = time.time()
            position.failure_reason = (
                f"{failed.side.value.upper()} side open failed: {failed.error}. "
                f"{succeeded.side.value.upper()} side opened successfully."
            )
        else:
            position.status = PositionStatus.FAILED
            position.failure_reason = (
                f"Both sides failed to open. LONG: {long_leg.error}. SHORT: {short_leg.error}."
            )

        await self._store.save(position)
        log = logger.info if position.status == PositionStatus.OPEN else logger.warning
        log(
            "position_opened" if position.status == PositionStatus.OPEN else "position_open_incomplete",
            position_id=position.id,
            status=position.status.value,
            symbol=position.symbol,
            quantity=str(quantity),
            long_entry_price=str(position.long_entry_price),
            short_entry_price=str(position.short_entry_price),
            failure_reason=position.failure_reason,
            group_id=group_id,
        )
        return position

    def _current_rates(self, position: Position) -> tuple[Decimal | None, Decimal | None]:
        if self._feed is None:
            return None, None
        long_sample = self._feed.get_sample(position.long_exchange, position.symbol)
        short_sample = self._feed.get_sample(position.short_exchange, position.symbol)
        return (
            long_sample.rate if long_sample else None,
            short_sample.rate if short_sample else None,
        )

    async def _place_leg(
        self, side: PositionSide, exchange: str, request: OrderRequest
    ) -> _LegOutcome:
        """Place one leg's order, converting any failure into an outcome."""
        connector = self._connectors[exchange]
        try:
            result = await asyncio.wait_for(
                connector.create_order(request),
                timeout=self._settings.order_timeout_seconds,
            )
        except asyncio.TimeoutError:
            message = f"Order timed out after {self._settings.order_timeout_seconds}s"
            logger.error("leg_order_timeout", exchange=exchange, side=side.value)
            return _LegOutcome(side=side, error=message)
        except Exception as exc:
            logger.error("leg_order_failed", exchange=exchange, side=side.value, error=str(exc))
            return _LegOutcome(side=side, error=str(exc))

        if result.status in _FAILED_ORDER_STATUSES:
            message = f"Order {result.order_id} {result.status.value}"
            logger.error("leg_order_rejected", exchange=exchange, side=side.value, error=message)
            return _LegOutcome(side=side, error=message)
        return _LegOutcome(side=side, result=result)

    # ──────────────────────────────────────────────
    # Close
    # ──────────────────────────────────────────────

    async def get_position(self, position_id: str, user_id: str | None = None) -> Position:
        """Load a position, optionally checking its owner.

        Raises:
            PositionNotFoundError: If it does not exist or belongs to someone else.
        """
        position = await self._store.get(position_id)
        if position is None or (user_id is not None and position.user_id != user_id):
            raise PositionNotFoundError(f"Position not found: {position_id}")
        return position

    async def _live_prices(self, position: Position) -> tuple[Decimal, Decimal]:
        return await asyncio.gather(
            self._connectors[position.long_exchange].get_price(position.symbol),
            self._connectors[position.short_exchange].get_price(position.symbol),
        )

    async def _funding_pnl(self, position: Position) -> Decimal:
        """Live cumulative funding PnL, falling back to the cached value."""
        try:
            value = await fetch_funding_pnl(position, self._connectors)
        except Exception as exc:
            logger.warning(
                "funding_pnl_unavailable",
                position_id=position.id,
                error=str(exc),
                cached=str(position.cached_funding_pnl),
            )
            return position.cached_funding_pnl or Decimal("0")
        await self._store.set_cached_funding_pnl(position.id, value)
        position.cached_funding_pnl = value
        return value

    async def estimate_close(
        self, position_id: str, user_id: str | None = None
    ) -> CloseEstimate:
        """Estimate the outcome of closing a position now, for confirmation.

        net_pnl = price diff PnL - estimated exit fees; funding PnL is shown
        alongside.
        """
        position = await self.get_position(position_id, user_id)
        if position.status != PositionStatus.OPEN:
            raise InvalidPositionStatusError(
                f"Position {position_id} is {position.status.value}, expected OPEN"
            )
        long_price, short_price = await self._live_prices(position)
        diff = price_diff_pnl(position, long_price, short_price)
        fees = self._pnl.exit_fees(position, long_price, short_price)
        funding = await self._funding_pnl(position)
        return CloseEstimate(
            position_id=position.id,
            long_price=long_price,
            short_price=short_price,
            price_diff_pnl=diff,
            estimated_fees=fees,
            funding_pnl=funding,
            net_pnl=diff - fees,
        )

    async def close_position(
        self,
        position_id: str,
        user_id: str | None = None,
        reason: CloseReason = CloseReason.MANUAL,
    ) -> CloseResult:
        """Close both legs of an OPEN position.

        Returns:
            CloseResult with outcome SUCCESS (trade recorded) or PARTIAL
            (failed side and error preserved on the position).

        Raises:
            PositionNotFoundError: Unknown position.
            InvalidPositionStatusError: Position is not OPEN.
            PositionCloseError: Prices could not be fetched or both legs
                failed; the position is OPEN again.
        """
        position = await self.get_position(position_id, user_id)
        if position.status != PositionStatus.OPEN:
            raise InvalidPositionStatusError(
                f"Position {position_id} is {position.status.value}, expected OPEN"
            )
        if not await self._store.transition(
            position.id, (PositionStatus.OPEN,), PositionStatus.CLOSING
        ):
            raise InvalidPositionStatusError(f"Position {position_id} is already being closed")
        position.status = PositionStatus.CLOSING
        self.invalidate_cache(position.user_id)

        bind_context(position_id=position.id)
        room = position_room(position.id)
        logger.info("position_close_started", reason=reason.value, symbol=position.symbol)

        try:
            await self._progress(room, position.id, "fetching_prices", 10)
            try:
                long_price, short_price = await self._live_prices(position)
            except Exception as exc:
                await self._restore_open(position)
                await self._events.emit(
                    "position:close:failed",
                    room,
                    {"position_id": position.id, "error": str(exc), "retryable": True},
                )
                raise PositionCloseError(
                    f"Could not fetch prices for {position.symbol}: {exc}"
                ) from exc

            funding = await self._funding_pnl(position)

            await self._progress(room, position.id, "closing_legs", 40)
            # Sequential; a failed long leg does not skip the short leg.
            long_leg = await self._place_leg(
                PositionSide.LONG,
                position.long_exchange,
                OrderRequest(
                    symbol=position.symbol,
                    side=OrderSide.SELL,
                    quantity=position.long_size or position.quantity,
                    reduce_only=True,
                ),
            )
            short_leg = await self._place_leg(
                PositionSide.SHORT,
                position.short_exchange,
                OrderRequest(
                    symbol=position.symbol,
                    side=OrderSide.BUY,
                    quantity=position.short_size or position.quantity,
                    reduce_only=True,
                ),
            )

            if long_leg.ok and short_leg.ok:
                return await self._finish_close(
                    position, reason, long_leg, short_leg, long_price, short_price, funding
                )
            if long_leg.ok or short_leg.ok:
                return await self._finish_partial(position, reason, long_leg, short_leg)

            await self._restore_open(position)
            message = (
                f"Both sides failed to close. LONG: {long_leg.error}. "
                f"SHORT: {short_leg.error}."
            )
            logger.error("position_close_failed", error=message)
            await self._events.emit(
                "position:close:failed",
                room,
                {"position_id": position.id, "error": message, "retryable": True},
            )
            raise PositionCloseError(message, retryable=True)
        finally:
            self.invalidate_cache(position.user_id)
            unbind_context("position_id")

    async def _restore_open(self, position: Position) -> None:
        await self._store.transition(position.id, (PositionStatus.CLOSING,), PositionStatus.OPEN)
        position.status = PositionStatus.OPEN

    async def _finish_close(
        self,
        position: Position,
        reason: CloseReason,
        long_leg: _LegOutcome,
        short_leg: _LegOutcome,
        long_price: Decimal,
        short_price: Decimal,
        funding: Decimal,
    ) -> CloseResult:
        assert long_leg.result is not None and short_leg.result is not None
        long_exit = long_leg.result.average_price or long_price
        short_exit = short_leg.result.average_price or short_price

        reported_fees = long_leg.result.fee + short_leg.result.fee
        exit_fees = reported_fees or self._pnl.exit_fees(position, long_exit, short_exit)
        realized = self._pnl.realized(position, long_exit, short_exit, funding, exit_fees)

        closed_at = time.time()
        opened_at = position.opened_at or position.created_at
        trade = Trade(
            id=_new_id(),
            position_id=position.id,
            user_id=position.user_id,
            symbol=position.symbol,
            long_exchange=position.long_exchange,
            short_exchange=position.short_exchange,
            long_entry_price=position.long_entry_price or Decimal("0"),
            long_exit_price=long_exit,
            short_entry_price=position.short_entry_price or Decimal("0"),
            short_exit_price=short_exit,
            long_size=position.long_size or position.quantity,
            short_size=position.short_size or position.quantity,
            holding_duration=max(0, int(closed_at - opened_at)),
            price_diff_pnl=realized.price_diff_pnl,
            funding_pnl=realized.funding_pnl,
            total_fees=realized.total_fees,
            total_pnl=realized.total_pnl,
            roi=realized.roi,
            status=TradeStatus.SUCCESS,
            close_reason=reason,
            opened_at=opened_at,
            closed_at=closed_at,
        )
        await self._store.insert_trade(trade)

        position.status = PositionStatus.CLOSED
        position.close_reason = reason
        position.closed_at = closed_at
        position.failure_reason = None
        await self._store.save(position)

        logger.info(
            "position_closed",
            total_pnl=str(trade.total_pnl),
            roi=str(trade.roi),
            reason=reason.value,
        )
        await self._events.emit(
            "position:close:success",
            position_room(position.id),
            {"position_id": position.id, "trade": to_payload(trade)},
        )
        return CloseResult(
            position_id=position.id,
            outcome=CloseOutcome.SUCCESS,
            position=position,
            trade=trade,
        )

    async def _finish_partial(
        self,
        position: Position,
        reason: CloseReason,
        long_leg: _LegOutcome,
        short_leg: _LegOutcome,
    ) -> CloseResult:
        failed, succeeded = (short_leg, long_leg) if long_leg.ok else (long_leg, short_leg)
        position.status = PositionStatus.PARTIAL
        position.close_reason = reason
        position.failure_reason = (
            f"{failed.side.value.upper()} side close failed: {failed.error}. "
            f"{succeeded.side.value.upper()} side closed successfully."
        )
        await self._store.save(position)

        logger.warning(
            "position_close_partial",
            failed_side=failed.side.value,
            error=failed.error,
        )
        await self._events.emit(
            "position:close:partial",
            position_room(position.id),
            {
                "position_id": position.id,
                "failed_side": failed.side.value,
                "error": failed.error,
                "failure_reason": position.failure_reason,
            },
        )
        return CloseResult(
            position_id=position.id,
            outcome=CloseOutcome.PARTIAL,
            position=position,
            failed_side=failed.side,
            error=failed.error,
        )

    async def _progress(self, room: str, position_id: str, step: str, percent: int) -> None:
        await self._events.emit(
            "position:close:progress",
            room,
            {"position_id": position_id, "step": step, "progress": percent},
        )

    # ──────────────────────────────────────────────
    # Batch close
    # ──────────────────────────────────────────────

    async def batch_close(self, group_id: str, user_id: str | None = None) -> BatchCloseResult:
        """Close every OPEN position of a group, one at a time.

        Never raises for member failures; the result classifies the batch as
        success (all closed), partial (some closed) or failure (none closed).

        Raises:
            PositionNotFoundError: If the group has no positions for the user.
            InvalidPositionStatusError: If a batch close of the group is running.
        """
        members = await self._store.list_by_group(group_id)
        if user_id is not None:
            members = [p for p in members if p.user_id == user_id]
        if not members:
            raise PositionNotFoundError(f"Position group not found: {group_id}")
        if group_id in self._batch_groups:
            raise InvalidPositionStatusError(f"Batch close already running for group {group_id}")

        targets = [p for p in members if p.status == PositionStatus.OPEN]
        total = len(targets)
        room = group_room(group_id)
        results: list[BatchPositionResult] = []
        self._batch_groups.add(group_id)
        logger.info("batch_close_started", group_id=group_id, total=total)

        try:
            for index, position in enumerate(targets, start=1):
                await self._events.emit(
                    "batch:close:progress",
                    room,
                    {
                        "group_id": group_id,
                        "current": index,
                        "total": total,
                        "position_id": position.id,
                    },
                )
                entry = await self._close_member(position, user_id)
                results.append(entry)
                await self._events.emit(
                    "batch:close:position:complete",
                    room,
                    {
                        "group_id": group_id,
                        "current": index,
                        "total": total,
                        **to_payload(entry),
                    },
                )
        finally:
            self._batch_groups.discard(group_id)
            for owner in {p.user_id for p in members}:
                self.invalidate_cache(owner)

        closed = sum(1 for r in results if r.success)
        failed = total - closed
        if closed == total:
            status = CloseOutcome.SUCCESS
        elif closed > 0:
            status = CloseOutcome.PARTIAL
        else:
            status = CloseOutcome.FAILURE

        result = BatchCloseResult(
            group_id=group_id,
            status=status,
            total=total,
            closed_count=closed,
            failed_count=failed,
            results=results,
        )
        event = "batch:close:failed" if status == CloseOutcome.FAILURE else "batch:close:complete"
        await self._events.emit(event, room, to_payload(result))
        logger.info(
            "batch_close_finished",
            group_id=group_id,
            status=status.value,
            closed=closed,
            failed=failed,
        )
        return result

    async def _close_member(self, position: Position, user_id: str | None) -> BatchPositionResult:
        try:
            outcome = await self.close_position(position.id, user_id, CloseReason.BATCH_CLOSE)
        except ArbitrageError as exc:
            return BatchPositionResult(
                position_id=position.id,
                success=False,
                outcome=CloseOutcome.FAILURE,
                error=str(exc),
            )
        except Exception as exc:
            logger.error("batch_member_close_error", position_id=position.id, exc_info=True)
            return BatchPositionResult(
                position_id=position.id,
                success=False,
                outcome=CloseOutcome.FAILURE,
                error=str(exc),
            )
        return BatchPositionResult(
            position_id=position.id,
            success=outcome.outcome == CloseOutcome.SUCCESS,
            outcome=outcome.outcome,
            error=outcome.error,
        )

    # ──────────────────────────────────────────────
    # Reconciliation
    # ──────────────────────────────────────────────

    async def mark_closed(self, position_id: str, user_id: str | None = None) -> Position:
        """Mark a PARTIAL or FAILED position CLOSED without contacting any venue."""
        position = await self.get_position(position_id, user_id)
        if position.status not in (PositionStatus.PARTIAL, PositionStatus.FAILED):
            raise InvalidPositionStatusError(
                f"Only PARTIAL or FAILED positions can be marked closed, "
                f"position {position_id} is {position.status.value}"
            )
        position.status = PositionStatus.CLOSED
        position.closed_at = time.time()
        await self._store.save(position)
        self.invalidate_cache(position.user_id)
        logger.info("position_marked_closed", position_id=position.id)
        return position

    async def mark_group_closed(self, group_id: str, user_id: str | None = None) -> list[Position]:
        """Mark every PARTIAL or FAILED member of a group CLOSED."""
        members = await self._store.list_by_group(group_id)
        if user_id is not None:
            members = [p for p in members if p.user_id == user_id]
        if not members:
            raise PositionNotFoundError(f"Position group not found: {group_id}")

        targets = [
            p for p in members
            if p.status in (PositionStatus.PARTIAL, PositionStatus.FAILED)
        ]
        if not targets:
            raise InvalidPositionStatusError(
                f"Group {group_id} has no PARTIAL or FAILED positions"
            )
        return [await self.mark_closed(p.id, user_id) for p in targets]

    # ──────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────

    async def list_positions(self, user_id: str) -> list[Position]:
        """All positions of a user, served from a cache invalidated on change."""
        cached = self._list_cache.get(user_id)
        if cached is not None:
            return list(cached)
        positions = await self._store.list_by_user(user_id)
        self._list_cache[user_id] = positions
        return list(positions)

    def invalidate_cache(self, user_id: str) -> None:
        self._list_cache.pop(user_id, None)

    async def get_groups(self, user_id: str) -> list[PositionGroup]:
        """Groups of the user that still have OPEN members."""
        return build_groups(await self.list_positions(user_id))
