"""Shared venue connector implementation on top of ccxt.

Wraps a ccxt.pro exchange (REST plus watch* push methods) with market
loading, typed payload decode, funding interval resolution, bounded retry on
every call and supervised push subscriptions. Venue subclasses only supply
the ccxt id, options and the venue-native interval lookup.

Interval resolution order for a funding rate:
  1. shared FundingIntervalCache entry
  2. venue-native metadata (_fetch_native_interval)
  3. time-to-next-settlement bucketed into {1, 4, 8}h
  4. 8h default, cached with a short TTL as low confidence
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any, TypeVar

import ccxt.pro as ccxt_pro

from funding_arb.config import ConnectorSettings, VenueSettings
from funding_arb.events import EventBus
from funding_arb.exceptions import ApiError, ExchangeConnectionError, ValidationError
from funding_arb.exchange.client import VenueConnector
from funding_arb.exchange.decoders import (
    BalanceEntryPayload,
    FundingHistoryPayload,
    FundingRateHistoryPayload,
    FundingRatePayload,
    OrderPayload,
    PositionPayload,
    TickerPayload,
    decode,
)
from funding_arb.exchange.interval_cache import FundingIntervalCache
from funding_arb.exchange.retry import retry_api_call
from funding_arb.exchange.subscriptions import SubscriptionSupervisor
from funding_arb.exchange.symbols import from_ccxt_symbol, to_ccxt_symbol, to_venue_symbol
from funding_arb.logging import get_logger
from funding_arb.models import (
    AccountBalance,
    FundingRateSample,
    IntervalSource,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    PositionSide,
    SubscriptionType,
    SymbolInfo,
    VenuePosition,
)
from funding_arb.normalizer import DEFAULT_INTERVAL_HOURS, VALID_INTERVALS

logger = get_logger(__name__)

T = TypeVar("T")

_MS_PER_HOUR = 3_600_000
_BUCKETS = (1, 4, 8)

_ORDER_STATUS = {
    "closed": OrderStatus.FILLED,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "cancelled": OrderStatus.CANCELED,
    "rejected": OrderStatus.REJECTED,
    "expired": OrderStatus.EXPIRED,
}


def map_order_status(
    raw_status: str | None, filled: Decimal, amount: Decimal | None
) -> OrderStatus:
    """Normalize a ccxt order status string."""
    status = (raw_status or "").lower()
    if status in _ORDER_STATUS:
        return _ORDER_STATUS[status]
    if status in ("open", "new", "partially_filled"):
        return OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.NEW
    if amount is not None and amount > 0 and filled >= amount:
        return OrderStatus.FILLED
    return OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.NEW


def bucket_interval(next_settlement_ms: int | None, now_ms: int) -> int | None:
    """Smallest of {1, 4, 8}h that the time to next settlement fits in."""
    if next_settlement_ms is None:
        return None
    hours_left = (next_settlement_ms - now_ms) / _MS_PER_HOUR
    if hours_left <= 0:
        return None
    for bucket in _BUCKETS:
        if hours_left <= bucket:
            return bucket
    return None


def snap_interval(hours: float, tolerance: float = 0.5) -> int | None:
    """Snap a measured interval to the nearest of {1, 4, 8}h within tolerance."""
    nearest = min(_BUCKETS, key=lambda b: abs(b - hours))
    return nearest if abs(nearest - hours) <= tolerance else None


class CcxtConnector(VenueConnector):
    """Venue connector backed by a ccxt.pro exchange instance.

    Args:
        settings: Credentials for this venue.
        connector_settings: Retry, subscription and cache tuning.
        interval_cache: Process-wide funding interval cache.
        exchange: Pre-built ccxt exchange (tests); built from settings if None.
    """

    name: str = ""
    exchange_id: str = ""
    default_type: str = "swap"
    push_methods: dict[SubscriptionType, str] = {
        SubscriptionType.FUNDING_RATE: "watchFundingRate",
        SubscriptionType.POSITION_UPDATE: "watchPositions",
        SubscriptionType.BALANCE_UPDATE: "watchBalance",
    }

    def __init__(
        self,
        settings: VenueSettings,
        connector_settings: ConnectorSettings | None = None,
        interval_cache: FundingIntervalCache | None = None,
        exchange: Any = None,
    ) -> None:
        self._settings = settings
        self._connector_settings = connector_settings or ConnectorSettings()
        if interval_cache is None:
            interval_cache = FundingIntervalCache(ttl=self._connector_settings.interval_cache_ttl)
        self._interval_cache = interval_cache
        self._exchange = exchange if exchange is not None else self._build_exchange()
        self._events = EventBus(self.name)
        self._supervisor = SubscriptionSupervisor(
            self.name,
            retry_delay=self._connector_settings.resubscribe_delay,
            grace_period=self._connector_settings.unsubscribe_grace,
            on_error=self._on_subscription_error,
        )
        self._markets: dict = {}
        self._symbol_info: dict[str, SymbolInfo] = {}
        self._connected = False
        self._destroyed = False

    # ──────────────────────────────────────────────
    # Construction and lifecycle
    # ──────────────────────────────────────────────

    def _ccxt_config(self) -> dict:
        config: dict = {
            "apiKey": self._settings.api_key.get_secret_value(),
            "secret": self._settings.api_secret.get_secret_value(),
            "enableRateLimit": True,
            "options": {"defaultType": self.default_type},
        }
        passphrase = self._settings.passphrase.get_secret_value()
        if passphrase:
            config["password"] = passphrase
        return config

    def _build_exchange(self) -> Any:
        exchange = getattr(ccxt_pro, self.exchange_id)(self._ccxt_config())
        if self._settings.testnet:
            exchange.set_sandbox_mode(True)
        return exchange

    @property
    def exchange(self) -> Any:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._destroyed

    @property
    def supervisor(self) -> SubscriptionSupervisor:
        return self._supervisor

    @property
    def interval_cache(self) -> FundingIntervalCache:
        return self._interval_cache

    async def connect(self) -> None:
        """Load markets, run venue warm-up and emit `connected`."""
        logger.info("connecting_to_venue", exchange=self.name, testnet=self._settings.testnet)
        self._destroyed = False
        self._markets = await self._call("load_markets", self._exchange.load_markets)
        self._connected = True
        try:
            await self._on_connected()
        except Exception:
            logger.warning("venue_warmup_failed", exchange=self.name, exc_info=True)
        logger.info("venue_connected", exchange=self.name, market_count=len(self._markets))
        await self._events.emit("connected", self.name)

    async def disconnect(self) -> None:
        """Stop every subscription and close the ccxt session. CRITICAL for ccxt async."""
        logger.info("disconnecting_from_venue", exchange=self.name)
        self._destroyed = True
        await self._supervisor.stop_all()
        try:
            await self._exchange.close()
        finally:
            self._connected = False
            logger.info("venue_disconnected", exchange=self.name)
            await self._events.emit("disconnected", self.name)

    async def _on_connected(self) -> None:
        """Venue warm-up after markets are loaded. Override in subclasses."""

    # ──────────────────────────────────────────────
    # Call plumbing
    # ──────────────────────────────────────────────

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        attempts: int | None = None,
        **kwargs: Any,
    ) -> T:
        if self._destroyed:
            raise ExchangeConnectionError(f"[{self.name}] connector is disconnected")
        return await retry_api_call(
            fn,
            *args,
            operation=operation,
            exchange=self.name,
            max_attempts=attempts or self._connector_settings.retry_max_attempts,
            delay=self._connector_settings.retry_delay,
            should_continue=lambda: not self._destroyed,
            **kwargs,
        )

    def ccxt_symbol(self, symbol: str) -> str:
        return to_ccxt_symbol(symbol)

    def venue_symbol(self, symbol: str) -> str:
        return to_venue_symbol(self.name, symbol)

    def supports_push(self, stream: SubscriptionType) -> bool:
        method = self.push_methods.get(stream)
        has = getattr(self._exchange, "has", None) or {}
        return bool(method and has.get(method))

    async def _ensure_markets(self) -> dict:
        if not self._markets:
            self._markets = await self._call("load_markets", self._exchange.load_markets)
        return self._markets

    def _market_info(self, symbol: str) -> dict:
        market = self._markets.get(self.ccxt_symbol(symbol)) or {}
        return market.get("info") or {}

    # ──────────────────────────────────────────────
    # Funding rates and interval resolution
    # ──────────────────────────────────────────────

    async def get_funding_rate(self, symbol: str) -> FundingRateSample:
        raw = await self._call(
            "fetch_funding_rate", self._exchange.fetch_funding_rate, self.ccxt_symbol(symbol)
        )
        return await self._to_sample(symbol, raw)

    async def get_funding_rates(self, symbols: list[str]) -> list[FundingRateSample]:
        results = await asyncio.gather(
            *[self.get_funding_rate(s) for s in symbols], return_exceptions=True
        )
        samples: list[FundingRateSample] = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                logger.warning(
                    "funding_rate_unavailable", exchange=self.name, symbol=symbol, error=str(result)
                )
                continue
            samples.append(result)
        return samples

    async def _to_sample(self, symbol: str, raw: Any) -> FundingRateSample:
        payload = decode(FundingRatePayload, raw, context=f"{self.name}:{symbol}")
        if payload.funding_rate is None:
            raise ApiError(f"[{self.name}] no funding rate for {symbol}", code="NO_FUNDING_RATE")
        hours, source = await self.resolve_interval(symbol, payload)
        return FundingRateSample(
            exchange=self.name,
            symbol=symbol,
            rate=payload.funding_rate,
            interval_hours=hours,
            next_settlement_at=payload.next_funding_timestamp,
            interval_source=source,
            mark_price=payload.mark_price,
            index_price=payload.index_price,
        )

    async def resolve_interval(
        self, symbol: str, payload: FundingRatePayload
    ) -> tuple[int, IntervalSource]:
        """Resolve the settlement interval for symbol and write it back to the cache."""
        cached = self._interval_cache.get(self.name, symbol)
        if cached is not None:
            return cached.hours, cached.source

        try:
            native = await self._fetch_native_interval(symbol, payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("native_interval_lookup_failed", exchange=self.name, symbol=symbol, error=str(exc))
            native = None

        if native in VALID_INTERVALS:
            self._interval_cache.set(self.name, symbol, native, IntervalSource.NATIVE_API)
            return native, IntervalSource.NATIVE_API

        calculated = bucket_interval(payload.next_funding_timestamp, int(time.time() * 1000))
        if calculated is not None:
            self._interval_cache.set(self.name, symbol, calculated, IntervalSource.CALCULATED)
            return calculated, IntervalSource.CALCULATED

        logger.debug("funding_interval_defaulted", exchange=self.name, symbol=symbol)
        self._interval_cache.set(
            self.name,
            symbol,
            DEFAULT_INTERVAL_HOURS,
            IntervalSource.DEFAULT,
            ttl=self._connector_settings.default_interval_cache_ttl,
        )
        return DEFAULT_INTERVAL_HOURS, IntervalSource.DEFAULT

    async def _fetch_native_interval(
        self, symbol: str, payload: FundingRatePayload
    ) -> int | None:
        """Venue-native interval lookup. Base version trusts ccxt's `interval` field."""
        return payload.interval_hours()

    async def fetch_funding_rate_history(
        self, symbol: str, limit: int = 2
    ) -> list[FundingRateHistoryPayload]:
        raw = await self._call(
            "fetch_funding_rate_history",
            self._exchange.fetch_funding_rate_history,
            self.ccxt_symbol(symbol),
            limit=limit,
        )
        return [decode(FundingRateHistoryPayload, r) for r in raw or []]

    async def get_funding_income(self, symbol: str, since: float) -> Decimal:
        raw = await self._call(
            "fetch_funding_history",
            self._exchange.fetch_funding_history,
            self.ccxt_symbol(symbol),
            since=int(since * 1000),
        )
        total = Decimal("0")
        for entry in raw or []:
            amount = decode(FundingHistoryPayload, entry).amount
            if amount is not None:
                total += amount
        return total

    # ──────────────────────────────────────────────
    # Prices and instruments
    # ──────────────────────────────────────────────

    async def get_price(self, symbol: str) -> Decimal:
        raw = await self._call("fetch_ticker", self._exchange.fetch_ticker, self.ccxt_symbol(symbol))
        price = decode(TickerPayload, raw, context=f"{self.name}:{symbol}").best_price()
        if price is None or price <= 0:
            raise ApiError(f"[{self.name}] no price for {symbol}", code="NO_PRICE")
        return price

    async def get_prices(self, symbols: list[str]) -> dict[str, Decimal]:
        has = getattr(self._exchange, "has", None) or {}
        if has.get("fetchTickers"):
            raw = await self._call(
                "fetch_tickers",
                self._exchange.fetch_tickers,
                [self.ccxt_symbol(s) for s in symbols],
            )
            prices: dict[str, Decimal] = {}
            for ccxt_symbol, ticker in (raw or {}).items():
                price = decode(TickerPayload, ticker).best_price()
                if price is not None and price > 0:
                    prices[from_ccxt_symbol(ccxt_symbol)] = price
            return prices

        results = await asyncio.gather(*[self.get_price(s) for s in symbols], return_exceptions=True)
        return {
            symbol: result
            for symbol, result in zip(symbols, results)
            if not isinstance(result, Exception)
        }

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        """Extract instrument constraints from cached market data.

        All numeric values are converted to Decimal for precision.
        """
        cached = self._symbol_info.get(symbol)
        if cached is not None and time.time() - cached.fetched_at < self._connector_settings.symbol_info_ttl:
            return cached

        markets = await self._ensure_markets()
        market = markets.get(self.ccxt_symbol(symbol))
        if not market:
            raise ValidationError(f"[{self.name}] symbol {symbol} not listed")

        limits = market.get("limits") or {}
        precision = market.get("precision") or {}
        amount_limits = limits.get("amount") or {}

        info = SymbolInfo(
            symbol=symbol,
            venue_symbol=self.venue_symbol(symbol),
            min_qty=Decimal(str(amount_limits.get("min") or 0)),
            max_qty=Decimal(str(amount_limits.get("max") or 0)),
            qty_step=Decimal(str(precision.get("amount") or 0)),
            tick_size=Decimal(str(precision.get("price") or "0.01")),
            contract_size=Decimal(str(market.get("contractSize") or 1)),
        )
        self._symbol_info[symbol] = info
        return info

    # ──────────────────────────────────────────────
    # Account
    # ──────────────────────────────────────────────

    async def get_balance(self, currency: str = "USDT") -> AccountBalance:
        raw = await self._call("fetch_balance", self._exchange.fetch_balance)
        return self._to_balance(raw, currency)

    def _to_balance(self, raw: Any, currency: str) -> AccountBalance:
        entry = decode(BalanceEntryPayload, (raw or {}).get(currency), context=self.name)
        zero = Decimal("0")
        return AccountBalance(
            exchange=self.name,
            currency=currency,
            total=entry.total or zero,
            free=entry.free or zero,
            used=entry.used or zero,
        )

    async def get_positions(self) -> list[VenuePosition]:
        raw = await self._call("fetch_positions", self._exchange.fetch_positions)
        return self._to_positions(raw)

    async def get_position(self, symbol: str) -> VenuePosition | None:
        raw = await self._call(
            "fetch_positions", self._exchange.fetch_positions, [self.ccxt_symbol(symbol)]
        )
        for position in self._to_positions(raw):
            if position.symbol == symbol:
                return position
        return None

    def _to_positions(self, raw: Any) -> list[VenuePosition]:
        positions: list[VenuePosition] = []
        for entry in raw or []:
            payload = decode(PositionPayload, entry, context=self.name)
            if not payload.contracts or not payload.symbol:
                continue
            positions.append(
                VenuePosition(
                    exchange=self.name,
                    symbol=from_ccxt_symbol(payload.symbol),
                    side=PositionSide.SHORT if payload.side == "short" else PositionSide.LONG,
                    contracts=payload.contracts,
                    entry_price=payload.entry_price or Decimal("0"),
                    mark_price=payload.mark_price,
                    unrealized_pnl=payload.unrealized_pnl or Decimal("0"),
                    leverage=int(payload.leverage) if payload.leverage else None,
                )
            )
        return positions

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._call(
            "set_leverage", self._exchange.set_leverage, leverage, self.ccxt_symbol(symbol)
        )
        logger.info("leverage_set", exchange=self.name, symbol=symbol, leverage=leverage)

    async def set_position_mode(self, hedged: bool) -> None:
        await self._call("set_position_mode", self._exchange.set_position_mode, hedged)
        logger.info("position_mode_set", exchange=self.name, hedged=hedged)

    # ──────────────────────────────────────────────
    # Orders
    # ──────────────────────────────────────────────

    async def create_order(self, request: OrderRequest) -> OrderResult:
        """Place an order. Placement is attempted once: a retried market order could fill twice."""
        params: dict = {"reduceOnly": True} if request.reduce_only else {}
        logger.info(
            "creating_order",
            exchange=self.name,
            symbol=request.symbol,
            side=request.side.value,
            quantity=str(request.quantity),
            reduce_only=request.reduce_only,
        )
        raw = await self._call(
            "create_order",
            self._exchange.create_order,
            self.ccxt_symbol(request.symbol),
            request.order_type.value,
            request.side.value,
            float(request.quantity),
            float(request.price) if request.price is not None else None,
            params,
            attempts=1,  # a timed-out order may still have filled
        )
        payload = decode(OrderPayload, raw, context=f"{self.name}:{request.symbol}")

        # Some venues acknowledge market orders with an id only
        if payload.id and (payload.average is None and payload.price is None):
            try:
                return await self.get_order(payload.id, request.symbol)
            except Exception:
                logger.warning("order_refresh_failed", exchange=self.name, order_id=payload.id, exc_info=True)

        return self._to_order_result(payload, request.symbol, request.side, request.quantity)

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        logger.info("cancelling_order", exchange=self.name, order_id=order_id, symbol=symbol)
        await self._call(
            "cancel_order", self._exchange.cancel_order, order_id, self.ccxt_symbol(symbol)
        )

    async def get_order(self, order_id: str, symbol: str) -> OrderResult:
        raw = await self._call(
            "fetch_order", self._exchange.fetch_order, order_id, self.ccxt_symbol(symbol)
        )
        payload = decode(OrderPayload, raw, context=f"{self.name}:{symbol}")
        side = OrderSide.SELL if payload.side == "sell" else OrderSide.BUY
        return self._to_order_result(payload, symbol, side, payload.amount)

    def _to_order_result(
        self,
        payload: OrderPayload,
        symbol: str,
        side: OrderSide,
        requested: Decimal | None,
    ) -> OrderResult:
        amount = payload.amount or requested
        filled = payload.filled if payload.filled is not None else Decimal("0")
        status = map_order_status(payload.status, filled, amount)
        if status == OrderStatus.FILLED and filled == 0 and amount is not None:
            filled = amount
        fee = payload.fee.cost if payload.fee and payload.fee.cost is not None else Decimal("0")
        return OrderResult(
            order_id=payload.id,
            exchange=self.name,
            symbol=symbol,
            side=side,
            status=status,
            filled_qty=filled,
            average_price=payload.average or payload.price or Decimal("0"),
            fee=abs(fee),
            timestamp=payload.timestamp / 1000 if payload.timestamp else time.time(),
        )

    # ──────────────────────────────────────────────
    # Push subscriptions
    # ──────────────────────────────────────────────

    @staticmethod
    def subscription_key(stream: SubscriptionType, symbol: str | None = None) -> str:
        return f"{stream.value}:{symbol or 'all'}"

    async def subscribe_ws(
        self, stream: SubscriptionType, symbol: str | None = None
    ) -> bool:
        if self._destroyed:
            raise ExchangeConnectionError(f"[{self.name}] connector is disconnected")
        if stream == SubscriptionType.FUNDING_RATE and not symbol:
            raise ValidationError("funding rate subscriptions need a symbol")

        push = self.supports_push(stream)
        step = self._push_step(stream, symbol) if push else self._poll_step(stream, symbol)
        pause = 0.0 if push else self._connector_settings.poll_interval
        if not push:
            logger.info(
                "push_unavailable_polling", exchange=self.name, stream=stream.value, symbol=symbol
            )
        return self._supervisor.subscribe(self.subscription_key(stream, symbol), step, pause=pause)

    async def unsubscribe_ws(
        self, stream: SubscriptionType, symbol: str | None = None
    ) -> bool:
        return await self._supervisor.unsubscribe(self.subscription_key(stream, symbol))

    def _push_step(
        self, stream: SubscriptionType, symbol: str | None
    ) -> Callable[[], Awaitable[None]]:
        if stream == SubscriptionType.FUNDING_RATE:
            ccxt_symbol = self.ccxt_symbol(symbol)  # type: ignore[arg-type]

            async def step() -> None:
                raw = await self._exchange.watch_funding_rate(ccxt_symbol)
                await self._events.emit("fundingRate", await self._to_sample(symbol, raw))  # type: ignore[arg-type]

        elif stream == SubscriptionType.POSITION_UPDATE:

            async def step() -> None:
                raw = await self._exchange.watch_positions()
                await self._events.emit("positionUpdate", self._to_positions(raw))

        else:

            async def step() -> None:
                raw = await self._exchange.watch_balance()
                await self._events.emit("balanceUpdate", self._to_balance(raw, "USDT"))

        return step

    def _poll_step(
        self, stream: SubscriptionType, symbol: str | None
    ) -> Callable[[], Awaitable[None]]:
        if stream == SubscriptionType.FUNDING_RATE:

            async def step() -> None:
                await self._events.emit("fundingRate", await self.get_funding_rate(symbol))  # type: ignore[arg-type]

        elif stream == SubscriptionType.POSITION_UPDATE:

            async def step() -> None:
                await self._events.emit("positionUpdate", await self.get_positions())

        else:

            async def step() -> None:
                await self._events.emit("balanceUpdate", await self.get_balance())

        return step

    async def _on_subscription_error(self, key: str, exc: Exception) -> None:
        await self._events.emit("error", key, exc)
