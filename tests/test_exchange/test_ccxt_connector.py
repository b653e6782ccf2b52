"""Tests for the shared ccxt-backed venue connector.

The ccxt exchange is replaced by a MagicMock with AsyncMock methods, so no
network access happens. Verifies:
- connect/disconnect lifecycle and events
- funding rate decode and interval resolution order
- retry on transient errors, single attempt for order placement
- order status mapping and fill refresh
- push subscriptions and the REST polling fallback
"""

import asyncio
import time
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt
import pytest

from funding_arb.config import ConnectorSettings, VenueSettings
from funding_arb.exceptions import ApiError, ExchangeConnectionError
from funding_arb.exchange.ccxt_connector import (
    CcxtConnector,
    bucket_interval,
    map_order_status,
    snap_interval,
)
from funding_arb.exchange.interval_cache import FundingIntervalCache
from funding_arb.models import (
    IntervalSource,
    OrderRequest,
    OrderSide,
    OrderStatus,
    SubscriptionType,
)

HOUR_MS = 3_600_000


class PlainConnector(CcxtConnector):
    """Base connector behaviour under a venue name with no native override."""

    name = "mexc"
    exchange_id = "mexc"


@pytest.fixture
def mock_exchange() -> MagicMock:
    exchange = MagicMock()
    exchange.has = {"watchFundingRate": True, "fetchTickers": False}
    exchange.load_markets = AsyncMock(return_value={"BTC/USDT:USDT": {"info": {}}})
    exchange.close = AsyncMock()
    exchange.fetch_funding_rate = AsyncMock(
        return_value={"symbol": "BTC/USDT:USDT", "fundingRate": 0.0001, "interval": "8h"}
    )
    exchange.fetch_ticker = AsyncMock(return_value={"last": 50000, "markPrice": 50010})
    exchange.fetch_funding_history = AsyncMock(return_value=[])
    exchange.create_order = AsyncMock()
    exchange.fetch_order = AsyncMock()
    return exchange


@pytest.fixture
def cache() -> FundingIntervalCache:
    return FundingIntervalCache()


@pytest.fixture
def connector(mock_exchange: MagicMock, cache: FundingIntervalCache) -> PlainConnector:
    return PlainConnector(
        VenueSettings(),
        connector_settings=ConnectorSettings(
            retry_delay=0, poll_interval=0.01, unsubscribe_grace=0.05
        ),
        interval_cache=cache,
        exchange=mock_exchange,
    )


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,filled,amount,expected",
        [
            ("closed", Decimal("1"), Decimal("1"), OrderStatus.FILLED),
            ("filled", Decimal("1"), Decimal("1"), OrderStatus.FILLED),
            ("canceled", Decimal("0"), Decimal("1"), OrderStatus.CANCELED),
            ("cancelled", Decimal("0"), Decimal("1"), OrderStatus.CANCELED),
            ("rejected", Decimal("0"), Decimal("1"), OrderStatus.REJECTED),
            ("expired", Decimal("0"), Decimal("1"), OrderStatus.EXPIRED),
            ("open", Decimal("0"), Decimal("1"), OrderStatus.NEW),
            ("NEW", Decimal("0"), Decimal("1"), OrderStatus.NEW),
            ("open", Decimal("0.4"), Decimal("1"), OrderStatus.PARTIALLY_FILLED),
            (None, Decimal("1"), Decimal("1"), OrderStatus.FILLED),
            (None, Decimal("0"), None, OrderStatus.NEW),
        ],
    )
    def test_map_order_status(
        self, raw: str | None, filled: Decimal, amount: Decimal | None, expected: OrderStatus
    ) -> None:
        assert map_order_status(raw, filled, amount) == expected

    @pytest.mark.parametrize(
        "hours_left,expected", [(0.5, 1), (1.0, 1), (3.5, 4), (7.9, 8), (9.0, None)]
    )
    def test_bucket_interval(self, hours_left: float, expected: int | None) -> None:
        now = 1_700_000_000_000
        assert bucket_interval(now + int(hours_left * HOUR_MS), now) == expected

    def test_bucket_interval_without_next_settlement(self) -> None:
        assert bucket_interval(None, 0) is None
        assert bucket_interval(100, 200) is None

    @pytest.mark.parametrize("hours,expected", [(8.0, 8), (7.6, 8), (4.4, 4), (1.2, 1), (6.0, None)])
    def test_snap_interval(self, hours: float, expected: int | None) -> None:
        assert snap_interval(hours) == expected


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_loads_markets_and_emits(connector: PlainConnector) -> None:
    seen: list[str] = []
    connector.events.on("connected", seen.append)

    await connector.connect()

    assert connector.is_connected
    assert seen == ["mexc"]
    connector.exchange.load_markets.assert_awaited_once()


@pytest.mark.asyncio
async def test_disconnect_closes_session_and_rejects_calls(connector: PlainConnector) -> None:
    seen: list[str] = []
    connector.events.on("disconnected", seen.append)
    await connector.connect()

    await connector.disconnect()

    assert not connector.is_connected
    assert seen == ["mexc"]
    connector.exchange.close.assert_awaited_once()
    with pytest.raises(ExchangeConnectionError):
        await connector.get_price("BTCUSDT")


# ---------------------------------------------------------------------------
# Funding rates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_funding_rate_uses_ccxt_interval(
    connector: PlainConnector, cache: FundingIntervalCache
) -> None:
    sample = await connector.get_funding_rate("BTCUSDT")

    assert sample.exchange == "mexc"
    assert sample.symbol == "BTCUSDT"
    assert sample.rate == Decimal("0.0001")
    assert sample.interval_hours == 8
    assert sample.interval_source == IntervalSource.NATIVE_API
    connector.exchange.fetch_funding_rate.assert_awaited_with("BTC/USDT:USDT")
    assert cache.get("mexc", "BTCUSDT") is not None


@pytest.mark.asyncio
async def test_cached_interval_wins(
    connector: PlainConnector, cache: FundingIntervalCache
) -> None:
    cache.set("mexc", "BTCUSDT", 1, IntervalSource.CALCULATED)
    sample = await connector.get_funding_rate("BTCUSDT")
    assert sample.interval_hours == 1
    assert sample.interval_source == IntervalSource.CALCULATED


@pytest.mark.asyncio
async def test_empty_shared_cache_is_kept_and_written(
    mock_exchange: MagicMock, cache: FundingIntervalCache
) -> None:
    assert len(cache) == 0
    first = PlainConnector(VenueSettings(), interval_cache=cache, exchange=mock_exchange)
    second = PlainConnector(VenueSettings(), interval_cache=cache, exchange=MagicMock())
    assert first.interval_cache is cache
    assert second.interval_cache is cache

    await first.get_funding_rate("BTCUSDT")

    entry = cache.get("mexc", "BTCUSDT")
    assert entry is not None
    assert entry.hours == 8
    assert second.interval_cache.get("mexc", "BTCUSDT") == entry


@pytest.mark.asyncio
async def test_interval_from_next_settlement(connector: PlainConnector) -> None:
    next_ts = int(time.time() * 1000) + int(3.5 * HOUR_MS)
    connector.exchange.fetch_funding_rate.return_value = {
        "fundingRate": "0.0002",
        "nextFundingTimestamp": next_ts,
    }
    sample = await connector.get_funding_rate("BTCUSDT")
    assert sample.interval_hours == 4
    assert sample.interval_source == IntervalSource.CALCULATED
    assert sample.next_settlement_at == next_ts


@pytest.mark.asyncio
async def test_interval_defaults_to_eight_hours(connector: PlainConnector) -> None:
    connector.exchange.fetch_funding_rate.return_value = {"fundingRate": "0.0002"}
    sample = await connector.get_funding_rate("BTCUSDT")
    assert sample.interval_hours == 8
    assert sample.interval_source == IntervalSource.DEFAULT


@pytest.mark.asyncio
async def test_missing_funding_rate_is_api_error(connector: PlainConnector) -> None:
    connector.exchange.fetch_funding_rate.return_value = {"symbol": "BTC/USDT:USDT"}
    with pytest.raises(ApiError):
        await connector.get_funding_rate("BTCUSDT")


@pytest.mark.asyncio
async def test_transient_failure_is_retried(connector: PlainConnector) -> None:
    connector.exchange.fetch_funding_rate.side_effect = [
        ccxt.NetworkError("reset"),
        {"fundingRate": 0.0003, "interval": "4h"},
    ]
    sample = await connector.get_funding_rate("BTCUSDT")
    assert sample.rate == Decimal("0.0003")
    assert connector.exchange.fetch_funding_rate.await_count == 2


@pytest.mark.asyncio
async def test_get_funding_rates_skips_failures(connector: PlainConnector) -> None:
    async def fetch(symbol: str) -> dict:
        if symbol.startswith("ETH"):
            raise ccxt.BadSymbol("unknown")
        return {"fundingRate": 0.0001, "interval": "8h"}

    connector.exchange.fetch_funding_rate.side_effect = fetch
    samples = await connector.get_funding_rates(["BTCUSDT", "ETHUSDT"])
    assert [s.symbol for s in samples] == ["BTCUSDT"]


@pytest.mark.asyncio
async def test_funding_income_sums_history(connector: PlainConnector) -> None:
    connector.exchange.fetch_funding_history.return_value = [
        {"amount": "1.5"},
        {"amount": -0.25},
        {"amount": None},
    ]
    income = await connector.get_funding_income("BTCUSDT", since=1_700_000_000.0)
    assert income == Decimal("1.25")
    _, kwargs = connector.exchange.fetch_funding_history.call_args
    assert kwargs["since"] == 1_700_000_000_000


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_price_prefers_mark(connector: PlainConnector) -> None:
    assert await connector.get_price("BTCUSDT") == Decimal("50010")


@pytest.mark.asyncio
async def test_missing_price_is_api_error(connector: PlainConnector) -> None:
    connector.exchange.fetch_ticker.return_value = {"last": 0}
    with pytest.raises(ApiError):
        await connector.get_price("BTCUSDT")


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_order_filled(connector: PlainConnector) -> None:
    connector.exchange.create_order.return_value = {
        "id": "o-1",
        "status": "closed",
        "filled": 0.5,
        "average": 50000,
        "fee": {"cost": -2.5},
    }
    result = await connector.create_order(
        OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("0.5"))
    )
    assert result.order_id == "o-1"
    assert result.status == OrderStatus.FILLED
    assert result.filled_qty == Decimal("0.5")
    assert result.average_price == Decimal("50000")
    assert result.fee == Decimal("2.5")

    args = connector.exchange.create_order.call_args.args
    assert args[:4] == ("BTC/USDT:USDT", "market", "buy", 0.5)
    assert args[5] == {}


@pytest.mark.asyncio
async def test_reduce_only_flag_is_passed(connector: PlainConnector) -> None:
    connector.exchange.create_order.return_value = {
        "id": "o-2", "status": "closed", "filled": 1, "average": 1,
    }
    await connector.create_order(
        OrderRequest(symbol="BTCUSDT", side=OrderSide.SELL, quantity=Decimal("1"), reduce_only=True)
    )
    assert connector.exchange.create_order.call_args.args[5] == {"reduceOnly": True}


@pytest.mark.asyncio
async def test_order_placement_is_never_retried(connector: PlainConnector) -> None:
    connector.exchange.create_order.side_effect = ccxt.NetworkError("timeout")
    with pytest.raises(ExchangeConnectionError):
        await connector.create_order(
            OrderRequest(symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("1"))
        )
    assert connector.exchange.create_order.await_count == 1


@pytest.mark.asyncio
async def test_bare_acknowledgement_is_refreshed(connector: PlainConnector) -> None:
    connector.exchange.create_order.return_value = {"id": "o-3"}
    connector.exchange.fetch_order.return_value = {
        "id": "o-3",
        "side": "sell",
        "status": "closed",
        "amount": 2,
        "filled": 2,
        "average": "49990",
    }
    result = await connector.create_order(
        OrderRequest(symbol="BTCUSDT", side=OrderSide.SELL, quantity=Decimal("2"))
    )
    assert result.average_price == Decimal("49990")
    assert result.side == OrderSide.SELL
    connector.exchange.fetch_order.assert_awaited_once_with("o-3", "BTC/USDT:USDT")


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_push_subscription_emits_samples(connector: PlainConnector) -> None:
    received = asyncio.Event()
    samples = []
    parked = asyncio.Event()

    async def watch(symbol: str) -> dict:
        if samples:
            await parked.wait()
        return {"fundingRate": 0.0005, "interval": "8h"}

    async def on_rate(sample) -> None:
        samples.append(sample)
        received.set()

    connector.exchange.watch_funding_rate = AsyncMock(side_effect=watch)
    connector.events.on("fundingRate", on_rate)

    assert await connector.subscribe_ws(SubscriptionType.FUNDING_RATE, "BTCUSDT")
    await asyncio.wait_for(received.wait(), timeout=1)
    assert await connector.unsubscribe_ws(SubscriptionType.FUNDING_RATE, "BTCUSDT")

    assert samples[0].rate == Decimal("0.0005")
    assert connector.supervisor.keys == []


@pytest.mark.asyncio
async def test_polling_fallback_without_push(connector: PlainConnector) -> None:
    connector.exchange.has = {"watchFundingRate": False}
    received = asyncio.Event()
    connector.events.on("fundingRate", lambda sample: received.set())

    await connector.subscribe_ws(SubscriptionType.FUNDING_RATE, "BTCUSDT")
    await asyncio.wait_for(received.wait(), timeout=1)
    await connector.unsubscribe_ws(SubscriptionType.FUNDING_RATE, "BTCUSDT")

    connector.exchange.fetch_funding_rate.assert_awaited()


@pytest.mark.asyncio
async def test_subscription_errors_are_published(connector: PlainConnector) -> None:
    connector.exchange.has = {"watchFundingRate": True}
    connector.exchange.watch_funding_rate = AsyncMock(side_effect=ccxt.NetworkError("closed"))
    errors = []
    got_error = asyncio.Event()

    def on_error(key: str, exc: Exception) -> None:
        errors.append(key)
        got_error.set()

    connector.events.on("error", on_error)
    await connector.subscribe_ws(SubscriptionType.FUNDING_RATE, "BTCUSDT")
    await asyncio.wait_for(got_error.wait(), timeout=1)
    await connector.unsubscribe_ws(SubscriptionType.FUNDING_RATE, "BTCUSDT")

    assert errors[0] == "fundingRate:BTCUSDT"
