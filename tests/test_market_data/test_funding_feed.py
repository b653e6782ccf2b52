"""Tests for FundingFeed aggregation and best-pair selection.

Verifies:
- best pair is the ordered venue pair with the largest normalized spread
- only changed, valid samples mark a symbol dirty
- bursts collapse into one rate-updated per symbol
- start/stop wire connector events and subscriptions
"""

import asyncio
from decimal import Decimal

import pytest

from funding_arb.events import EventBus
from funding_arb.market_data.funding_feed import RATE_UPDATED, FundingFeed, compute_best_pair
from funding_arb.models import FundingRatePair, SubscriptionType


# ---------------------------------------------------------------------------
# compute_best_pair
# ---------------------------------------------------------------------------


def test_best_pair_longs_the_cheaper_venue(make_sample) -> None:
    rates = {
        "binance": make_sample("binance", "0.0001"),
        "okx": make_sample("okx", "0.0008"),
    }
    best = compute_best_pair(rates)
    assert best is not None
    assert best.long_exchange == "binance"
    assert best.short_exchange == "okx"
    assert best.spread == Decimal("0.0007")
    assert best.spread_annualized == Decimal("76.65")
    assert best.price_diff_percent == Decimal("0")


def test_best_pair_across_three_venues(make_sample) -> None:
    rates = {
        "binance": make_sample("binance", "0.0001"),
        "okx": make_sample("okx", "0.0003"),
        "gateio": make_sample("gateio", "-0.0002"),
    }
    best = compute_best_pair(rates)
    assert (best.long_exchange, best.short_exchange) == ("gateio", "okx")
    assert best.spread == Decimal("0.0005")


def test_best_pair_normalizes_mixed_intervals(make_sample) -> None:
    rates = {
        # 0.0008 per 8h is 0.0001 per hour
        "binance": make_sample("binance", "0.0008", interval_hours=8),
        "bingx": make_sample("bingx", "0.0003", interval_hours=1),
    }
    best = compute_best_pair(rates)
    assert (best.long_exchange, best.short_exchange) == ("binance", "bingx")
    assert best.basis_hours == 1
    assert best.spread == Decimal("0.0002")


def test_best_pair_price_diff(make_sample) -> None:
    rates = {
        "binance": make_sample("binance", "0.0001", mark_price="100"),
        "okx": make_sample("okx", "0.0002", mark_price="101"),
    }
    assert compute_best_pair(rates).price_diff_percent == Decimal("1")


def test_best_pair_needs_two_venues(make_sample) -> None:
    assert compute_best_pair({}) is None
    assert compute_best_pair({"okx": make_sample("okx", "0.0001")}) is None


# ---------------------------------------------------------------------------
# Ingest and publish
# ---------------------------------------------------------------------------


@pytest.fixture
def feed() -> FundingFeed:
    return FundingFeed({}, ["BTCUSDT"], events=EventBus("test"))


@pytest.mark.asyncio
async def test_ingest_marks_changed_samples(feed: FundingFeed, make_sample) -> None:
    assert await feed.ingest(make_sample("binance", "0.0001"))
    # Same values again: stored but not republished
    assert not await feed.ingest(make_sample("binance", "0.0001"))
    assert await feed.ingest(make_sample("binance", "0.0002"))
    assert feed.get_sample("binance", "BTCUSDT").rate == Decimal("0.0002")


@pytest.mark.asyncio
async def test_invalid_samples_are_excluded(feed: FundingFeed, make_sample) -> None:
    assert not await feed.ingest(make_sample("okx", "0.5"))
    assert feed.get_sample("okx", "BTCUSDT") is None
    assert feed.get_pair("BTCUSDT") is None


@pytest.mark.asyncio
async def test_burst_collapses_to_one_publish_per_symbol(feed: FundingFeed, make_sample) -> None:
    published: list[FundingRatePair] = []
    feed.events.on(RATE_UPDATED, published.append)

    await feed.ingest(make_sample("binance", "0.0001"))
    await feed.ingest(make_sample("okx", "0.0004"))
    await feed.ingest(make_sample("okx", "0.0008"))
    await feed.ingest(make_sample("binance", "0.0001", symbol="ETHUSDT"))

    assert await feed.publish_pending() == 2
    by_symbol = {p.symbol: p for p in published}
    btc = by_symbol["BTCUSDT"]
    assert btc.rates["okx"].rate == Decimal("0.0008")
    assert btc.best_pair.spread == Decimal("0.0007")
    assert by_symbol["ETHUSDT"].best_pair is None
    assert feed.published_count == 2
    assert await feed.publish_pending() == 0


@pytest.mark.asyncio
async def test_get_all_pairs_orders_by_spread(feed: FundingFeed, make_sample) -> None:
    await feed.ingest(make_sample("binance", "0.0001", symbol="ETHUSDT"))
    await feed.ingest(make_sample("okx", "0.0002", symbol="ETHUSDT"))
    await feed.ingest(make_sample("binance", "0.0001"))
    await feed.ingest(make_sample("okx", "0.0009"))
    await feed.ingest(make_sample("okx", "0.0001", symbol="SOLUSDT"))

    assert [p.symbol for p in feed.get_all_pairs()] == ["BTCUSDT", "ETHUSDT", "SOLUSDT"]


@pytest.mark.asyncio
async def test_drop_exchange_republishes(feed: FundingFeed, make_sample) -> None:
    await feed.ingest(make_sample("binance", "0.0001"))
    await feed.ingest(make_sample("okx", "0.0008"))
    await feed.publish_pending()

    feed.drop_exchange("okx")
    published: list[FundingRatePair] = []
    feed.events.on(RATE_UPDATED, published.append)
    await feed.publish_pending()

    assert list(published[0].rates) == ["binance"]
    assert published[0].best_pair is None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_subscribes_and_publishes_connector_samples(
    make_connector, make_sample
) -> None:
    binance = make_connector("binance")
    okx = make_connector("okx")
    feed = FundingFeed({"binance": binance, "okx": okx}, ["BTCUSDT", "ETHUSDT"])
    published = asyncio.Queue()
    feed.events.on(RATE_UPDATED, published.put_nowait)

    await feed.start()
    binance.subscribe_ws.assert_any_await(SubscriptionType.FUNDING_RATE, "BTCUSDT")
    assert binance.subscribe_ws.await_count == 2
    assert okx.subscribe_ws.await_count == 2

    await binance.events.emit("fundingRate", make_sample("binance", "0.0001"))
    await okx.events.emit("fundingRate", make_sample("okx", "0.0008"))
    pair = await asyncio.wait_for(published.get(), timeout=1)
    while pair.best_pair is None:
        pair = await asyncio.wait_for(published.get(), timeout=1)

    await feed.stop()

    assert pair.best_pair.short_exchange == "okx"
    assert binance.unsubscribe_ws.await_count == 2
    assert binance.events.listener_count("fundingRate") == 0


@pytest.mark.asyncio
async def test_subscription_failure_does_not_stop_feed(make_connector) -> None:
    broken = make_connector("mexc")
    broken.subscribe_ws.side_effect = RuntimeError("no stream")
    feed = FundingFeed({"mexc": broken}, ["BTCUSDT"])

    await feed.start()
    await feed.stop()

    assert broken.subscribe_ws.await_count == 1
