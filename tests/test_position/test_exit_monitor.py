"""Tests for exit suggestions on OPEN positions.

Position pair: long binance, short okx. Rates are per 8h.
"""

from decimal import Decimal

import pytest

from funding_arb.events import EventBus
from funding_arb.exceptions import ApiError
from funding_arb.market_data.funding_feed import RATE_UPDATED
from funding_arb.models import ExitSuggestionReason, FundingRatePair
from funding_arb.position.exit_monitor import ExitSuggestionMonitor, decide_exit

D = Decimal


@pytest.mark.parametrize(
    "apy,funding,loss,expected",
    [
        (D("-1"), D("100"), D("0"), ExitSuggestionReason.APY_NEGATIVE),
        (D("50"), D("10"), D("5"), ExitSuggestionReason.PROFIT_LOCKABLE),
        (D("50"), D("5"), D("5"), None),
        (D("150"), D("10"), D("0"), None),
        (D("0"), D("0"), D("0"), None),
    ],
)
def test_decide_exit(apy, funding, loss, expected) -> None:
    assert decide_exit(apy, D("100"), funding, loss) == expected


@pytest.fixture
def make_pair(make_sample):
    def _make(long_rate: str, short_rate: str, long_mark: str = "50000", short_mark: str = "50000"):
        return FundingRatePair(
            symbol="BTCUSDT",
            rates={
                "binance": make_sample("binance", long_rate, mark_price=long_mark),
                "okx": make_sample("okx", short_rate, mark_price=short_mark),
            },
        )

    return _make


@pytest.fixture
def connectors(make_connector):
    return {"binance": make_connector("binance"), "okx": make_connector("okx")}


@pytest.fixture
def client_events():
    bus = EventBus("clients")
    bus.calls = []
    bus.on("exitSuggested", lambda room, payload: bus.calls.append(("exitSuggested", room, payload)))
    bus.on("exitCanceled", lambda room, payload: bus.calls.append(("exitCanceled", room, payload)))
    return bus


@pytest.fixture
def monitor(position_store, connectors, client_events) -> ExitSuggestionMonitor:
    return ExitSuggestionMonitor(position_store, connectors, client_events)


@pytest.mark.asyncio
async def test_negative_apy_suggests_once(monitor, client_events, position_store, make_position, make_pair) -> None:
    await position_store.create(make_position())

    [evaluation] = await monitor.on_rate_updated(make_pair("0.0008", "0.0001"))
    assert evaluation.reason == ExitSuggestionReason.APY_NEGATIVE
    assert evaluation.apy == D("-76.65")

    stored = await position_store.get("pos-1")
    assert stored.exit_suggested
    assert stored.exit_suggestion_reason == ExitSuggestionReason.APY_NEGATIVE

    await monitor.on_rate_updated(make_pair("0.0008", "0.0001"))
    assert [name for name, _, _ in client_events.calls] == ["exitSuggested"]
    _, room, payload = client_events.calls[0]
    assert room == "position:pos-1"
    assert payload["reason"] == "APY_NEGATIVE"
    assert monitor.stats["suggestions"] == 1


@pytest.mark.asyncio
async def test_suggestion_canceled_when_condition_clears(
    monitor, client_events, position_store, make_position, make_pair
) -> None:
    await position_store.create(make_position())
    await monitor.on_rate_updated(make_pair("0.0008", "0.0001"))

    # 0.0012 per 8h spread is 131.4% APY, above the 100% threshold
    [evaluation] = await monitor.on_rate_updated(make_pair("0.0001", "0.0013"))

    assert evaluation.reason is None
    assert [name for name, _, _ in client_events.calls] == ["exitSuggested", "exitCanceled"]
    assert not (await position_store.get("pos-1")).exit_suggested
    assert monitor.stats["cancellations"] == 1


@pytest.mark.asyncio
async def test_profit_lockable(monitor, connectors, client_events, position_store, make_position, make_pair) -> None:
    await position_store.create(make_position())
    connectors["okx"].get_funding_income.return_value = D("12")

    [evaluation] = await monitor.on_rate_updated(
        make_pair("0.0001", "0.0008", long_mark="49990", short_mark="50000")
    )

    # Price PnL: long -10, short 0
    assert evaluation.price_diff_loss == D("10")
    assert evaluation.funding_pnl == D("12")
    assert evaluation.reason == ExitSuggestionReason.PROFIT_LOCKABLE
    assert (await position_store.get("pos-1")).cached_funding_pnl == D("12")


@pytest.mark.asyncio
async def test_funding_lookup_failure_uses_cache(
    monitor, connectors, position_store, make_position, make_pair
) -> None:
    position = make_position()
    position.cached_funding_pnl = D("7")
    await position_store.create(position)
    connectors["binance"].get_funding_income.side_effect = ApiError("timeout")

    [evaluation] = await monitor.on_rate_updated(make_pair("0.0001", "0.0008"))

    assert evaluation.funding_pnl == D("7")
    assert evaluation.reason == ExitSuggestionReason.PROFIT_LOCKABLE


@pytest.mark.asyncio
async def test_missing_leg_rate_is_skipped(monitor, position_store, make_position, make_sample) -> None:
    await position_store.create(make_position())
    pair = FundingRatePair(symbol="BTCUSDT", rates={"binance": make_sample("binance", "0.0001")})
    assert await monitor.on_rate_updated(pair) == []
    assert monitor.stats["checks"] == 0


@pytest.mark.asyncio
async def test_attach_detach(monitor, client_events, position_store, make_position, make_pair) -> None:
    await position_store.create(make_position())
    feed_bus = EventBus("market")

    monitor.attach(feed_bus)
    await feed_bus.emit(RATE_UPDATED, make_pair("0.0008", "0.0001"))
    monitor.detach()
    await feed_bus.emit(RATE_UPDATED, make_pair("0.0001", "0.0013"))

    assert [name for name, _, _ in client_events.calls] == ["exitSuggested"]
