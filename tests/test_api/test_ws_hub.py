"""Tests for the WebSocket event hub: rooms, delivery and bus relays."""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from funding_arb.api.routes.ws import MARKET_ROOM, EventHub
from funding_arb.events import EventBus
from funding_arb.market_data.funding_feed import RATE_UPDATED
from funding_arb.models import FundingRatePair


def _socket() -> MagicMock:
    ws = MagicMock()
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    return ws


def _frames(ws: MagicMock) -> list[dict]:
    return [json.loads(call.args[0]) for call in ws.send_text.await_args_list]


@pytest.mark.asyncio
async def test_rooms_scope_delivery() -> None:
    hub = EventHub()
    watcher, bystander = _socket(), _socket()
    await hub.connect(watcher)
    await hub.connect(bystander)

    await hub.handle_message(watcher, json.dumps({"action": "join", "room": "position:p1"}))
    delivered = await hub.emit("position:close:success", "position:p1", {"pnl": Decimal("1.5")})

    assert delivered == 1
    assert _frames(watcher) == [
        {"event": "position:close:success", "data": {"pnl": "1.5"}}
    ]
    bystander.send_text.assert_not_awaited()

    await hub.handle_message(watcher, json.dumps({"action": "leave", "room": "position:p1"}))
    assert await hub.emit("position:close:success", "position:p1", {}) == 0
    assert await hub.emit("rate-updated", MARKET_ROOM, {}) == 2


@pytest.mark.asyncio
async def test_bad_control_messages_are_ignored() -> None:
    hub = EventHub()
    ws = _socket()
    await hub.connect(ws)

    for text in ("not json", "[1, 2]", json.dumps({"action": "join"}), json.dumps({"action": "x", "room": "r"})):
        await hub.handle_message(ws, text)

    assert hub.rooms[ws] == {MARKET_ROOM}


@pytest.mark.asyncio
async def test_failed_send_drops_connection() -> None:
    hub = EventHub()
    broken = _socket()
    broken.send_text.side_effect = RuntimeError("closed")
    await hub.connect(broken)

    assert await hub.emit("rate-updated", MARKET_ROOM, {}) == 0
    assert hub.connection_count == 0


@pytest.mark.asyncio
async def test_relays_forward_bus_events(make_sample) -> None:
    hub = EventHub()
    ws = _socket()
    await hub.connect(ws)
    hub.join(ws, "group:g")
    clients, market = EventBus("clients"), EventBus("market")
    hub.relay(clients)
    hub.relay_market(market)

    await clients.emit("batch:close:progress", "group:g", {"current": 1, "total": 2})
    pair = FundingRatePair(symbol="BTCUSDT", rates={"okx": make_sample("okx", "0.0001")})
    await market.emit(RATE_UPDATED, pair)

    hub.detach()
    await clients.emit("batch:close:progress", "group:g", {"current": 2, "total": 2})

    frames = _frames(ws)
    assert [f["event"] for f in frames] == ["batch:close:progress", "rate-updated"]
    assert frames[1]["data"]["symbol"] == "BTCUSDT"
    assert frames[1]["data"]["pair"]["rates"]["okx"]["rate"] == "0.0001"

