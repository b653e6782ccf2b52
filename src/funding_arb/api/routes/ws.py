"""WebSocket hub relaying engine events to clients by room.

Clients send JSON control messages to scope what they receive:

    {"action": "join", "room": "position:<id>"}
    {"action": "leave", "room": "group:<id>"}

Every client is in the "market" room from the moment it connects. Frames sent
to clients are JSON objects of the form {"event": <name>, "data": <payload>}.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from funding_arb.events import EventBus
from funding_arb.logging import get_logger
from funding_arb.market_data.funding_feed import RATE_UPDATED
from funding_arb.models import FundingRatePair
from funding_arb.serialization import to_payload

logger = get_logger(__name__)

router = APIRouter()

MARKET_ROOM = "market"

CLIENT_EVENTS = (
    "position:close:progress",
    "position:close:success",
    "position:close:partial",
    "position:close:failed",
    "batch:close:progress",
    "batch:close:position:complete",
    "batch:close:complete",
    "batch:close:failed",
    "exitSuggested",
    "exitCanceled",
)


class EventHub:
    """Tracks WebSocket connections and the rooms each one has joined."""

    def __init__(self) -> None:
        self.rooms: dict[WebSocket, set[str]] = {}
        self._relays: list[tuple[EventBus, str, Any]] = []

    @property
    def connection_count(self) -> int:
        return len(self.rooms)

    async def connect(self, ws: WebSocket) -> None:
        """Accept a connection and place it in the market room."""
        await ws.accept()
        self.rooms[ws] = {MARKET_ROOM}
        logger.info("ws_connected", total=len(self.rooms))

    def disconnect(self, ws: WebSocket) -> None:
        self.rooms.pop(ws, None)
        logger.info("ws_disconnected", total=len(self.rooms))

    def join(self, ws: WebSocket, room: str) -> None:
        if ws in self.rooms:
            self.rooms[ws].add(room)
            logger.debug("ws_room_joined", room=room)

    def leave(self, ws: WebSocket, room: str) -> None:
        if ws in self.rooms:
            self.rooms[ws].discard(room)
            logger.debug("ws_room_left", room=room)

    async def handle_message(self, ws: WebSocket, text: str) -> None:
        """Apply a join/leave control message. Anything else is ignored."""
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("ws_message_not_json")
            return
        if not isinstance(message, dict):
            return
        room = message.get("room")
        if not isinstance(room, str) or not room:
            return
        action = message.get("action")
        if action == "join":
            self.join(ws, room)
        elif action == "leave":
            self.leave(ws, room)

    async def emit(self, event: str, room: str, data: Any) -> int:
        """Send an event frame to every connection in a room.

        Returns:
            Number of connections the frame was delivered to. Connections
            whose send fails are dropped.
        """
        frame = json.dumps({"event": event, "data": to_payload(data)})
        delivered = 0
        for ws, joined in list(self.rooms.items()):
            if room not in joined:
                continue
            try:
                await ws.send_text(frame)
                delivered += 1
            except Exception:
                self.rooms.pop(ws, None)
                logger.warning("ws_send_failed", event_name=event, remaining=len(self.rooms))
        return delivered

    # ──────────────────────────────────────────────
    # Bus relays
    # ──────────────────────────────────────────────

    def relay(self, bus: EventBus, events: tuple[str, ...] = CLIENT_EVENTS) -> None:
        """Forward (room, payload) events from an engine bus to clients."""
        for event in events:
            listener = self._room_forwarder(event)
            bus.on(event, listener)
            self._relays.append((bus, event, listener))

    def relay_market(self, bus: EventBus) -> None:
        """Forward rate-updated snapshots from the funding feed to the market room."""

        async def forward(pair: FundingRatePair) -> None:
            await self.emit(RATE_UPDATED, MARKET_ROOM, {"symbol": pair.symbol, "pair": pair})

        bus.on(RATE_UPDATED, forward)
        self._relays.append((bus, RATE_UPDATED, forward))

    def detach(self) -> None:
        for bus, event, listener in self._relays:
            bus.off(event, listener)
        self._relays.clear()

    def _room_forwarder(self, event: str):
        async def forward(room: str, payload: Any) -> None:
            await self.emit(event, room, payload)

        return forward


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for engine events."""
    ws_hub: EventHub = websocket.app.state.hub
    await ws_hub.connect(websocket)
    try:
        while True:
            text = await websocket.receive_text()
            await ws_hub.handle_message(websocket, text)
    except WebSocketDisconnect:
        ws_hub.disconnect(websocket)
