"""FastAPI application factory with the WebSocket event hub and JSON routes."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from funding_arb.api.routes import market, positions, ws
from funding_arb.api.routes.ws import EventHub


def create_app(lifespan: Any = None, hub: EventHub | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.
        hub: WebSocket hub to serve; a fresh one is created when omitted.

    Returns:
        Configured FastAPI application. Engine components (lifecycle, feed,
        stores, monitors) are attached to app.state by the lifespan.
    """
    app = FastAPI(
        title="Funding Rate Arbitrage Engine",
        lifespan=lifespan,
    )

    app.state.hub = hub if hub is not None else EventHub()

    app.include_router(positions.router, prefix="/api")
    app.include_router(market.router, prefix="/api")
    app.include_router(ws.router)

    return app
