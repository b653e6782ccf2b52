"""HTTP and WebSocket surface over the arbitrage engine."""

from funding_arb.api.app import create_app

__all__ = ["create_app"]
