"""Entry point for the funding rate arbitrage engine.

Wires all components together, optionally serves the FastAPI app, and runs
the funding feed, detector and monitors. When the server is enabled (default)
the engine and the HTTP/WebSocket surface share one asyncio event loop via
uvicorn's programmatic API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. ArbitrageDatabase, OpportunityStore, PositionStore
2. FundingIntervalCache and venue connectors
3. FundingRateValidator and FundingFeed
4. Notifier and OpportunityDetector
5. PnLCalculator and PositionLifecycleManager
6. ConditionalOrderMonitor and ExitSuggestionMonitor
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from funding_arb.config import AppSettings
from funding_arb.data.database import ArbitrageDatabase
from funding_arb.data.opportunity_store import OpportunityStore
from funding_arb.data.position_store import PositionStore
from funding_arb.events import EventBus
from funding_arb.exchange.factory import create_connectors
from funding_arb.exchange.interval_cache import FundingIntervalCache
from funding_arb.logging import get_logger, setup_logging
from funding_arb.market_data.funding_feed import FundingFeed
from funding_arb.market_data.validator import FundingRateValidator
from funding_arb.opportunity.debounce import DebounceManager
from funding_arb.opportunity.detector import OpportunityDetector
from funding_arb.opportunity.notifier import Notifier
from funding_arb.pnl.calculator import PnLCalculator
from funding_arb.position.conditional_monitor import ConditionalOrderMonitor
from funding_arb.position.exit_monitor import ExitSuggestionMonitor
from funding_arb.position.lifecycle import PositionLifecycleManager

logger = get_logger("funding_arb.main")


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all engine components from settings.

    Note: Does NOT connect the database or the venues -- that happens in
    start_engine().

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    # 1. Persistence
    database = ArbitrageDatabase(settings.database.path)
    opportunity_store = OpportunityStore(database)
    position_store = PositionStore(database)

    # 2. Venues, sharing one interval cache
    interval_cache = FundingIntervalCache(ttl=settings.connector.interval_cache_ttl)
    connectors = create_connectors(settings, interval_cache)
    if not connectors:
        logger.warning("no_exchanges_enabled")

    # 3. Funding feed with sample validation
    validator = FundingRateValidator(
        max_abs_rate=settings.detector.max_abs_rate,
        store=opportunity_store,
    )
    feed = FundingFeed(
        connectors,
        settings.detector.symbols,
        validator=validator,
        events=EventBus("market"),
    )

    # 4. Detection and notifications
    notifier = Notifier(
        store=opportunity_store,
        debounce=DebounceManager(window_seconds=settings.detector.debounce_seconds),
    )
    detector = OpportunityDetector(
        opportunity_store,
        notifier=notifier,
        threshold_apy=settings.detector.opportunity_threshold_apy,
        approaching_ratio=settings.detector.approaching_ratio,
    )

    # 5. Position lifecycle; client events go out on their own bus
    client_events = EventBus("clients")
    lifecycle = PositionLifecycleManager(
        position_store,
        connectors,
        pnl=PnLCalculator(settings.costs),
        settings=settings.position,
        events=client_events,
        feed=feed,
    )

    # 6. Monitors
    conditional_monitor = ConditionalOrderMonitor(
        lifecycle,
        position_store,
        connectors,
        interval=settings.monitor.conditional_interval,
    )
    exit_monitor = ExitSuggestionMonitor(
        position_store,
        connectors,
        client_events,
        threshold_apy=settings.monitor.exit_suggestion_threshold_apy,
    )

    return {
        "database": database,
        "opportunity_store": opportunity_store,
        "position_store": position_store,
        "interval_cache": interval_cache,
        "connectors": connectors,
        "validator": validator,
        "feed": feed,
        "notifier": notifier,
        "detector": detector,
        "client_events": client_events,
        "lifecycle": lifecycle,
        "conditional_monitor": conditional_monitor,
        "exit_monitor": exit_monitor,
    }


async def start_engine(settings: AppSettings, components: dict[str, Any]) -> None:
    """Connect persistence and venues, then start feed, detector and monitors.

    A venue that fails to connect is logged and left out of the feed; the
    engine keeps running on the others.
    """
    await components["database"].connect()

    connectors = components["connectors"]
    feed: FundingFeed = components["feed"]
    names = list(connectors)
    results = await asyncio.gather(
        *(connectors[name].connect() for name in names), return_exceptions=True
    )
    for name, result in zip(names, results):
        if isinstance(result, Exception):
            logger.error("exchange_connect_failed", exchange=name, error=str(result))
            await _close_failed(name, connectors.pop(name))
            continue
        connectors[name].events.on("disconnected", feed.drop_exchange)

    await feed.start()
    components["detector"].attach(feed.events)
    if settings.monitor.exit_suggestion_enabled:
        components["exit_monitor"].attach(feed.events)
    await components["conditional_monitor"].start()

    logger.info(
        "engine_started",
        exchanges=sorted(connectors),
        symbols=feed.symbols,
    )


async def _close_failed(name: str, connector: Any) -> None:
    """Release the client session of a venue that never connected."""
    try:
        await connector.disconnect()
    except Exception as exc:
        logger.warning("exchange_disconnect_failed", exchange=name, error=str(exc))


async def stop_engine(components: dict[str, Any]) -> None:
    """Stop monitors and the feed, then disconnect venues and the database."""
    await components["conditional_monitor"].stop()
    components["exit_monitor"].detach()
    components["detector"].detach()
    await components["feed"].stop()

    connectors = components["connectors"]
    results = await asyncio.gather(
        *(connector.disconnect() for connector in connectors.values()),
        return_exceptions=True,
    )
    for name, result in zip(list(connectors), results):
        if isinstance(result, Exception):
            logger.warning("exchange_disconnect_failed", exchange=name, error=str(result))

    await components["database"].close()
    logger.info("funding_rate_arbitrage_stopped")


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Register SIGINT/SIGTERM to request a graceful shutdown.

    Must be called after the asyncio event loop is running.
    """
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage engine component lifecycle within the FastAPI application.

    On startup: stores components on app.state, starts the engine and relays
    client events to the WebSocket hub. On shutdown: detaches the hub and
    stops the engine.
    """
    settings = app.state.settings
    components = app.state.components

    # Store components on app.state for route handler access
    for name in (
        "lifecycle",
        "feed",
        "opportunity_store",
        "detector",
        "notifier",
        "conditional_monitor",
        "exit_monitor",
        "connectors",
    ):
        setattr(app.state, name, components[name])

    await start_engine(settings, components)

    hub = app.state.hub
    hub.relay(components["client_events"])
    hub.relay_market(components["feed"].events)

    logger.info("lifespan_started")

    yield

    hub.detach()
    await stop_engine(components)


async def run() -> None:
    """Run the funding rate arbitrage engine.

    When the server is enabled (SERVER_ENABLED=true, the default) the engine
    runs inside the FastAPI lifespan under uvicorn, which handles signals
    itself. Otherwise it runs headless until SIGINT/SIGTERM.
    """
    settings = AppSettings()
    setup_logging(settings.log_level)

    components = _build_components(settings)

    if settings.server.enabled:
        from funding_arb.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_server",
            host=settings.server.host,
            port=settings.server.port,
        )

        config = uvicorn.Config(
            app,
            host=settings.server.host,
            port=settings.server.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        stop_event = asyncio.Event()
        _setup_signal_handlers(stop_event)

        logger.info(
            "starting_headless",
            symbols=settings.detector.symbols,
            threshold_apy=str(settings.detector.opportunity_threshold_apy),
        )

        try:
            await start_engine(settings, components)
            await stop_event.wait()
        finally:
            await stop_engine(components)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
