"""Shared test fixtures for the funding rate arbitrage engine."""

import time
from collections.abc import Callable
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from funding_arb.config import AppSettings, BinanceSettings, OkxSettings
from funding_arb.data.database import ArbitrageDatabase
from funding_arb.data.opportunity_store import OpportunityStore
from funding_arb.data.position_store import PositionStore
from funding_arb.events import EventBus
from funding_arb.exchange.client import VenueConnector
from funding_arb.models import (
    AccountBalance,
    FundingRateSample,
    IntervalSource,
    OrderResult,
    OrderStatus,
    Position,
    PositionStatus,
)


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (dummy API keys, no server)."""
    return AppSettings(
        log_level="DEBUG",
        binance=BinanceSettings(
            api_key="test-api-key",  # type: ignore[arg-type]
            api_secret="test-api-secret",  # type: ignore[arg-type]
            testnet=True,
        ),
        okx=OkxSettings(
            api_key="test-api-key",  # type: ignore[arg-type]
            api_secret="test-api-secret",  # type: ignore[arg-type]
            passphrase="test-passphrase",  # type: ignore[arg-type]
            testnet=True,
        ),
    )


@pytest_asyncio.fixture
async def database(tmp_path) -> ArbitrageDatabase:
    """A connected SQLite database under tmp_path, closed after the test."""
    db = ArbitrageDatabase(str(tmp_path / "arbitrage.db"))
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def opportunity_store(database: ArbitrageDatabase) -> OpportunityStore:
    return OpportunityStore(database)


@pytest.fixture
def position_store(database: ArbitrageDatabase) -> PositionStore:
    return PositionStore(database)


@pytest.fixture
def make_sample() -> Callable[..., FundingRateSample]:
    """Factory for funding rate samples."""

    def _make(
        exchange: str,
        rate: str,
        symbol: str = "BTCUSDT",
        interval_hours: int = 8,
        mark_price: str | None = "50000",
    ) -> FundingRateSample:
        return FundingRateSample(
            exchange=exchange,
            symbol=symbol,
            rate=Decimal(rate),
            interval_hours=interval_hours,
            interval_source=IntervalSource.NATIVE_API,
            mark_price=Decimal(mark_price) if mark_price is not None else None,
        )

    return _make


@pytest.fixture
def make_connector() -> Callable[..., MagicMock]:
    """Factory for venue connector fakes with a real event bus.

    Orders fill at `price` with no reported fee unless overridden. The free
    USDT balance is `balance`.
    """

    def _make(name: str, price: str = "50000", balance: str = "10000000") -> MagicMock:
        connector = MagicMock(spec=VenueConnector)
        connector.name = name
        connector.events = EventBus(name)
        connector.is_connected = True
        connector.get_price = AsyncMock(return_value=Decimal(price))
        connector.set_leverage = AsyncMock(return_value=None)
        connector.get_balance = AsyncMock(
            return_value=AccountBalance(
                exchange=name,
                currency="USDT",
                total=Decimal(balance),
                free=Decimal(balance),
                used=Decimal("0"),
            )
        )
        connector.get_funding_income = AsyncMock(return_value=Decimal("0"))
        connector.subscribe_ws = AsyncMock(return_value=None)
        connector.unsubscribe_ws = AsyncMock(return_value=None)

        async def _fill(request):
            return OrderResult(
                order_id=f"{name}-{request.side.value}",
                exchange=name,
                symbol=request.symbol,
                side=request.side,
                status=OrderStatus.FILLED,
                filled_qty=request.quantity,
                average_price=Decimal(price),
            )

        connector.create_order = AsyncMock(side_effect=_fill)
        return connector

    return _make


@pytest.fixture
def make_position() -> Callable[..., Position]:
    """Factory for filled OPEN positions (long binance, short okx)."""

    def _make(
        position_id: str = "pos-1",
        user_id: str = "user-1",
        quantity: str = "1",
        long_entry: str = "50000",
        short_entry: str = "50000",
        status: PositionStatus = PositionStatus.OPEN,
        group_id: str | None = None,
        stop_loss_percent: str | None = None,
        take_profit_percent: str | None = None,
        created_at: float | None = None,
    ) -> Position:
        now = created_at if created_at is not None else time.time()
        return Position(
            id=position_id,
            user_id=user_id,
            symbol="BTCUSDT",
            long_exchange="binance",
            short_exchange="okx",
            quantity=Decimal(quantity),
            leverage=2,
            status=status,
            long_order_id="long-1",
            short_order_id="short-1",
            long_entry_price=Decimal(long_entry),
            short_entry_price=Decimal(short_entry),
            long_size=Decimal(quantity),
            short_size=Decimal(quantity),
            group_id=group_id,
            stop_loss_percent=Decimal(stop_loss_percent) if stop_loss_percent else None,
            take_profit_percent=Decimal(take_profit_percent) if take_profit_percent else None,
            created_at=now,
            opened_at=now,
        )

    return _make
