"""Abstract venue connector interface.

Defines the uniform contract every venue implements. Detection and position
code depends only on this interface; venue quirks (symbol notation, interval
lookup, missing push primitives) stay inside the concrete connectors.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from funding_arb.events import EventBus
from funding_arb.models import (
    AccountBalance,
    FundingRateSample,
    OrderRequest,
    OrderResult,
    SubscriptionType,
    SymbolInfo,
    VenuePosition,
)


class VenueConnector(ABC):
    """Abstract base class for venue connectors.

    Events published on `events`:
        connected(name), disconnected(name), fundingRate(FundingRateSample),
        positionUpdate(list[VenuePosition]), balanceUpdate(AccountBalance),
        error(key, exception).
    """

    name: str

    @property
    @abstractmethod
    def events(self) -> EventBus:
        """Event bus this connector publishes on."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Load markets and mark the connector usable."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop all subscriptions and release resources. No retries after this."""
        ...

    @abstractmethod
    async def get_funding_rate(self, symbol: str) -> FundingRateSample:
        """Current funding rate for a canonical symbol, with resolved interval."""
        ...

    @abstractmethod
    async def get_funding_rates(self, symbols: list[str]) -> list[FundingRateSample]:
        """Funding rates for several symbols; symbols that fail are omitted."""
        ...

    @abstractmethod
    async def get_price(self, symbol: str) -> Decimal:
        """Mark price (or last trade when no mark is published)."""
        ...

    @abstractmethod
    async def get_prices(self, symbols: list[str]) -> dict[str, Decimal]:
        ...

    @abstractmethod
    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        """Trading constraints, cached with a TTL."""
        ...

    @abstractmethod
    async def get_balance(self, currency: str = "USDT") -> AccountBalance:
        ...

    @abstractmethod
    async def get_position(self, symbol: str) -> VenuePosition | None:
        ...

    @abstractmethod
    async def get_positions(self) -> list[VenuePosition]:
        ...

    @abstractmethod
    async def create_order(self, request: OrderRequest) -> OrderResult:
        ...

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str) -> None:
        ...

    @abstractmethod
    async def get_order(self, order_id: str, symbol: str) -> OrderResult:
        ...

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        ...

    @abstractmethod
    async def set_position_mode(self, hedged: bool) -> None:
        ...

    @abstractmethod
    async def get_funding_income(self, symbol: str, since: float) -> Decimal:
        """Sum of funding paid/received on symbol since a Unix timestamp."""
        ...

    @abstractmethod
    async def subscribe_ws(
        self, stream: SubscriptionType, symbol: str | None = None
    ) -> bool:
        """Start a supervised push (or polling) stream. False if already running."""
        ...

    @abstractmethod
    async def unsubscribe_ws(
        self, stream: SubscriptionType, symbol: str | None = None
    ) -> bool:
        ...
