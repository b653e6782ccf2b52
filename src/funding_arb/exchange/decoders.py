"""Typed, validating decode of ccxt payloads.

ccxt returns loosely-shaped dicts whose optional fields vary per venue. Every
payload the engine reads is decoded through one of these pydantic models:
missing fields take the documented default, numbers become Decimal via their
string form, and a payload that fails validation decodes to the model's
all-defaults instance with a warning instead of raising mid-stream.
"""

from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from funding_arb.logging import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return result if result.is_finite() else None


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError, TypeError):
        return None


OptDecimal = Annotated[Decimal | None, BeforeValidator(_decimal_or_none)]
OptInt = Annotated[int | None, BeforeValidator(_int_or_none)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def decode(model: type[M], payload: Any, context: str = "") -> M:
    """Validate payload into model, degrading to defaults on failure."""
    if payload is None:
        return model()
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        logger.warning(
            "payload_decode_failed",
            model=model.__name__,
            context=context,
            errors=exc.error_count(),
        )
        return model()


# ──────────────────────────────────────────────
# Unified ccxt structures
# ──────────────────────────────────────────────


class FundingRatePayload(_Payload):
    """ccxt fetchFundingRate / watchFundingRate structure."""

    symbol: str = ""
    funding_rate: OptDecimal = Field(default=None, alias="fundingRate")
    funding_timestamp: OptInt = Field(default=None, alias="fundingTimestamp")
    next_funding_timestamp: OptInt = Field(default=None, alias="nextFundingTimestamp")
    mark_price: OptDecimal = Field(default=None, alias="markPrice")
    index_price: OptDecimal = Field(default=None, alias="indexPrice")
    interval: str | None = None  # e.g. "8h"
    timestamp: OptInt = None
    info: dict[str, Any] = Field(default_factory=dict)

    def interval_hours(self) -> int | None:
        """Parse ccxt's interval string ("8h") into hours."""
        if not self.interval or not self.interval.endswith("h"):
            return None
        return _int_or_none(self.interval[:-1])


class TickerPayload(_Payload):
    """ccxt ticker structure."""

    symbol: str = ""
    last: OptDecimal = None
    bid: OptDecimal = None
    ask: OptDecimal = None
    mark_price: OptDecimal = Field(default=None, alias="markPrice")
    index_price: OptDecimal = Field(default=None, alias="indexPrice")
    timestamp: OptInt = None
    info: dict[str, Any] = Field(default_factory=dict)

    def best_price(self) -> Decimal | None:
        """Mark price when the venue reports one, otherwise last trade."""
        return self.mark_price or self.last


class FeePayload(_Payload):
    cost: OptDecimal = None
    currency: str | None = None


class OrderPayload(_Payload):
    """ccxt order structure."""

    id: str = ""
    symbol: str = ""
    status: str | None = None
    side: str | None = None
    amount: OptDecimal = None
    filled: OptDecimal = None
    average: OptDecimal = None
    price: OptDecimal = None
    fee: FeePayload | None = None
    timestamp: OptInt = None
    info: dict[str, Any] = Field(default_factory=dict)


class PositionPayload(_Payload):
    """ccxt position structure."""

    symbol: str = ""
    side: str | None = None
    contracts: OptDecimal = None
    entry_price: OptDecimal = Field(default=None, alias="entryPrice")
    mark_price: OptDecimal = Field(default=None, alias="markPrice")
    unrealized_pnl: OptDecimal = Field(default=None, alias="unrealizedPnl")
    leverage: OptDecimal = None


class BalanceEntryPayload(_Payload):
    """One currency entry of a ccxt balance structure."""

    free: OptDecimal = None
    used: OptDecimal = None
    total: OptDecimal = None


class FundingHistoryPayload(_Payload):
    """ccxt fetchFundingHistory entry (funding actually paid or received)."""

    symbol: str = ""
    amount: OptDecimal = None
    timestamp: OptInt = None


class FundingRateHistoryPayload(_Payload):
    """ccxt fetchFundingRateHistory entry."""

    symbol: str = ""
    funding_rate: OptDecimal = Field(default=None, alias="fundingRate")
    timestamp: OptInt = None


# ──────────────────────────────────────────────
# Venue-native fields used for interval lookup
# ──────────────────────────────────────────────


class BinanceFundingInfo(_Payload):
    """Entry of GET /fapi/v1/fundingInfo."""

    symbol: str = ""
    funding_interval_hours: OptInt = Field(default=None, alias="fundingIntervalHours")


class OkxFundingInfo(_Payload):
    """info block of an OKX funding rate response."""

    funding_time: OptInt = Field(default=None, alias="fundingTime")
    next_funding_time: OptInt = Field(default=None, alias="nextFundingTime")


class GateioContractInfo(_Payload):
    """info block of a Gate.io futures contract."""

    funding_interval: OptInt = None  # seconds


class MexcContractInfo(_Payload):
    """info block of a MEXC contract detail."""

    collect_cycle: OptInt = Field(default=None, alias="collectCycle")  # hours
