"""Shared data models for the funding rate arbitrage engine.

CRITICAL: All monetary values and rates use Decimal. Never use float for prices,
quantities, fees or funding rates. Timestamps are Unix seconds (float) unless
a field name ends in _ms.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class ExchangeName(str, Enum):
    """Supported venues."""

    BINANCE = "binance"
    OKX = "okx"
    GATEIO = "gateio"
    MEXC = "mexc"
    BINGX = "bingx"


class IntervalSource(str, Enum):
    """Where a funding interval value came from."""

    NATIVE_API = "native-api"
    CALCULATED = "calculated"
    DEFAULT = "default"


class OrderSide(str, Enum):
    """Order direction."""

    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type."""

    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(str, Enum):
    """Normalized order status across venues."""

    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class PositionSide(str, Enum):
    """Leg direction."""

    LONG = "long"
    SHORT = "short"


class SubscriptionType(str, Enum):
    """Push stream kinds a connector can subscribe to."""

    FUNDING_RATE = "fundingRate"
    POSITION_UPDATE = "positionUpdate"
    BALANCE_UPDATE = "balanceUpdate"


class OpportunityStatus(str, Enum):
    """Opportunity state machine."""

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CLOSED = "CLOSED"


class DisappearReason(str, Enum):
    """Why an opportunity left ACTIVE."""

    RATE_DROPPED = "RATE_DROPPED"
    DATA_UNAVAILABLE = "DATA_UNAVAILABLE"
    MANUAL_CLOSE = "MANUAL_CLOSE"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class NotificationType(str, Enum):
    """Opportunity notification kinds."""

    OPPORTUNITY_APPEARED = "OPPORTUNITY_APPEARED"
    OPPORTUNITY_UPDATED = "OPPORTUNITY_UPDATED"
    OPPORTUNITY_DISAPPEARED = "OPPORTUNITY_DISAPPEARED"


class NotificationChannel(str, Enum):
    """Where notifications are delivered."""

    TERMINAL = "TERMINAL"
    LOG = "LOG"


class PositionStatus(str, Enum):
    """Position lifecycle status."""

    PENDING = "PENDING"
    OPENING = "OPENING"
    OPEN = "OPEN"
    PARTIAL = "PARTIAL"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


class CloseReason(str, Enum):
    """Why a position was closed."""

    MANUAL = "MANUAL"
    BATCH_CLOSE = "BATCH_CLOSE"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"


class TradeStatus(str, Enum):
    """Realized trade outcome."""

    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"


class CloseOutcome(str, Enum):
    """Outcome of a single close or a batch close."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class ExitSuggestionReason(str, Enum):
    """Why an exit was suggested."""

    APY_NEGATIVE = "APY_NEGATIVE"
    PROFIT_LOCKABLE = "PROFIT_LOCKABLE"


class TriggerType(str, Enum):
    """Which conditional threshold was breached."""

    LONG_SL = "LONG_SL"
    LONG_TP = "LONG_TP"
    SHORT_SL = "SHORT_SL"
    SHORT_TP = "SHORT_TP"


# ──────────────────────────────────────────────
# Market data
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class FundingRateSample:
    """One funding rate observation for (exchange, symbol). Immutable once recorded."""

    exchange: str
    symbol: str  # canonical, e.g. "BTCUSDT"
    rate: Decimal  # signed fraction per settlement interval
    interval_hours: int = 8
    next_settlement_at: int | None = None  # Unix milliseconds
    interval_source: IntervalSource = IntervalSource.DEFAULT
    mark_price: Decimal | None = None
    index_price: Decimal | None = None
    recorded_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BestPair:
    """Long/short venue choice maximizing the normalized spread for a symbol."""

    long_exchange: str
    short_exchange: str
    spread: Decimal  # short rate minus long rate, per basis_hours
    basis_hours: int
    spread_annualized: Decimal  # APY percent
    price_diff_percent: Decimal | None = None


@dataclass
class FundingRatePair:
    """Latest samples for one symbol across venues plus the derived best pair."""

    symbol: str
    rates: dict[str, FundingRateSample]
    best_pair: BestPair | None = None
    updated_at: float = field(default_factory=time.time)


@dataclass
class SymbolInfo:
    """Trading constraints for a perpetual contract on one venue."""

    symbol: str
    venue_symbol: str
    min_qty: Decimal
    max_qty: Decimal
    qty_step: Decimal
    tick_size: Decimal = Decimal("0.01")
    contract_size: Decimal = Decimal("1")
    fetched_at: float = field(default_factory=time.time)


@dataclass
class OrderRequest:
    """Request to place an order on one venue."""

    symbol: str
    side: OrderSide
    quantity: Decimal
    order_type: OrderType = OrderType.MARKET
    price: Decimal | None = None
    reduce_only: bool = False


@dataclass
class OrderResult:
    """Normalized order state returned by a venue."""

    order_id: str
    exchange: str
    symbol: str
    side: OrderSide
    status: OrderStatus
    filled_qty: Decimal
    average_price: Decimal
    fee: Decimal = Decimal("0")
    timestamp: float = field(default_factory=time.time)


@dataclass
class AccountBalance:
    """Quote-currency balance on one venue."""

    exchange: str
    currency: str
    total: Decimal
    free: Decimal
    used: Decimal


@dataclass
class VenuePosition:
    """An open position as reported by a venue."""

    exchange: str
    symbol: str
    side: PositionSide
    contracts: Decimal
    entry_price: Decimal
    mark_price: Decimal | None = None
    unrealized_pnl: Decimal = Decimal("0")
    leverage: int | None = None


# ──────────────────────────────────────────────
# Opportunities
# ──────────────────────────────────────────────


@dataclass
class Opportunity:
    """An arbitrage opportunity keyed by (symbol, long_exchange, short_exchange)."""

    id: str
    symbol: str
    long_exchange: str
    short_exchange: str
    status: OpportunityStatus
    initial_spread: Decimal
    current_spread: Decimal
    max_spread: Decimal
    max_spread_at: float
    min_spread: Decimal
    initial_apy: Decimal
    current_apy: Decimal
    max_apy: Decimal
    long_interval_hours: int
    short_interval_hours: int
    detected_at: float
    notification_count: int = 0
    spread_sum: Decimal = Decimal("0")
    sample_count: int = 0
    ended_at: float | None = None
    duration_ms: int | None = None
    disappear_reason: DisappearReason | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.symbol, self.long_exchange, self.short_exchange)

    @property
    def avg_spread(self) -> Decimal:
        if self.sample_count == 0:
            return self.current_spread
        return self.spread_sum / self.sample_count


@dataclass
class OpportunityHistory:
    """Immutable snapshot written once when an opportunity leaves ACTIVE."""

    id: str
    opportunity_id: str
    symbol: str
    long_exchange: str
    short_exchange: str
    initial_spread: Decimal
    max_spread: Decimal
    avg_spread: Decimal
    initial_apy: Decimal
    max_apy: Decimal
    duration_ms: int
    notification_count: int
    disappear_reason: DisappearReason
    detected_at: float
    ended_at: float


@dataclass
class NotificationLogEntry:
    """Append-only record of one notification attempt."""

    symbol: str
    long_exchange: str
    short_exchange: str
    notification_type: NotificationType
    channel: NotificationChannel
    message: str
    spread: Decimal
    apy: Decimal
    opportunity_id: str | None = None
    is_debounced: bool = False
    debounce_skipped_count: int = 0
    sent_at: float = field(default_factory=time.time)


@dataclass
class FundingRateValidation:
    """Audit row for a funding rate sample rejected before pairing."""

    exchange: str
    symbol: str
    raw_rate: str
    interval_hours: int
    passed: bool
    reason: str
    recorded_at: float = field(default_factory=time.time)


# ──────────────────────────────────────────────
# Positions
# ──────────────────────────────────────────────


@dataclass
class Position:
    """A delta-neutral position: long on one venue, short on another."""

    id: str
    user_id: str
    symbol: str
    long_exchange: str
    short_exchange: str
    quantity: Decimal
    leverage: int = 3
    status: PositionStatus = PositionStatus.PENDING
    long_order_id: str | None = None
    short_order_id: str | None = None
    long_entry_price: Decimal | None = None
    short_entry_price: Decimal | None = None
    long_size: Decimal | None = None
    short_size: Decimal | None = None
    entry_fee: Decimal = Decimal("0")
    open_long_rate: Decimal | None = None
    open_short_rate: Decimal | None = None
    failure_reason: str | None = None
    group_id: str | None = None
    stop_loss_percent: Decimal | None = None
    take_profit_percent: Decimal | None = None
    exit_suggested: bool = False
    exit_suggested_at: float | None = None
    exit_suggestion_reason: ExitSuggestionReason | None = None
    cached_funding_pnl: Decimal | None = None
    close_reason: CloseReason | None = None
    created_at: float = field(default_factory=time.time)
    opened_at: float | None = None
    closed_at: float | None = None

    @property
    def has_conditional_orders(self) -> bool:
        return self.stop_loss_percent is not None or self.take_profit_percent is not None


@dataclass
class Trade:
    """Realized result of a closed position."""

    id: str
    position_id: str
    user_id: str
    symbol: str
    long_exchange: str
    short_exchange: str
    long_entry_price: Decimal
    long_exit_price: Decimal
    short_entry_price: Decimal
    short_exit_price: Decimal
    long_size: Decimal
    short_size: Decimal
    holding_duration: int  # seconds
    price_diff_pnl: Decimal
    funding_pnl: Decimal
    total_fees: Decimal
    total_pnl: Decimal
    roi: Decimal  # percent of margin
    status: TradeStatus
    close_reason: CloseReason
    opened_at: float
    closed_at: float


@dataclass
class PositionGroup:
    """Derived aggregation over OPEN positions sharing a group_id. Not stored."""

    group_id: str
    symbol: str
    long_exchange: str
    short_exchange: str
    position_ids: list[str]
    total_quantity: Decimal
    avg_long_entry_price: Decimal | None
    avg_short_entry_price: Decimal | None
    total_funding_pnl: Decimal | None
    min_stop_loss_percent: Decimal | None = None
    max_stop_loss_percent: Decimal | None = None
    min_take_profit_percent: Decimal | None = None
    max_take_profit_percent: Decimal | None = None

    @property
    def position_count(self) -> int:
        return len(self.position_ids)


@dataclass
class OpenPositionRequest:
    """Inbound request to open one or more (split) positions."""

    user_id: str
    symbol: str
    long_exchange: str
    short_exchange: str
    quantity: Decimal
    leverage: int | None = None
    split_count: int = 1
    stop_loss_percent: Decimal | None = None
    take_profit_percent: Decimal | None = None


@dataclass
class CloseEstimate:
    """Pre-close estimate shown to the user for confirmation."""

    position_id: str
    long_price: Decimal
    short_price: Decimal
    price_diff_pnl: Decimal
    estimated_fees: Decimal
    funding_pnl: Decimal
    net_pnl: Decimal


@dataclass
class CloseResult:
    """Outcome of closing one position.

    A PARTIAL outcome carries the failed side and its error so the caller can
    report which leg still needs manual reconciliation.
    """

    position_id: str
    outcome: CloseOutcome
    position: Position
    trade: Trade | None = None
    failed_side: PositionSide | None = None
    error: str | None = None


@dataclass
class BatchPositionResult:
    """Per-position entry in a batch close result."""

    position_id: str
    success: bool
    outcome: CloseOutcome
    error: str | None = None


@dataclass
class BatchCloseResult:
    """Aggregate result of closing every OPEN position in a group."""

    group_id: str
    status: CloseOutcome
    total: int
    closed_count: int
    failed_count: int
    results: list[BatchPositionResult] = field(default_factory=list)
