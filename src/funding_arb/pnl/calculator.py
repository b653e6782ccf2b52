"""PnL computation for two-venue delta-neutral positions.

All calculations use Decimal arithmetic exclusively -- no float conversions anywhere.

  long leg price PnL  = (exit - entry) * size
  short leg price PnL = (entry - exit) * size
  total PnL           = price diff PnL + funding PnL - fees
  margin              = sum(entry * size) / leverage
  ROI                 = total PnL / margin * 100
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal

from funding_arb.config import CostSettings
from funding_arb.exceptions import ValidationError
from funding_arb.exchange.client import VenueConnector
from funding_arb.models import Position, PositionSide

_ZERO = Decimal("0")


def leg_price_pnl(
    side: PositionSide, entry_price: Decimal, exit_price: Decimal, size: Decimal
) -> Decimal:
    """Price PnL of one leg."""
    if side == PositionSide.LONG:
        return (exit_price - entry_price) * size
    return (entry_price - exit_price) * size


def _entry_legs(position: Position) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    if (
        position.long_entry_price is None
        or position.short_entry_price is None
        or position.long_size is None
        or position.short_size is None
    ):
        raise ValidationError(f"Position {position.id} has no filled entry on both legs")
    return (
        position.long_entry_price,
        position.long_size,
        position.short_entry_price,
        position.short_size,
    )


def price_diff_pnl(position: Position, long_price: Decimal, short_price: Decimal) -> Decimal:
    """Combined price PnL of both legs at the given prices."""
    long_entry, long_size, short_entry, short_size = _entry_legs(position)
    return leg_price_pnl(PositionSide.LONG, long_entry, long_price, long_size) + leg_price_pnl(
        PositionSide.SHORT, short_entry, short_price, short_size
    )


def price_diff_loss(position: Position, long_price: Decimal, short_price: Decimal) -> Decimal:
    """Loss from price movement if closed now; zero when price PnL is positive."""
    pnl = price_diff_pnl(position, long_price, short_price)
    return -pnl if pnl < 0 else _ZERO


def position_margin(position: Position) -> Decimal:
    """Margin committed to both legs at entry."""
    long_entry, long_size, short_entry, short_size = _entry_legs(position)
    leverage = Decimal(max(position.leverage, 1))
    return (long_entry * long_size + short_entry * short_size) / leverage


def required_margin(
    quantity: Decimal, price: Decimal, leverage: int, buffer: Decimal = Decimal("0.1")
) -> Decimal:
    """Initial margin for one leg of quantity at price, plus a buffer fraction."""
    return quantity * price / Decimal(max(leverage, 1)) * (1 + buffer)


def roi_percent(total_pnl: Decimal, margin: Decimal) -> Decimal:
    if margin <= 0:
        return _ZERO
    return total_pnl / margin * 100


@dataclass(frozen=True)
class RealizedPnL:
    """Breakdown of a position's result at close."""

    price_diff_pnl: Decimal
    funding_pnl: Decimal
    total_fees: Decimal
    total_pnl: Decimal
    margin: Decimal
    roi: Decimal


class PnLCalculator:
    """Computes fees and realized PnL with the configured taker fee.

    Args:
        costs: Cost model providing the per-fill taker fee rate.
    """

    def __init__(self, costs: CostSettings | None = None) -> None:
        self._costs = costs or CostSettings()

    @property
    def taker_fee(self) -> Decimal:
        return self._costs.taker_fee

    def fill_fee(self, price: Decimal, size: Decimal) -> Decimal:
        """Taker fee for one fill."""
        return price * size * self._costs.taker_fee

    def exit_fees(self, position: Position, long_price: Decimal, short_price: Decimal) -> Decimal:
        """Estimated taker fees for closing both legs at the given prices."""
        _, long_size, _, short_size = _entry_legs(position)
        return self.fill_fee(long_price, long_size) + self.fill_fee(short_price, short_size)

    def realized(
        self,
        position: Position,
        long_exit_price: Decimal,
        short_exit_price: Decimal,
        funding_pnl: Decimal,
        exit_fees: Decimal,
    ) -> RealizedPnL:
        """Final PnL of a position closed at the given prices.

        Total fees include the fee recorded at entry.
        """
        diff = price_diff_pnl(position, long_exit_price, short_exit_price)
        total_fees = position.entry_fee + exit_fees
        total = diff + funding_pnl - total_fees
        margin = position_margin(position)
        return RealizedPnL(
            price_diff_pnl=diff,
            funding_pnl=funding_pnl,
            total_fees=total_fees,
            total_pnl=total,
            margin=margin,
            roi=roi_percent(total, margin),
        )


async def fetch_funding_pnl(
    position: Position, connectors: dict[str, VenueConnector]
) -> Decimal:
    """Cumulative funding received minus paid on both legs since the position opened.

    Raises:
        ValidationError: If either venue has no connector.
        ArbitrageError: Propagated from the venue when the history lookup fails.
    """
    long_connector = connectors.get(position.long_exchange)
    short_connector = connectors.get(position.short_exchange)
    if long_connector is None or short_connector is None:
        raise ValidationError(
            f"No connector for {position.long_exchange} or {position.short_exchange}"
        )

    since = position.opened_at or position.created_at
    long_income, short_income = await asyncio.gather(
        long_connector.get_funding_income(position.symbol, since),
        short_connector.get_funding_income(position.symbol, since),
    )
    return long_income + short_income
