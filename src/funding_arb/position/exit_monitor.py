"""Exit suggestion monitor.

Reacts to `rate-updated` snapshots. For every OPEN position on the snapshot's
symbol it recomputes the APY of the position's own (long, short) venue pair
and its cumulative funding income, and raises an advisory when:

  APY_NEGATIVE     the pair now costs money (apy < 0)
  PROFIT_LOCKABLE  apy < threshold and funding income already exceeds the
                   loss from price movement if closed now

The advisory is one-shot: it is emitted when the flag is first set and a
cancellation is emitted when the condition no longer holds. Nothing is closed
automatically.
"""

from dataclasses import dataclass
from decimal import Decimal

from funding_arb.data.position_store import PositionStore
from funding_arb.events import EventBus
from funding_arb.exchange.client import VenueConnector
from funding_arb.logging import get_logger
from funding_arb.market_data.funding_feed import RATE_UPDATED
from funding_arb.models import (
    ExitSuggestionReason,
    FundingRatePair,
    Position,
    PositionStatus,
)
from funding_arb.normalizer import pair_spread
from funding_arb.pnl.calculator import fetch_funding_pnl, price_diff_loss
from funding_arb.position.lifecycle import position_room

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExitEvaluation:
    """Inputs and verdict of one exit check."""

    position_id: str
    apy: Decimal
    funding_pnl: Decimal
    price_diff_loss: Decimal
    reason: ExitSuggestionReason | None


def decide_exit(
    apy: Decimal, threshold_apy: Decimal, funding_pnl: Decimal, loss: Decimal
) -> ExitSuggestionReason | None:
    if apy < 0:
        return ExitSuggestionReason.APY_NEGATIVE
    if apy < threshold_apy and funding_pnl > loss:
        return ExitSuggestionReason.PROFIT_LOCKABLE
    return None


class ExitSuggestionMonitor:
    """Flags OPEN positions worth exiting and notifies their rooms.

    Args:
        store: Position store (exit flags, cached funding PnL).
        connectors: Venue connectors, for funding income history.
        events: Bus receiving exitSuggested/exitCanceled as (room, payload).
        threshold_apy: APY percent below which a profitable position is
            suggested for exit.
    """

    def __init__(
        self,
        store: PositionStore,
        connectors: dict[str, VenueConnector],
        events: EventBus,
        threshold_apy: Decimal = Decimal("100"),
    ) -> None:
        self._store = store
        self._connectors = connectors
        self._events = events
        self._threshold = threshold_apy
        self._bus: EventBus | None = None
        self._checks = 0
        self._suggestions = 0
        self._cancellations = 0
        self._errors = 0

    @property
    def stats(self) -> dict[str, int]:
        return {
            "checks": self._checks,
            "suggestions": self._suggestions,
            "cancellations": self._cancellations,
            "errors": self._errors,
        }

    def attach(self, bus: EventBus) -> None:
        self._bus = bus
        bus.on(RATE_UPDATED, self.on_rate_updated)
        logger.info("exit_monitor_attached", threshold_apy=str(self._threshold))

    def detach(self) -> None:
        if self._bus is not None:
            self._bus.off(RATE_UPDATED, self.on_rate_updated)
            self._bus = None

    async def on_rate_updated(self, pair: FundingRatePair) -> list[ExitEvaluation]:
        """Check every OPEN position on the pair's symbol.

        One position's failure is logged and never blocks the others.
        """
        positions = await self._store.list_by_status(PositionStatus.OPEN, pair.symbol)
        evaluations = []
        for position in positions:
            try:
                evaluation = await self.evaluate(position, pair)
                if evaluation is None:
                    continue
                evaluations.append(evaluation)
                await self._apply(position, evaluation)
            except Exception:
                self._errors += 1
                logger.error("exit_check_failed", position_id=position.id, exc_info=True)
        return evaluations

    async def evaluate(
        self, position: Position, pair: FundingRatePair
    ) -> ExitEvaluation | None:
        """Compute the verdict for one position, or None without both legs' rates."""
        long_sample = pair.rates.get(position.long_exchange)
        short_sample = pair.rates.get(position.short_exchange)
        if long_sample is None or short_sample is None:
            return None

        self._checks += 1
        quote = pair_spread(
            long_sample.rate,
            long_sample.interval_hours,
            short_sample.rate,
            short_sample.interval_hours,
        )
        funding = await self._funding_pnl(position)

        loss = Decimal("0")
        if long_sample.mark_price is not None and short_sample.mark_price is not None:
            loss = price_diff_loss(position, long_sample.mark_price, short_sample.mark_price)

        return ExitEvaluation(
            position_id=position.id,
            apy=quote.apy,
            funding_pnl=funding,
            price_diff_loss=loss,
            reason=decide_exit(quote.apy, self._threshold, funding, loss),
        )

    async def _funding_pnl(self, position: Position) -> Decimal:
        try:
            value = await fetch_funding_pnl(position, self._connectors)
        except Exception as exc:
            logger.warning(
                "exit_funding_pnl_fallback",
                position_id=position.id,
                error=str(exc),
                cached=str(position.cached_funding_pnl),
            )
            return position.cached_funding_pnl or Decimal("0")
        await self._store.set_cached_funding_pnl(position.id, value)
        return value

    async def _apply(self, position: Position, evaluation: ExitEvaluation) -> None:
        room = position_room(position.id)
        payload = {
            "position_id": position.id,
            "symbol": position.symbol,
            "apy": str(evaluation.apy),
            "funding_pnl": str(evaluation.funding_pnl),
            "price_diff_loss": str(evaluation.price_diff_loss),
        }

        if evaluation.reason is not None:
            if position.exit_suggested and position.exit_suggestion_reason == evaluation.reason:
                return
            await self._store.set_exit_suggestion(position.id, evaluation.reason)
            if position.exit_suggested:
                return
            self._suggestions += 1
            logger.info(
                "exit_suggested",
                position_id=position.id,
                reason=evaluation.reason.value,
                apy=str(evaluation.apy),
            )
            await self._events.emit(
                "exitSuggested", room, {**payload, "reason": evaluation.reason.value}
            )
        elif position.exit_suggested:
            await self._store.set_exit_suggestion(position.id, None)
            self._cancellations += 1
            logger.info("exit_suggestion_canceled", position_id=position.id)
            await self._events.emit("exitCanceled", room, payload)
