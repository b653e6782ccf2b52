"""Opportunity detector -- drives the opportunity state machine from feed snapshots.

For every `rate-updated` snapshot the detector evaluates each ordered pair of
distinct exchanges (long on one, short on the other):

  apy >= threshold             upsert ACTIVE (create, or fold in the sample)
  end threshold <= apy < threshold   keep ACTIVE, refresh current values only
  apy < end threshold          ACTIVE -> EXPIRED, history written once

The end threshold is threshold * approaching_ratio, so an opportunity hovering
around the entry threshold does not flap between ACTIVE and EXPIRED.

An exchange without a usable sample in the snapshot is left out of pairing for
that cycle. Opportunities involving it are neither updated nor expired.
"""

import itertools
from dataclasses import dataclass, field
from decimal import Decimal

from funding_arb.data.opportunity_store import OpportunityStore
from funding_arb.events import EventBus
from funding_arb.exceptions import ValidationError
from funding_arb.logging import get_logger
from funding_arb.market_data.funding_feed import RATE_UPDATED
from funding_arb.models import (
    DisappearReason,
    FundingRatePair,
    FundingRateSample,
    NotificationType,
    Opportunity,
    OpportunityStatus,
)
from funding_arb.normalizer import SpreadQuote, pair_spread
from funding_arb.opportunity.notifier import Notifier

logger = get_logger(__name__)


@dataclass(frozen=True)
class PairEvaluation:
    """Spread of one ordered (long, short) exchange pair for a symbol."""

    symbol: str
    long_exchange: str
    short_exchange: str
    long_interval_hours: int
    short_interval_hours: int
    quote: SpreadQuote


@dataclass
class DetectionResult:
    """What one snapshot did to the opportunity table."""

    symbol: str
    created: list[Opportunity] = field(default_factory=list)
    updated: list[Opportunity] = field(default_factory=list)
    held: list[str] = field(default_factory=list)  # opportunity ids in the hysteresis band
    expired: list[Opportunity] = field(default_factory=list)


def _usable(sample: FundingRateSample | None) -> bool:
    return (
        sample is not None
        and isinstance(sample.rate, Decimal)
        and sample.rate.is_finite()
        and sample.interval_hours > 0
    )


def evaluate_pairs(pair: FundingRatePair) -> list[PairEvaluation]:
    """Spread and APY for every ordered pair of usable exchanges in a snapshot."""
    usable = sorted(name for name, sample in pair.rates.items() if _usable(sample))
    evaluations = []
    for long_name, short_name in itertools.permutations(usable, 2):
        long_sample = pair.rates[long_name]
        short_sample = pair.rates[short_name]
        try:
            quote = pair_spread(
                long_sample.rate,
                long_sample.interval_hours,
                short_sample.rate,
                short_sample.interval_hours,
            )
        except ValidationError as exc:
            logger.warning(
                "pair_evaluation_skipped",
                symbol=pair.symbol,
                long_exchange=long_name,
                short_exchange=short_name,
                error=str(exc),
            )
            continue
        evaluations.append(
            PairEvaluation(
                symbol=pair.symbol,
                long_exchange=long_name,
                short_exchange=short_name,
                long_interval_hours=long_sample.interval_hours,
                short_interval_hours=short_sample.interval_hours,
                quote=quote,
            )
        )
    return evaluations


class OpportunityDetector:
    """Maintains ACTIVE opportunities and their history from rate snapshots.

    Args:
        store: Opportunity persistence.
        notifier: Optional notifier for appeared/updated/disappeared events.
        threshold_apy: APY percent at which a pair qualifies.
        approaching_ratio: Fraction of threshold_apy below which an ACTIVE
            opportunity expires.
    """

    def __init__(
        self,
        store: OpportunityStore,
        notifier: Notifier | None = None,
        threshold_apy: Decimal = Decimal("800"),
        approaching_ratio: Decimal = Decimal("0.75"),
    ) -> None:
        if threshold_apy <= 0:
            raise ValidationError(f"Opportunity threshold must be positive, got {threshold_apy}")
        if not Decimal("0") < approaching_ratio <= Decimal("1"):
            raise ValidationError(
                f"Approaching ratio must be in (0, 1], got {approaching_ratio}"
            )
        self._store = store
        self._notifier = notifier
        self._threshold = threshold_apy
        self._end_threshold = threshold_apy * approaching_ratio
        self._bus: EventBus | None = None
        self._snapshots = 0

    @property
    def threshold_apy(self) -> Decimal:
        return self._threshold

    @property
    def end_threshold_apy(self) -> Decimal:
        return self._end_threshold

    @property
    def snapshots_processed(self) -> int:
        return self._snapshots

    # ──────────────────────────────────────────────
    # Event wiring
    # ──────────────────────────────────────────────

    def attach(self, bus: EventBus) -> None:
        """Start reacting to rate-updated events on a bus."""
        self._bus = bus
        bus.on(RATE_UPDATED, self.process)
        logger.info(
            "opportunity_detector_attached",
            threshold_apy=str(self._threshold),
            end_threshold_apy=str(self._end_threshold),
        )

    def detach(self) -> None:
        if self._bus is not None:
            self._bus.off(RATE_UPDATED, self.process)
            self._bus = None

    # ──────────────────────────────────────────────
    # Detection
    # ──────────────────────────────────────────────

    async def process(self, pair: FundingRatePair) -> DetectionResult:
        """Apply one symbol snapshot to the opportunity state machine.

        A failure while handling one exchange pair is logged and the remaining
        pairs are still processed.
        """
        self._snapshots += 1
        result = DetectionResult(symbol=pair.symbol)
        for evaluation in evaluate_pairs(pair):
            try:
                await self._apply(evaluation, result)
            except Exception:
                logger.error(
                    "opportunity_pair_failed",
                    symbol=evaluation.symbol,
                    long_exchange=evaluation.long_exchange,
                    short_exchange=evaluation.short_exchange,
                    exc_info=True,
                )
        return result

    async def _apply(self, evaluation: PairEvaluation, result: DetectionResult) -> None:
        quote = evaluation.quote

        if quote.apy >= self._threshold:
            opportunity, created = await self._store.upsert_active(
                evaluation.symbol,
                evaluation.long_exchange,
                evaluation.short_exchange,
                quote.spread,
                quote.apy,
                evaluation.long_interval_hours,
                evaluation.short_interval_hours,
            )
            if created:
                result.created.append(opportunity)
                await self._notify(opportunity, NotificationType.OPPORTUNITY_APPEARED)
            else:
                result.updated.append(opportunity)
                await self._notify(opportunity, NotificationType.OPPORTUNITY_UPDATED)
            return

        existing = await self._store.get_active(
            evaluation.symbol, evaluation.long_exchange, evaluation.short_exchange
        )
        if existing is None:
            return

        if quote.apy >= self._end_threshold:
            await self._store.touch_active(existing.id, quote.spread, quote.apy)
            result.held.append(existing.id)
            return

        existing.current_spread = quote.spread
        existing.current_apy = quote.apy
        await self._store.touch_active(existing.id, quote.spread, quote.apy)
        history = await self._store.end_opportunity(
            existing, DisappearReason.RATE_DROPPED, OpportunityStatus.EXPIRED
        )
        if history is not None:
            result.expired.append(existing)
            await self._notify(existing, NotificationType.OPPORTUNITY_DISAPPEARED)

    async def close_opportunity(
        self,
        opportunity_id: str,
        reason: DisappearReason = DisappearReason.MANUAL_CLOSE,
    ) -> Opportunity | None:
        """Close an ACTIVE opportunity on explicit user action.

        Returns:
            The closed opportunity, or None if it is unknown or no longer ACTIVE.
        """
        opportunity = await self._store.get(opportunity_id)
        if opportunity is None or opportunity.status != OpportunityStatus.ACTIVE:
            logger.debug("opportunity_close_skipped", opportunity_id=opportunity_id)
            return None
        history = await self._store.end_opportunity(
            opportunity, reason, OpportunityStatus.CLOSED
        )
        if history is None:
            return None
        await self._notify(opportunity, NotificationType.OPPORTUNITY_DISAPPEARED)
        return opportunity

    async def _notify(
        self, opportunity: Opportunity, notification_type: NotificationType
    ) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(opportunity, notification_type)
        except Exception:
            logger.error(
                "opportunity_notification_failed",
                opportunity_id=opportunity.id,
                notification_type=notification_type.value,
                exc_info=True,
            )
