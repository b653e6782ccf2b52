"""Funding feed -- merges every venue's funding stream into per-symbol snapshots.

Each connector publishes `fundingRate` samples on its own bus (push stream or
REST polling fallback). The feed keeps only the latest sample per
(exchange, symbol) and marks the symbol dirty when a sample changes. A single
publisher task drains dirty symbols and emits one `rate-updated` event per
symbol carrying the full FundingRatePair.

Producers never wait on consumers: a burst of updates for one symbol while a
slow listener is running collapses into a single pending publish of the
latest state.
"""

import asyncio
import itertools
from decimal import Decimal

from funding_arb.events import EventBus
from funding_arb.exchange.client import VenueConnector
from funding_arb.logging import get_logger
from funding_arb.market_data.validator import FundingRateValidator
from funding_arb.models import BestPair, FundingRatePair, FundingRateSample, SubscriptionType
from funding_arb.normalizer import pair_spread

logger = get_logger(__name__)

RATE_UPDATED = "rate-updated"


def compute_best_pair(rates: dict[str, FundingRateSample]) -> BestPair | None:
    """Pick the long/short venue pair with the largest normalized spread.

    Every ordered pair of distinct exchanges is considered. Returns None when
    fewer than two exchanges have a sample.
    """
    best: BestPair | None = None
    for long_name, short_name in itertools.permutations(sorted(rates), 2):
        long_sample = rates[long_name]
        short_sample = rates[short_name]
        quote = pair_spread(
            long_sample.rate,
            long_sample.interval_hours,
            short_sample.rate,
            short_sample.interval_hours,
        )
        if best is not None and quote.spread <= best.spread:
            continue

        price_diff: Decimal | None = None
        if long_sample.mark_price and short_sample.mark_price:
            price_diff = (
                (short_sample.mark_price - long_sample.mark_price)
                / long_sample.mark_price
                * 100
            )
        best = BestPair(
            long_exchange=long_name,
            short_exchange=short_name,
            spread=quote.spread,
            basis_hours=quote.basis_hours,
            spread_annualized=quote.apy,
            price_diff_percent=price_diff,
        )
    return best


def _changed(previous: FundingRateSample | None, sample: FundingRateSample) -> bool:
    if previous is None:
        return True
    return (
        previous.rate != sample.rate
        or previous.interval_hours != sample.interval_hours
        or previous.next_settlement_at != sample.next_settlement_at
        or previous.mark_price != sample.mark_price
    )


class FundingFeed:
    """Aggregates venue funding streams and republishes per-symbol pairs.

    Events published on `events`:
        rate-updated(FundingRatePair)
    """

    def __init__(
        self,
        connectors: dict[str, VenueConnector],
        symbols: list[str],
        validator: FundingRateValidator | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._connectors = connectors
        self._symbols = list(symbols)
        self._validator = validator or FundingRateValidator()
        self._events = events or EventBus("funding_feed")
        self._latest: dict[str, dict[str, FundingRateSample]] = {}
        self._dirty: set[str] = set()
        self._wakeup = asyncio.Event()
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._published = 0

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def symbols(self) -> list[str]:
        return list(self._symbols)

    @property
    def published_count(self) -> int:
        return self._published

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Listen to every connector and start the funding subscriptions."""
        if self._running:
            logger.warning("funding_feed_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._publish_loop())

        for name, connector in self._connectors.items():
            connector.events.on("fundingRate", self.ingest)
            for symbol in self._symbols:
                try:
                    await connector.subscribe_ws(SubscriptionType.FUNDING_RATE, symbol)
                except Exception as exc:
                    logger.warning(
                        "funding_subscription_failed",
                        exchange=name,
                        symbol=symbol,
                        error=str(exc),
                    )
        logger.info(
            "funding_feed_started",
            exchanges=list(self._connectors),
            symbols=self._symbols,
        )

    async def stop(self) -> None:
        """Unsubscribe all funding streams and stop publishing."""
        self._running = False
        for connector in self._connectors.values():
            connector.events.off("fundingRate", self.ingest)
            for symbol in self._symbols:
                try:
                    await connector.unsubscribe_ws(SubscriptionType.FUNDING_RATE, symbol)
                except Exception:
                    logger.warning(
                        "funding_unsubscribe_failed",
                        exchange=connector.name,
                        symbol=symbol,
                        exc_info=True,
                    )

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("funding_feed_stopped", published=self._published)

    # ──────────────────────────────────────────────
    # Ingest and publish
    # ──────────────────────────────────────────────

    async def ingest(self, sample: FundingRateSample) -> bool:
        """Accept one sample from a connector.

        Returns:
            True if the sample was valid and changed the symbol's snapshot.
        """
        if not await self._validator.validate(sample):
            return False

        per_symbol = self._latest.setdefault(sample.symbol, {})
        if not _changed(per_symbol.get(sample.exchange), sample):
            per_symbol[sample.exchange] = sample
            return False

        per_symbol[sample.exchange] = sample
        self._dirty.add(sample.symbol)
        self._wakeup.set()
        return True

    async def publish_pending(self) -> int:
        """Emit rate-updated for every dirty symbol. Returns the number emitted."""
        emitted = 0
        while self._dirty:
            symbol = self._dirty.pop()
            pair = self.get_pair(symbol)
            if pair is None:
                continue
            await self._events.emit(RATE_UPDATED, pair)
            self._published += 1
            emitted += 1
        return emitted

    async def _publish_loop(self) -> None:
        while self._running:
            await self._wakeup.wait()
            self._wakeup.clear()
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("funding_feed_publish_error", exc_info=True)

    # ──────────────────────────────────────────────
    # Accessors
    # ──────────────────────────────────────────────

    def get_pair(self, symbol: str) -> FundingRatePair | None:
        """Current snapshot for a symbol, with its best pair recomputed."""
        rates = self._latest.get(symbol)
        if not rates:
            return None
        snapshot = dict(rates)
        return FundingRatePair(
            symbol=symbol,
            rates=snapshot,
            best_pair=compute_best_pair(snapshot),
            updated_at=max(s.recorded_at for s in snapshot.values()),
        )

    def get_all_pairs(self) -> list[FundingRatePair]:
        """Snapshots for every symbol seen so far, best spread first."""
        pairs = [p for p in (self.get_pair(s) for s in self._latest) if p is not None]
        return sorted(
            pairs,
            key=lambda p: p.best_pair.spread if p.best_pair else Decimal("-Infinity"),
            reverse=True,
        )

    def get_sample(self, exchange: str, symbol: str) -> FundingRateSample | None:
        return self._latest.get(symbol, {}).get(exchange)

    def drop_exchange(self, exchange: str) -> None:
        """Forget every sample from an exchange, e.g. after it disconnects."""
        touched = [s for s, rates in self._latest.items() if rates.pop(exchange, None)]
        self._dirty.update(touched)
        if touched:
            self._wakeup.set()
        logger.info("funding_feed_exchange_dropped", exchange=exchange, symbols=len(touched))

