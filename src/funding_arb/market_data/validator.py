"""Sanity checks applied to funding rate samples before they enter the feed."""

from decimal import Decimal

from funding_arb.data.opportunity_store import OpportunityStore
from funding_arb.logging import get_logger
from funding_arb.models import FundingRateSample, FundingRateValidation
from funding_arb.normalizer import VALID_INTERVALS

logger = get_logger(__name__)


class FundingRateValidator:
    """Rejects samples with a non-finite rate, an absurd magnitude or an unknown interval.

    Rejections are logged and, when a store is given, written to the
    funding_rate_validations audit table. Accepted samples are not recorded.

    Args:
        max_abs_rate: Largest accepted |rate| per settlement interval.
        store: Optional store receiving audit rows for rejected samples.
    """

    def __init__(
        self,
        max_abs_rate: Decimal = Decimal("0.05"),
        store: OpportunityStore | None = None,
    ) -> None:
        self._max_abs_rate = max_abs_rate
        self._store = store
        self._rejected = 0

    @property
    def rejected_count(self) -> int:
        return self._rejected

    def check(self, sample: FundingRateSample) -> str | None:
        """Return a rejection reason, or None when the sample is acceptable."""
        if not isinstance(sample.rate, Decimal) or not sample.rate.is_finite():
            return "non-finite rate"
        if abs(sample.rate) > self._max_abs_rate:
            return f"|rate| exceeds {self._max_abs_rate}"
        if sample.interval_hours not in VALID_INTERVALS:
            return f"unsupported interval {sample.interval_hours}h"
        return None

    async def validate(self, sample: FundingRateSample) -> bool:
        """Check a sample and audit a rejection. Returns True if accepted."""
        reason = self.check(sample)
        if reason is None:
            return True

        self._rejected += 1
        logger.warning(
            "funding_rate_rejected",
            exchange=sample.exchange,
            symbol=sample.symbol,
            rate=str(sample.rate),
            interval_hours=sample.interval_hours,
            reason=reason,
        )
        if self._store is not None:
            await self._store.record_validation(
                FundingRateValidation(
                    exchange=sample.exchange,
                    symbol=sample.symbol,
                    raw_rate=str(sample.rate),
                    interval_hours=sample.interval_hours,
                    passed=False,
                    reason=reason,
                )
            )
        return False
