"""Market data layer -- funding rate aggregation and sample validation."""

from funding_arb.market_data.funding_feed import RATE_UPDATED, FundingFeed, compute_best_pair
from funding_arb.market_data.validator import FundingRateValidator

__all__ = ["RATE_UPDATED", "FundingFeed", "FundingRateValidator", "compute_best_pair"]
