"""Tests for funding rate normalization, annualization, cost model and splitting.

All test values use Decimal (project convention).
"""

from decimal import Decimal

import pytest

from funding_arb.config import CostSettings
from funding_arb.exceptions import ValidationError
from funding_arb.normalizer import (
    TOTAL_COST_RATE,
    annualized_return,
    detect_interval,
    is_profitable,
    net_cost,
    normalize,
    pair_spread,
    split_quantity,
)

HOUR_MS = 3_600_000


class TestNormalize:
    """Tests for interval conversion."""

    @pytest.mark.parametrize("hours", [1, 4, 8, 24])
    def test_identity_when_intervals_match(self, hours: int) -> None:
        rate = Decimal("0.000123")
        assert normalize(rate, hours, hours) == rate

    def test_eight_hour_to_one_hour(self) -> None:
        assert normalize(Decimal("0.0008"), 8, 1) == Decimal("0.0001")

    def test_one_hour_to_eight_hour(self) -> None:
        assert normalize(Decimal("0.0001"), 1, 8) == Decimal("0.0008")

    def test_negative_rate_keeps_sign(self) -> None:
        assert normalize(Decimal("-0.0004"), 4, 8) == Decimal("-0.0008")

    @pytest.mark.parametrize("from_hours,to_hours", [(0, 8), (-1, 8), (8, 0)])
    def test_non_positive_interval_raises(self, from_hours: int, to_hours: int) -> None:
        with pytest.raises(ValidationError):
            normalize(Decimal("0.0001"), from_hours, to_hours)


class TestDetectInterval:
    """Tests for settlement interval inference from timestamps."""

    @pytest.mark.parametrize("hours", [1, 4, 8])
    def test_two_timestamps(self, hours: int) -> None:
        t0 = 1_700_000_000_000
        assert detect_interval([t0, t0 + hours * HOUR_MS]) == hours

    def test_unsorted_input(self) -> None:
        t0 = 1_700_000_000_000
        assert detect_interval([t0 + 8 * HOUR_MS, t0]) == 8

    def test_rounds_to_nearest_hour(self) -> None:
        t0 = 1_700_000_000_000
        assert detect_interval([t0, t0 + 4 * HOUR_MS + 90_000]) == 4

    def test_most_common_delta_wins(self) -> None:
        t0 = 1_700_000_000_000
        stamps = [t0, t0 + 8 * HOUR_MS, t0 + 16 * HOUR_MS, t0 + 20 * HOUR_MS]
        assert detect_interval(stamps) == 8

    def test_fewer_than_two_timestamps(self) -> None:
        assert detect_interval([]) is None
        assert detect_interval([1_700_000_000_000]) is None

    def test_duplicate_timestamps(self) -> None:
        assert detect_interval([1_700_000_000_000, 1_700_000_000_000]) is None


class TestAnnualizedReturn:
    """Tests for APY projection."""

    def test_reference_value(self) -> None:
        assert annualized_return(Decimal("0.005"), 8) == Decimal("547.5")

    def test_one_hour_basis(self) -> None:
        assert annualized_return(Decimal("0.0001"), 1) == Decimal("87.6")

    def test_invalid_basis_raises(self) -> None:
        with pytest.raises(ValidationError):
            annualized_return(Decimal("0.001"), 0)


class TestPairSpread:
    """Tests for long/short spread on a common basis."""

    def test_short_minus_long(self) -> None:
        quote = pair_spread(Decimal("0.0001"), 8, Decimal("0.0008"), 8)
        assert quote.spread == Decimal("0.0007")
        assert quote.basis_hours == 8
        assert quote.apy == Decimal("76.65")

    def test_negative_when_long_leg_pays_more(self) -> None:
        quote = pair_spread(Decimal("0.0008"), 8, Decimal("0.0001"), 8)
        assert quote.spread == Decimal("-0.0007")
        assert quote.apy < 0

    def test_mixed_intervals_use_shorter_basis(self) -> None:
        # 0.0008 per 8h == 0.0001 per 1h, against 0.0003 per 1h
        quote = pair_spread(Decimal("0.0008"), 8, Decimal("0.0003"), 1)
        assert quote.basis_hours == 1
        assert quote.spread == Decimal("0.0002")


class TestCosts:
    """Tests for the round-trip cost model."""

    def test_default_total_is_037_percent(self) -> None:
        breakdown = net_cost()
        assert breakdown.trading_fees == Decimal("0.0020")
        assert breakdown.total_rate == Decimal("0.0037")
        assert TOTAL_COST_RATE == Decimal("0.0037")

    def test_amount_scales_with_size(self) -> None:
        assert net_cost(Decimal("1000")).total_amount == Decimal("3.7000")

    def test_custom_costs(self) -> None:
        costs = CostSettings(taker_fee=Decimal("0.001"))
        assert net_cost(costs=costs).total_rate == Decimal("0.0057")

    def test_profitable_is_strictly_greater(self) -> None:
        assert is_profitable(Decimal("0.0038"))
        assert not is_profitable(Decimal("0.0037"))
        assert not is_profitable(Decimal("0.0036"))
        assert not is_profitable(Decimal("-0.01"))


class TestSplitQuantity:
    """Tests for splitting an order into buckets."""

    def test_remainder_goes_to_first_bucket(self) -> None:
        assert split_quantity(Decimal("100"), 3) == [Decimal(34), Decimal(33), Decimal(33)]

    def test_single_bucket(self) -> None:
        assert split_quantity(Decimal("1.5"), 1) == [Decimal("1.5")]

    @pytest.mark.parametrize("count", range(1, 11))
    def test_sum_is_exact(self, count: int) -> None:
        total = Decimal("0.737")
        parts = split_quantity(total, count)
        assert len(parts) == count
        assert sum(parts) == total
        assert all(p > 0 for p in parts)

    def test_refines_unit_for_small_totals(self) -> None:
        parts = split_quantity(Decimal("1"), 3)
        assert parts == [Decimal("0.4"), Decimal("0.3"), Decimal("0.3")]

    def test_explicit_step_keeps_residue_in_first_bucket(self) -> None:
        parts = split_quantity(Decimal("1.05"), 2, step=Decimal("0.1"))
        assert parts == [Decimal("0.55"), Decimal("0.5")]
        assert sum(parts) == Decimal("1.05")

    def test_too_small_for_step_raises(self) -> None:
        with pytest.raises(ValidationError):
            split_quantity(Decimal("0.2"), 3, step=Decimal("0.1"))

    @pytest.mark.parametrize("total,count", [(Decimal("0"), 2), (Decimal("-1"), 2), (Decimal("1"), 0)])
    def test_invalid_input_raises(self, total: Decimal, count: int) -> None:
        with pytest.raises(ValidationError):
            split_quantity(total, count)
