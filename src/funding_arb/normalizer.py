"""Funding rate normalization, annualization and cost-adjusted profitability.

Pure functions, Decimal arithmetic exclusively.

Venues settle funding on different cadences (1h, 4h, 8h, 24h), so raw rates
are not comparable. Rates are converted to a common basis before the spread
between two venues is taken:

  normalized = rate * to_hours / from_hours
  spread     = normalized(short leg) - normalized(long leg)
  apy        = spread * (8760 / basis_hours) * 100

A positive spread means the short leg receives more funding than the long leg
pays, i.e. the pair earns money. The same convention is used everywhere.
"""

from collections import Counter
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from funding_arb.config import CostSettings
from funding_arb.exceptions import ValidationError

_HOURS_PER_YEAR = Decimal("8760")  # 365 * 24
_MS_PER_HOUR = 3_600_000
_ONE = Decimal("1")

VALID_INTERVALS = (1, 4, 8, 24)
DEFAULT_INTERVAL_HOURS = 8


def normalize(rate: Decimal, from_hours: int, to_hours: int) -> Decimal:
    """Convert a per-interval funding rate to another settlement interval.

    Args:
        rate: Funding rate per from_hours interval.
        from_hours: The rate's native settlement interval.
        to_hours: Target interval.

    Returns:
        rate * to_hours / from_hours. Identity when the intervals match.

    Raises:
        ValidationError: If from_hours is not positive.
    """
    if from_hours <= 0:
        raise ValidationError(f"Invalid source interval: {from_hours}h")
    if to_hours <= 0:
        raise ValidationError(f"Invalid target interval: {to_hours}h")
    if from_hours == to_hours:
        return rate
    return rate * Decimal(to_hours) / Decimal(from_hours)


def detect_interval(timestamps_ms: list[int]) -> int | None:
    """Infer a settlement interval from funding timestamps.

    Consecutive deltas are rounded to the nearest hour and the most common
    value wins. Fewer than two timestamps is not an error: None is returned.
    """
    if len(timestamps_ms) < 2:
        return None

    ordered = sorted(timestamps_ms)
    hours = [
        round((later - earlier) / _MS_PER_HOUR)
        for earlier, later in zip(ordered, ordered[1:])
    ]
    hours = [h for h in hours if h > 0]
    if not hours:
        return None
    return Counter(hours).most_common(1)[0][0]


def annualized_return(spread: Decimal, basis_hours: int) -> Decimal:
    """Project a per-interval spread to a yearly percentage.

    annualized_return(Decimal("0.005"), 8) == Decimal("547.5")
    """
    if basis_hours <= 0:
        raise ValidationError(f"Invalid basis interval: {basis_hours}h")
    return spread * (_HOURS_PER_YEAR / Decimal(basis_hours)) * 100


@dataclass(frozen=True)
class SpreadQuote:
    """Spread between a long and a short leg on a common basis."""

    spread: Decimal
    basis_hours: int
    apy: Decimal


def pair_spread(
    long_rate: Decimal,
    long_interval_hours: int,
    short_rate: Decimal,
    short_interval_hours: int,
) -> SpreadQuote:
    """Compute the spread for going long on one venue and short on another.

    Both rates are normalized to the shorter of the two intervals.
    """
    basis = min(long_interval_hours, short_interval_hours)
    long_normalized = normalize(long_rate, long_interval_hours, basis)
    short_normalized = normalize(short_rate, short_interval_hours, basis)
    spread = short_normalized - long_normalized
    return SpreadQuote(
        spread=spread,
        basis_hours=basis,
        apy=annualized_return(spread, basis),
    )


@dataclass(frozen=True)
class CostBreakdown:
    """Round-trip cost of a two-venue position, as rates and as an amount."""

    trading_fees: Decimal  # taker fee on four fills (open+close, two venues)
    slippage: Decimal
    price_diff: Decimal
    safety_margin: Decimal
    total_rate: Decimal
    total_amount: Decimal  # total_rate * position_size


def net_cost(
    position_size: Decimal = _ONE, costs: CostSettings | None = None
) -> CostBreakdown:
    """Sum every cost component into one total-cost rate.

    Args:
        position_size: Notional the cost amount is computed for.
        costs: Cost model; defaults to CostSettings() (0.37% total).
    """
    costs = costs or CostSettings()
    trading_fees = costs.taker_fee * 4
    total_rate = trading_fees + costs.slippage + costs.price_diff + costs.safety_margin
    return CostBreakdown(
        trading_fees=trading_fees,
        slippage=costs.slippage,
        price_diff=costs.price_diff,
        safety_margin=costs.safety_margin,
        total_rate=total_rate,
        total_amount=total_rate * position_size,
    )


TOTAL_COST_RATE = net_cost().total_rate


def is_profitable(spread: Decimal, costs: CostSettings | None = None) -> bool:
    """A spread is profitable only when it strictly exceeds the total cost rate."""
    return spread > net_cost(costs=costs).total_rate


def split_quantity(
    total: Decimal, count: int, step: Decimal | None = None
) -> list[Decimal]:
    """Divide a quantity into count buckets that always sum exactly to total.

    Works in integer units of step. When no step is given, the unit is the
    smallest decimal place of total, refined by powers of ten until every
    bucket receives at least one unit. The remainder units go to the first
    buckets, so split_quantity(Decimal("100"), 3) == [34, 33, 33].

    Raises:
        ValidationError: On a non-positive total or count, or a bad step.
    """
    if count < 1:
        raise ValidationError(f"Split count must be at least 1, got {count}")
    if total <= 0:
        raise ValidationError(f"Quantity must be positive, got {total}")
    if count == 1:
        return [total]

    if step is None:
        exponent = min(0, total.normalize().as_tuple().exponent)
        step = _ONE.scaleb(exponent)
        while (total / step).to_integral_value(rounding=ROUND_DOWN) < count:
            step = step / 10
    elif step <= 0:
        raise ValidationError(f"Step must be positive, got {step}")

    units = int((total / step).to_integral_value(rounding=ROUND_DOWN))
    if units < count:
        raise ValidationError(
            f"Quantity {total} is too small to split into {count} parts of step {step}"
        )
    residue = total - step * units  # below one step; only with an explicit step

    base, remainder = divmod(units, count)
    parts = [step * (base + 1 if i < remainder else base) for i in range(count)]
    parts[0] += residue
    return parts
