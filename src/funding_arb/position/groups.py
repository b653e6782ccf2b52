"""Position groups -- derived aggregation over positions sharing a group_id.

Groups are never stored. They are rebuilt from their OPEN members on demand
and vanish once no member is OPEN.
"""

from collections import defaultdict
from decimal import Decimal

from funding_arb.models import Position, PositionGroup, PositionStatus


def _weighted_average(pairs: list[tuple[Decimal, Decimal]]) -> Decimal | None:
    """Size-weighted average of (price, size) pairs, or None without sizes."""
    total_size = sum((size for _, size in pairs), Decimal("0"))
    if total_size <= 0:
        return None
    return sum((price * size for price, size in pairs), Decimal("0")) / total_size


def _bounds(values: list[Decimal]) -> tuple[Decimal | None, Decimal | None]:
    return (min(values), max(values)) if values else (None, None)


def aggregate_group(group_id: str, positions: list[Position]) -> PositionGroup | None:
    """Aggregate the OPEN members of one group.

    Returns:
        The group, or None when it has no OPEN member.
    """
    members = [
        p for p in positions
        if p.group_id == group_id and p.status == PositionStatus.OPEN
    ]
    if not members:
        return None

    first = members[0]
    long_legs = [
        (p.long_entry_price, p.long_size)
        for p in members
        if p.long_entry_price is not None and p.long_size is not None
    ]
    short_legs = [
        (p.short_entry_price, p.short_size)
        for p in members
        if p.short_entry_price is not None and p.short_size is not None
    ]
    funding = [p.cached_funding_pnl for p in members if p.cached_funding_pnl is not None]
    min_sl, max_sl = _bounds(
        [p.stop_loss_percent for p in members if p.stop_loss_percent is not None]
    )
    min_tp, max_tp = _bounds(
        [p.take_profit_percent for p in members if p.take_profit_percent is not None]
    )

    return PositionGroup(
        group_id=group_id,
        symbol=first.symbol,
        long_exchange=first.long_exchange,
        short_exchange=first.short_exchange,
        position_ids=[p.id for p in members],
        total_quantity=sum((p.quantity for p in members), Decimal("0")),
        avg_long_entry_price=_weighted_average(long_legs),  # type: ignore[arg-type]
        avg_short_entry_price=_weighted_average(short_legs),  # type: ignore[arg-type]
        total_funding_pnl=sum(funding, Decimal("0")) if funding else None,
        min_stop_loss_percent=min_sl,
        max_stop_loss_percent=max_sl,
        min_take_profit_percent=min_tp,
        max_take_profit_percent=max_tp,
    )


def build_groups(positions: list[Position]) -> list[PositionGroup]:
    """Every group with at least one OPEN member, oldest group first."""
    by_group: dict[str, list[Position]] = defaultdict(list)
    for position in positions:
        if position.group_id:
            by_group[position.group_id].append(position)

    groups = []
    for group_id, members in by_group.items():
        group = aggregate_group(group_id, members)
        if group is not None:
            groups.append(group)
    return groups
