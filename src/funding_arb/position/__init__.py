"""Position layer -- lifecycle, groups and background monitors."""

from funding_arb.position.conditional_monitor import ConditionalOrderMonitor, check_triggers
from funding_arb.position.exit_monitor import ExitSuggestionMonitor
from funding_arb.position.groups import aggregate_group, build_groups
from funding_arb.position.lifecycle import PositionLifecycleManager

__all__ = [
    "ConditionalOrderMonitor",
    "ExitSuggestionMonitor",
    "PositionLifecycleManager",
    "aggregate_group",
    "build_groups",
    "check_triggers",
]
