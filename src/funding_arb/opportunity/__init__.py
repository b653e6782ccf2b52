"""Opportunity detection -- state machine, debouncing and notifications."""

from funding_arb.opportunity.debounce import DebounceManager
from funding_arb.opportunity.detector import DetectionResult, OpportunityDetector, evaluate_pairs
from funding_arb.opportunity.notifier import Notifier, format_message

__all__ = [
    "DebounceManager",
    "DetectionResult",
    "Notifier",
    "OpportunityDetector",
    "evaluate_pairs",
    "format_message",
]
