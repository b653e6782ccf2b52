"""Persistence layer.

Provides the SQLite connection manager and typed stores for opportunities,
their audit trail, positions and realized trades.
"""

from funding_arb.data.database import ArbitrageDatabase
from funding_arb.data.opportunity_store import OpportunityStore
from funding_arb.data.position_store import PositionStore

__all__ = ["ArbitrageDatabase", "OpportunityStore", "PositionStore"]
