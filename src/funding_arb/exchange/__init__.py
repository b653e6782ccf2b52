"""Venue connector layer -- multi-exchange perpetual futures access via ccxt."""

from funding_arb.exchange.ccxt_connector import CcxtConnector
from funding_arb.exchange.client import VenueConnector
from funding_arb.exchange.factory import create_connector, create_connectors
from funding_arb.exchange.interval_cache import FundingIntervalCache

__all__ = [
    "CcxtConnector",
    "FundingIntervalCache",
    "VenueConnector",
    "create_connector",
    "create_connectors",
]
