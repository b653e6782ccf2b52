"""Venue connector construction from application settings."""

from funding_arb.config import AppSettings
from funding_arb.exceptions import ValidationError
from funding_arb.exchange.binance import BinanceConnector
from funding_arb.exchange.bingx import BingxConnector
from funding_arb.exchange.ccxt_connector import CcxtConnector
from funding_arb.exchange.gateio import GateioConnector
from funding_arb.exchange.interval_cache import FundingIntervalCache
from funding_arb.exchange.mexc import MexcConnector
from funding_arb.exchange.okx import OkxConnector
from funding_arb.models import ExchangeName

CONNECTOR_CLASSES: dict[str, type[CcxtConnector]] = {
    ExchangeName.BINANCE.value: BinanceConnector,
    ExchangeName.OKX.value: OkxConnector,
    ExchangeName.GATEIO.value: GateioConnector,
    ExchangeName.MEXC.value: MexcConnector,
    ExchangeName.BINGX.value: BingxConnector,
}


def create_connector(
    name: str, settings: AppSettings, interval_cache: FundingIntervalCache
) -> CcxtConnector:
    """Build the connector for one venue."""
    connector_cls = CONNECTOR_CLASSES.get(name)
    if connector_cls is None:
        raise ValidationError(f"Unsupported exchange: {name}")
    return connector_cls(
        settings.venue(name),
        connector_settings=settings.connector,
        interval_cache=interval_cache,
    )


def create_connectors(
    settings: AppSettings, interval_cache: FundingIntervalCache
) -> dict[str, CcxtConnector]:
    """Build connectors for every enabled venue, sharing one interval cache."""
    return {
        name: create_connector(name, settings, interval_cache)
        for name in CONNECTOR_CLASSES
        if settings.venue(name).enabled
    }
