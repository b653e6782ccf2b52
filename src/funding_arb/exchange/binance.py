"""Binance USDT-M futures connector.

Funding intervals come from GET /fapi/v1/fundingInfo, which only lists
symbols whose interval was adjusted away from the 8h default. The list is
loaded into the interval cache at connect time and kept for lookups of
symbols it does not mention.
"""

import time

from funding_arb.exchange.ccxt_connector import CcxtConnector
from funding_arb.exchange.decoders import BinanceFundingInfo, FundingRatePayload, decode
from funding_arb.exchange.symbols import from_venue_symbol
from funding_arb.logging import get_logger
from funding_arb.models import IntervalSource
from funding_arb.normalizer import DEFAULT_INTERVAL_HOURS, VALID_INTERVALS

logger = get_logger(__name__)


class BinanceConnector(CcxtConnector):
    """Binance perpetuals via ccxt (defaultType=future)."""

    name = "binance"
    exchange_id = "binance"
    default_type = "future"

    _funding_info: dict[str, int] | None = None
    _funding_info_loaded_at: float = 0.0

    async def _on_connected(self) -> None:
        await self._load_funding_info()

    async def _load_funding_info(self) -> dict[str, int]:
        raw = await self._call("fetch_funding_info", self._exchange.fapiPublicGetFundingInfo)
        intervals: dict[str, int] = {}
        for entry in raw or []:
            info = decode(BinanceFundingInfo, entry, context="binance:fundingInfo")
            if info.symbol and info.funding_interval_hours in VALID_INTERVALS:
                intervals[from_venue_symbol(self.name, info.symbol)] = info.funding_interval_hours

        self._funding_info = intervals
        self._funding_info_loaded_at = time.time()
        self._interval_cache.set_many(self.name, intervals, IntervalSource.NATIVE_API)
        logger.info("binance_funding_info_loaded", symbols=len(intervals))
        return intervals

    async def _fetch_native_interval(
        self, symbol: str, payload: FundingRatePayload
    ) -> int | None:
        stale = time.time() - self._funding_info_loaded_at > self._connector_settings.interval_cache_ttl
        intervals = self._funding_info
        if intervals is None or stale:
            intervals = await self._load_funding_info()
        # Symbols missing from fundingInfo settle on the default cadence
        return intervals.get(symbol, DEFAULT_INTERVAL_HOURS)
