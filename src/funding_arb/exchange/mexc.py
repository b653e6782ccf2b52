"""MEXC contract connector.

Contract details carry `collectCycle`, the funding cycle in hours.
"""

from funding_arb.exchange.ccxt_connector import CcxtConnector
from funding_arb.exchange.decoders import FundingRatePayload, MexcContractInfo, decode


class MexcConnector(CcxtConnector):
    """MEXC perpetuals via ccxt."""

    name = "mexc"
    exchange_id = "mexc"

    async def _fetch_native_interval(
        self, symbol: str, payload: FundingRatePayload
    ) -> int | None:
        info = decode(MexcContractInfo, payload.info, context=f"mexc:{symbol}")
        if info.collect_cycle is None:
            await self._ensure_markets()
            info = decode(MexcContractInfo, self._market_info(symbol), context=f"mexc:{symbol}")
        if info.collect_cycle:
            return info.collect_cycle
        return await super()._fetch_native_interval(symbol, payload)
