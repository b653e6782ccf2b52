"""Gate.io USDT futures connector.

The contract metadata loaded with the markets carries `funding_interval`
in seconds.
"""

from funding_arb.exchange.ccxt_connector import CcxtConnector
from funding_arb.exchange.decoders import FundingRatePayload, GateioContractInfo, decode


class GateioConnector(CcxtConnector):
    """Gate.io perpetuals via ccxt."""

    name = "gateio"
    exchange_id = "gateio"

    async def _fetch_native_interval(
        self, symbol: str, payload: FundingRatePayload
    ) -> int | None:
        await self._ensure_markets()
        info = decode(GateioContractInfo, self._market_info(symbol), context=f"gateio:{symbol}")
        if info.funding_interval and info.funding_interval % 3600 == 0:
            return info.funding_interval // 3600
        return await super()._fetch_native_interval(symbol, payload)
