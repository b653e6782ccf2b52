"""BingX perpetual swap connector.

BingX exposes no push stream for funding rates, so funding subscriptions
fall back to REST polling. The interval is measured from the two most
recent settlements and accepted only when it is 1, 4 or 8 hours.
"""

from funding_arb.exchange.ccxt_connector import CcxtConnector
from funding_arb.exchange.decoders import FundingRatePayload
from funding_arb.models import SubscriptionType

_MS_PER_HOUR = 3_600_000
_ACCEPTED = (1, 4, 8)


class BingxConnector(CcxtConnector):
    """BingX perpetuals via ccxt."""

    name = "bingx"
    exchange_id = "bingx"

    def supports_push(self, stream: SubscriptionType) -> bool:
        if stream == SubscriptionType.FUNDING_RATE:
            return False
        return super().supports_push(stream)

    async def _fetch_native_interval(
        self, symbol: str, payload: FundingRatePayload
    ) -> int | None:
        history = await self.fetch_funding_rate_history(symbol, limit=2)
        timestamps = sorted(h.timestamp for h in history if h.timestamp is not None)
        if len(timestamps) >= 2:
            hours = round((timestamps[-1] - timestamps[-2]) / _MS_PER_HOUR)
            if hours in _ACCEPTED:
                return hours
        return await super()._fetch_native_interval(symbol, payload)
