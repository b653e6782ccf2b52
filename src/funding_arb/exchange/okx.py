"""OKX perpetual swap connector.

OKX does not publish the interval directly; it is the distance between the
current and next funding times in the funding rate payload, snapped to
{1, 4, 8}h with half an hour of tolerance.
"""

from funding_arb.exchange.ccxt_connector import CcxtConnector, snap_interval
from funding_arb.exchange.decoders import FundingRatePayload, OkxFundingInfo, decode

_MS_PER_HOUR = 3_600_000


class OkxConnector(CcxtConnector):
    """OKX linear swaps via ccxt. Requires an API passphrase for private calls."""

    name = "okx"
    exchange_id = "okx"

    async def _fetch_native_interval(
        self, symbol: str, payload: FundingRatePayload
    ) -> int | None:
        info = decode(OkxFundingInfo, payload.info, context=f"okx:{symbol}")
        if info.funding_time and info.next_funding_time:
            hours = abs(info.next_funding_time - info.funding_time) / _MS_PER_HOUR
            snapped = snap_interval(hours)
            if snapped is not None:
                return snapped
        return await super()._fetch_native_interval(symbol, payload)
