"""Tests for the typed decode of ccxt payloads."""

from decimal import Decimal

from funding_arb.exchange.decoders import (
    BinanceFundingInfo,
    FundingRatePayload,
    MexcContractInfo,
    OkxFundingInfo,
    OrderPayload,
    TickerPayload,
    decode,
)


class TestFundingRatePayload:
    def test_numbers_become_decimal_via_string(self) -> None:
        payload = decode(
            FundingRatePayload,
            {
                "symbol": "BTC/USDT:USDT",
                "fundingRate": 0.0001,
                "markPrice": "50123.5",
                "fundingTimestamp": 1_700_000_000_000,
                "interval": "8h",
            },
        )
        assert payload.funding_rate == Decimal("0.0001")
        assert payload.mark_price == Decimal("50123.5")
        assert payload.funding_timestamp == 1_700_000_000_000
        assert payload.interval_hours() == 8

    def test_missing_fields_take_defaults(self) -> None:
        payload = decode(FundingRatePayload, {"symbol": "ETH/USDT:USDT"})
        assert payload.funding_rate is None
        assert payload.next_funding_timestamp is None
        assert payload.interval_hours() is None
        assert payload.info == {}

    def test_non_finite_and_garbage_numbers_are_none(self) -> None:
        payload = decode(
            FundingRatePayload,
            {"fundingRate": "NaN", "markPrice": "abc", "timestamp": ""},
        )
        assert payload.funding_rate is None
        assert payload.mark_price is None
        assert payload.timestamp is None

    def test_unparseable_interval(self) -> None:
        assert decode(FundingRatePayload, {"interval": "1d"}).interval_hours() is None

    def test_invalid_shape_degrades_to_defaults(self) -> None:
        payload = decode(FundingRatePayload, {"symbol": "BTC/USDT:USDT", "info": "oops"})
        assert payload == FundingRatePayload()

    def test_none_payload(self) -> None:
        assert decode(FundingRatePayload, None) == FundingRatePayload()


class TestTickerPayload:
    def test_best_price_prefers_mark(self) -> None:
        ticker = decode(TickerPayload, {"last": 100, "markPrice": 101})
        assert ticker.best_price() == Decimal("101")

    def test_best_price_falls_back_to_last(self) -> None:
        ticker = decode(TickerPayload, {"last": "99.5"})
        assert ticker.best_price() == Decimal("99.5")

    def test_no_price(self) -> None:
        assert decode(TickerPayload, {}).best_price() is None


class TestOrderPayload:
    def test_nested_fee(self) -> None:
        order = decode(
            OrderPayload,
            {
                "id": "123",
                "status": "closed",
                "filled": 0.5,
                "average": 50000,
                "fee": {"cost": 12.5, "currency": "USDT"},
                "unknownField": True,
            },
        )
        assert order.id == "123"
        assert order.filled == Decimal("0.5")
        assert order.fee is not None
        assert order.fee.cost == Decimal("12.5")


class TestVenueInfo:
    def test_binance_funding_info(self) -> None:
        info = decode(BinanceFundingInfo, {"symbol": "BTCUSDT", "fundingIntervalHours": 4})
        assert info.funding_interval_hours == 4

    def test_okx_funding_times(self) -> None:
        info = decode(OkxFundingInfo, {"fundingTime": "1700000000000", "nextFundingTime": "1700028800000"})
        assert info.next_funding_time - info.funding_time == 8 * 3_600_000

    def test_mexc_collect_cycle(self) -> None:
        assert decode(MexcContractInfo, {"collectCycle": 8}).collect_cycle == 8
        assert decode(MexcContractInfo, {}).collect_cycle is None
