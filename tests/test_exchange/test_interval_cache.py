"""Tests for the shared funding interval cache."""

import time
from unittest.mock import patch

from funding_arb.exchange.interval_cache import FundingIntervalCache
from funding_arb.models import IntervalSource


def test_set_and_get() -> None:
    cache = FundingIntervalCache(ttl=60)
    cache.set("binance", "BTCUSDT", 4, IntervalSource.NATIVE_API)
    entry = cache.get("binance", "BTCUSDT")
    assert entry is not None
    assert entry.hours == 4
    assert entry.source == IntervalSource.NATIVE_API


def test_miss_returns_none() -> None:
    assert FundingIntervalCache().get("okx", "BTCUSDT") is None


def test_expired_entry_is_evicted() -> None:
    cache = FundingIntervalCache(ttl=10)
    now = time.time()
    with patch("funding_arb.exchange.interval_cache.time.time", return_value=now):
        cache.set("okx", "BTCUSDT", 8, IntervalSource.CALCULATED)
    with patch("funding_arb.exchange.interval_cache.time.time", return_value=now + 11):
        assert cache.get("okx", "BTCUSDT") is None
    assert len(cache) == 0


def test_explicit_ttl_overrides_default() -> None:
    cache = FundingIntervalCache(ttl=86400)
    entry = cache.set("mexc", "BTCUSDT", 8, IntervalSource.DEFAULT, ttl=5)
    assert entry.expires_at - time.time() <= 5


def test_set_many_and_invalidate_one_exchange() -> None:
    cache = FundingIntervalCache()
    stored = cache.set_many("gateio", {"BTCUSDT": 8, "ETHUSDT": 4}, IntervalSource.NATIVE_API)
    cache.set("bingx", "BTCUSDT", 1, IntervalSource.CALCULATED)
    assert stored == 2
    assert len(cache) == 3

    cache.invalidate("gateio")
    assert cache.get("gateio", "BTCUSDT") is None
    assert cache.get("bingx", "BTCUSDT") is not None

    cache.invalidate()
    assert len(cache) == 0
