"""Tests for per-key debounce windows."""

import pytest

from funding_arb.opportunity.debounce import DebounceManager


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def test_first_event_fires_then_window_suppresses(clock: FakeClock) -> None:
    debounce = DebounceManager(window_seconds=30, clock=clock)

    assert debounce.should_trigger("BTCUSDT:binance:okx")
    clock.now += 10
    assert not debounce.should_trigger("BTCUSDT:binance:okx")
    assert not debounce.should_trigger("BTCUSDT:binance:okx")
    assert debounce.get_skip_count("BTCUSDT:binance:okx") == 2


def test_window_expiry_fires_and_keeps_skip_count(clock: FakeClock) -> None:
    debounce = DebounceManager(window_seconds=30, clock=clock)
    debounce.should_trigger("k")
    debounce.should_trigger("k")

    clock.now += 30
    assert debounce.should_trigger("k")
    assert debounce.take_skip_count("k") == 1
    assert debounce.get_skip_count("k") == 0


def test_keys_are_independent(clock: FakeClock) -> None:
    debounce = DebounceManager(window_seconds=30, clock=clock)
    assert debounce.should_trigger("a")
    assert debounce.should_trigger("b")
    assert not debounce.should_trigger("a")
    assert debounce.get_skip_count("b") == 0
    assert len(debounce) == 2


def test_reset_and_clear(clock: FakeClock) -> None:
    debounce = DebounceManager(window_seconds=30, clock=clock)
    debounce.should_trigger("a")
    debounce.should_trigger("b")

    debounce.reset("a")
    assert debounce.should_trigger("a")
    assert debounce.take_skip_count("missing") == 0

    debounce.clear()
    assert len(debounce) == 0
    assert debounce.should_trigger("b")
