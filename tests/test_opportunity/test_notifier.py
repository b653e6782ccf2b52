"""Tests for opportunity notification formatting, debouncing and logging."""

import io
import time
from decimal import Decimal

import pytest

from funding_arb.data.opportunity_store import OpportunityStore
from funding_arb.models import (
    DisappearReason,
    NotificationChannel,
    NotificationType,
    Opportunity,
    OpportunityStatus,
)
from funding_arb.opportunity.debounce import DebounceManager
from funding_arb.opportunity.notifier import Notifier, debounce_key, format_message


def _opportunity(**overrides) -> Opportunity:
    values = dict(
        id="opp-1",
        symbol="BTCUSDT",
        long_exchange="binance",
        short_exchange="okx",
        status=OpportunityStatus.ACTIVE,
        initial_spread=Decimal("0.0007"),
        current_spread=Decimal("0.0007"),
        max_spread=Decimal("0.0007"),
        max_spread_at=time.time(),
        min_spread=Decimal("0.0007"),
        initial_apy=Decimal("76.65"),
        current_apy=Decimal("76.65"),
        max_apy=Decimal("76.65"),
        long_interval_hours=8,
        short_interval_hours=8,
        detected_at=time.time(),
        spread_sum=Decimal("0.0007"),
        sample_count=1,
    )
    values.update(overrides)
    return Opportunity(**values)


def test_debounce_key() -> None:
    assert debounce_key(_opportunity()) == "BTCUSDT:binance:okx"


def test_format_appeared() -> None:
    message = format_message(_opportunity(), NotificationType.OPPORTUNITY_APPEARED)
    assert message == (
        "Opportunity appeared: BTCUSDT long binance / short okx "
        "spread 0.0700% APY 76.65%"
    )


def test_format_disappeared_includes_summary() -> None:
    opportunity = _opportunity(
        status=OpportunityStatus.EXPIRED,
        max_apy=Decimal("90"),
        duration_ms=125_000,
        disappear_reason=DisappearReason.RATE_DROPPED,
    )
    message = format_message(opportunity, NotificationType.OPPORTUNITY_DISAPPEARED)
    assert message.startswith("Opportunity ended: BTCUSDT")
    assert "max APY 90.00%" in message
    assert "lasted 125s" in message
    assert "RATE_DROPPED" in message


@pytest.mark.asyncio
async def test_terminal_channel_writes_line() -> None:
    stream = io.StringIO()
    notifier = Notifier(channels=(NotificationChannel.TERMINAL,), stream=stream)

    assert await notifier.notify(_opportunity(), NotificationType.OPPORTUNITY_APPEARED)
    assert stream.getvalue().endswith("APY 76.65%\n")
    assert notifier.stats == {"sent": 1, "suppressed": 0}


@pytest.mark.asyncio
async def test_updates_are_debounced_and_logged(
    opportunity_store: OpportunityStore,
) -> None:
    opportunity, _ = await opportunity_store.upsert_active(
        "BTCUSDT", "binance", "okx", Decimal("0.0007"), Decimal("76.65"), 8, 8
    )
    stream = io.StringIO()
    notifier = Notifier(
        store=opportunity_store,
        debounce=DebounceManager(window_seconds=60),
        channels=(NotificationChannel.TERMINAL,),
        stream=stream,
    )

    assert await notifier.notify(opportunity, NotificationType.OPPORTUNITY_APPEARED)
    assert not await notifier.notify(opportunity, NotificationType.OPPORTUNITY_UPDATED)
    assert not await notifier.notify(opportunity, NotificationType.OPPORTUNITY_UPDATED)

    assert stream.getvalue().count("\n") == 1
    assert notifier.stats == {"sent": 1, "suppressed": 2}

    logs = await opportunity_store.list_notifications(symbol="BTCUSDT")
    assert len(logs) == 3
    assert sum(1 for entry in logs if entry.is_debounced) == 2
    assert max(entry.debounce_skipped_count for entry in logs) == 2

    stored = await opportunity_store.get(opportunity.id)
    assert stored.notification_count == 1


@pytest.mark.asyncio
async def test_disappeared_always_fires_and_carries_skips(
    opportunity_store: OpportunityStore,
) -> None:
    opportunity = _opportunity()
    notifier = Notifier(
        store=opportunity_store,
        debounce=DebounceManager(window_seconds=60),
        channels=(NotificationChannel.LOG,),
    )

    await notifier.notify(opportunity, NotificationType.OPPORTUNITY_APPEARED)
    await notifier.notify(opportunity, NotificationType.OPPORTUNITY_UPDATED)
    assert await notifier.notify(opportunity, NotificationType.OPPORTUNITY_DISAPPEARED)

    logs = await opportunity_store.list_notifications()
    disappeared = [
        e for e in logs if e.notification_type == NotificationType.OPPORTUNITY_DISAPPEARED
    ]
    assert len(disappeared) == 1
    assert disappeared[0].is_debounced is False
    assert disappeared[0].debounce_skipped_count == 1
    assert len(notifier.debounce) == 0
    assert opportunity.notification_count == 2


@pytest.mark.asyncio
async def test_injected_debounce_window_is_honored() -> None:
    now = [1000.0]
    debounce = DebounceManager(window_seconds=600, clock=lambda: now[0])
    notifier = Notifier(debounce=debounce, channels=(NotificationChannel.LOG,))
    assert notifier.debounce is debounce
    opportunity = _opportunity()

    assert await notifier.notify(opportunity, NotificationType.OPPORTUNITY_APPEARED)
    now[0] += 100
    assert not await notifier.notify(opportunity, NotificationType.OPPORTUNITY_UPDATED)
    now[0] += 500
    assert await notifier.notify(opportunity, NotificationType.OPPORTUNITY_UPDATED)
    assert notifier.stats == {"sent": 2, "suppressed": 1}
