"""Opportunity notifications.

Formats appeared/updated/disappeared messages and delivers them to the
configured channels. TERMINAL writes a human-readable line to a text stream,
LOG emits a structured log event. Every attempt, fired or suppressed by the
debouncer, is appended to the notification log.
"""

import sys
from decimal import Decimal
from typing import TextIO

from funding_arb.data.opportunity_store import OpportunityStore
from funding_arb.logging import get_logger
from funding_arb.models import (
    NotificationChannel,
    NotificationLogEntry,
    NotificationType,
    Opportunity,
)
from funding_arb.opportunity.debounce import DebounceManager

logger = get_logger(__name__)

_PERCENT = Decimal("0.01")

_TITLES = {
    NotificationType.OPPORTUNITY_APPEARED: "Opportunity appeared",
    NotificationType.OPPORTUNITY_UPDATED: "Opportunity updated",
    NotificationType.OPPORTUNITY_DISAPPEARED: "Opportunity ended",
}


def debounce_key(opportunity: Opportunity) -> str:
    return ":".join(opportunity.key)


def format_message(opportunity: Opportunity, notification_type: NotificationType) -> str:
    """One-line summary of an opportunity for humans."""
    spread_pct = (opportunity.current_spread * 100).quantize(Decimal("0.0001"))
    apy = opportunity.current_apy.quantize(_PERCENT)
    message = (
        f"{_TITLES[notification_type]}: {opportunity.symbol} "
        f"long {opportunity.long_exchange} / short {opportunity.short_exchange} "
        f"spread {spread_pct}% APY {apy}%"
    )
    if notification_type == NotificationType.OPPORTUNITY_DISAPPEARED:
        seconds = (opportunity.duration_ms or 0) // 1000
        reason = opportunity.disappear_reason.value if opportunity.disappear_reason else "-"
        message += (
            f" (max APY {opportunity.max_apy.quantize(_PERCENT)}%, "
            f"lasted {seconds}s, {reason})"
        )
    return message


class Notifier:
    """Debounced multi-channel notifier for opportunity events.

    Args:
        store: Store receiving notification log rows and notification counts.
        debounce: Per-opportunity debouncer for appeared/updated events.
        channels: Delivery channels.
        stream: Text stream for the TERMINAL channel (stdout by default).
    """

    def __init__(
        self,
        store: OpportunityStore | None = None,
        debounce: DebounceManager | None = None,
        channels: tuple[NotificationChannel, ...] = (
            NotificationChannel.TERMINAL,
            NotificationChannel.LOG,
        ),
        stream: TextIO | None = None,
    ) -> None:
        self._store = store
        self._debounce = debounce if debounce is not None else DebounceManager()
        self._channels = channels
        self._stream = stream
        self._sent = 0
        self._suppressed = 0

    @property
    def debounce(self) -> DebounceManager:
        return self._debounce

    @property
    def stats(self) -> dict[str, int]:
        return {"sent": self._sent, "suppressed": self._suppressed}

    async def notify(
        self, opportunity: Opportunity, notification_type: NotificationType
    ) -> bool:
        """Deliver a notification unless the debouncer suppresses it.

        Disappeared notifications always fire and reset the key's window.

        Returns:
            True if the notification was delivered.
        """
        key = debounce_key(opportunity)
        if notification_type == NotificationType.OPPORTUNITY_DISAPPEARED:
            fired = True
            skipped = self._debounce.take_skip_count(key)
            self._debounce.reset(key)
        else:
            fired = self._debounce.should_trigger(key)
            skipped = (
                self._debounce.take_skip_count(key)
                if fired
                else self._debounce.get_skip_count(key)
            )

        message = format_message(opportunity, notification_type)

        if fired:
            for channel in self._channels:
                self._deliver(channel, message, opportunity, notification_type)
            self._sent += 1
            opportunity.notification_count += 1
            if self._store is not None:
                await self._store.increment_notification_count(opportunity.id)
        else:
            self._suppressed += 1
            logger.debug(
                "notification_debounced",
                opportunity_id=opportunity.id,
                notification_type=notification_type.value,
                skipped=skipped,
            )

        if self._store is not None:
            for channel in self._channels:
                await self._store.append_notification(
                    NotificationLogEntry(
                        opportunity_id=opportunity.id,
                        symbol=opportunity.symbol,
                        long_exchange=opportunity.long_exchange,
                        short_exchange=opportunity.short_exchange,
                        notification_type=notification_type,
                        channel=channel,
                        message=message,
                        spread=opportunity.current_spread,
                        apy=opportunity.current_apy,
                        is_debounced=not fired,
                        debounce_skipped_count=skipped,
                    )
                )
        return fired

    def _deliver(
        self,
        channel: NotificationChannel,
        message: str,
        opportunity: Opportunity,
        notification_type: NotificationType,
    ) -> None:
        if channel == NotificationChannel.TERMINAL:
            stream = self._stream or sys.stdout
            try:
                stream.write(message + "\n")
                stream.flush()
            except OSError as exc:
                logger.warning("terminal_notification_failed", error=str(exc))
        elif channel == NotificationChannel.LOG:
            logger.info(
                "opportunity_notification",
                notification_type=notification_type.value,
                opportunity_id=opportunity.id,
                symbol=opportunity.symbol,
                long_exchange=opportunity.long_exchange,
                short_exchange=opportunity.short_exchange,
                spread=str(opportunity.current_spread),
                apy=str(opportunity.current_apy),
            )
