"""Stop-loss / take-profit monitor for OPEN positions.

One long-lived polling task per process, owned by an explicitly constructed
ConditionalOrderMonitor handle. Each scan loads the OPEN positions that carry
a stop-loss or take-profit percent, fetches live prices for both legs and
closes any position whose threshold was crossed, through the same close path
as a manual close.

Per-leg trigger prices:
    long  SL  entry * (1 - sl%)    price <= trigger
    long  TP  entry * (1 + tp%)    price >= trigger
    short SL  entry * (1 + sl%)    price >= trigger
    short TP  entry * (1 - tp%)    price <= trigger
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal

from funding_arb.data.position_store import PositionStore
from funding_arb.exchange.client import VenueConnector
from funding_arb.logging import get_logger
from funding_arb.models import CloseReason, Position, TriggerType
from funding_arb.position.lifecycle import PositionLifecycleManager

logger = get_logger(__name__)

_HUNDRED = Decimal("100")
_STOP_LOSS_TRIGGERS = (TriggerType.LONG_SL, TriggerType.SHORT_SL)


@dataclass(frozen=True)
class MonitorStatus:
    """Snapshot of the monitor handle's state."""

    running: bool
    interval_seconds: float
    scans: int
    triggers: int
    errors: int
    last_scan_at: float | None


def check_triggers(
    position: Position, long_price: Decimal, short_price: Decimal
) -> list[TriggerType]:
    """Thresholds crossed by the given prices, stop-loss triggers first."""
    triggered: list[TriggerType] = []
    sl = position.stop_loss_percent
    tp = position.take_profit_percent
    long_entry = position.long_entry_price
    short_entry = position.short_entry_price

    if sl is not None:
        if long_entry is not None and long_price <= long_entry * (1 - sl / _HUNDRED):
            triggered.append(TriggerType.LONG_SL)
        if short_entry is not None and short_price >= short_entry * (1 + sl / _HUNDRED):
            triggered.append(TriggerType.SHORT_SL)
    if tp is not None:
        if long_entry is not None and long_price >= long_entry * (1 + tp / _HUNDRED):
            triggered.append(TriggerType.LONG_TP)
        if short_entry is not None and short_price <= short_entry * (1 - tp / _HUNDRED):
            triggered.append(TriggerType.SHORT_TP)
    return triggered


def close_reason_for(triggers: list[TriggerType]) -> CloseReason:
    if any(t in _STOP_LOSS_TRIGGERS for t in triggers):
        return CloseReason.STOP_LOSS
    return CloseReason.TAKE_PROFIT


class ConditionalOrderMonitor:
    """Owned handle for the stop-loss/take-profit polling task.

    Create one at process start and pass it to whoever needs its status.
    start() on a running monitor is a no-op; stop() lets the scan in progress
    finish before the task exits.

    Args:
        lifecycle: Manager used to close triggered positions.
        store: Position store for loading candidates.
        connectors: Venue connectors by exchange name, for live prices.
        interval: Seconds between scans.
    """

    def __init__(
        self,
        lifecycle: PositionLifecycleManager,
        store: PositionStore,
        connectors: dict[str, VenueConnector],
        interval: float = 30.0,
    ) -> None:
        self._lifecycle = lifecycle
        self._store = store
        self._connectors = connectors
        self._interval = interval
        self._running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._scans = 0
        self._triggers = 0
        self._errors = 0
        self._last_scan_at: float | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> MonitorStatus:
        return MonitorStatus(
            running=self._running,
            interval_seconds=self._interval,
            scans=self._scans,
            triggers=self._triggers,
            errors=self._errors,
            last_scan_at=self._last_scan_at,
        )

    async def start(self) -> None:
        """Start the polling task. Calling it again while running does nothing."""
        if self._running:
            logger.debug("conditional_monitor_already_running")
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="conditional-order-monitor")
        logger.info("conditional_monitor_started", interval=self._interval)

    async def stop(self) -> None:
        """Signal the task to stop and wait for the in-flight scan to finish."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(
            "conditional_monitor_stopped",
            scans=self._scans,
            triggers=self._triggers,
        )

    async def _run(self) -> None:
        while self._running:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._errors += 1
                logger.error("conditional_scan_failed", exc_info=True)

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def scan_once(self) -> list[tuple[str, list[TriggerType]]]:
        """Check every candidate position once.

        Returns:
            (position_id, triggers) for each position that was closed or
            attempted to be closed.
        """
        positions = await self._store.list_with_conditions()
        fired: list[tuple[str, list[TriggerType]]] = []

        for position in positions:
            try:
                triggers = await self._check_position(position)
            except Exception as exc:
                self._errors += 1
                logger.warning(
                    "conditional_check_failed",
                    position_id=position.id,
                    error=str(exc),
                )
                continue
            if not triggers:
                continue

            self._triggers += 1
            fired.append((position.id, triggers))
            reason = close_reason_for(triggers)
            logger.warning(
                "conditional_order_triggered",
                position_id=position.id,
                triggers=[t.value for t in triggers],
                reason=reason.value,
            )
            try:
                await self._lifecycle.close_position(position.id, reason=reason)
            except Exception as exc:
                self._errors += 1
                logger.error(
                    "conditional_close_failed",
                    position_id=position.id,
                    error=str(exc),
                )

        self._scans += 1
        self._last_scan_at = time.time()
        logger.debug("conditional_scan_complete", checked=len(positions), fired=len(fired))
        return fired

    async def _check_position(self, position: Position) -> list[TriggerType]:
        long_connector = self._connectors.get(position.long_exchange)
        short_connector = self._connectors.get(position.short_exchange)
        if long_connector is None or short_connector is None:
            return []
        long_price, short_price = await asyncio.gather(
            long_connector.get_price(position.symbol),
            short_connector.get_price(position.symbol),
        )
        return check_triggers(position, long_price, short_price)
