"""Supervisor for long-lived push subscriptions.

Each subscription key ("fundingRate:BTCUSDT", "positionUpdate:all", ...) owns
one asyncio task driving a receive step in a loop:

  RUNNING   step() is awaited repeatedly; on failure the error is logged,
            reported to on_error, and the loop waits retry_delay seconds
            before trying again, indefinitely.
  STOPPING  unsubscribe() was called; the loop exits at the next iteration
            boundary. If the task is still parked inside a receive after the
            grace period, it is cancelled.
  STOPPED   the task has finished and the key is free to be subscribed again.

The supervisor holds the only reference to each task, so repeated
subscribe/unsubscribe cycles never leave orphaned tasks behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from funding_arb.logging import get_logger

logger = get_logger(__name__)

StepFn = Callable[[], Awaitable[None]]
ErrorHook = Callable[[str, Exception], Awaitable[None] | None]


class SubscriptionState(str, Enum):
    """Lifecycle of one subscription task."""

    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class Subscription:
    """Book-keeping for one supervised subscription."""

    key: str
    state: SubscriptionState = SubscriptionState.RUNNING
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None  # type: ignore[type-arg]
    iterations: int = 0
    errors: int = 0


class SubscriptionSupervisor:
    """Owns every subscription task of one connector.

    Args:
        name: Owner name for log events (usually the exchange).
        retry_delay: Seconds to wait after a failed step.
        grace_period: Seconds unsubscribe() waits for a cooperative exit
            before cancelling the task.
        on_error: Optional hook called with (key, error) on each failure.
    """

    def __init__(
        self,
        name: str,
        retry_delay: float = 5.0,
        grace_period: float = 1.0,
        on_error: ErrorHook | None = None,
    ) -> None:
        self._name = name
        self._retry_delay = retry_delay
        self._grace_period = grace_period
        self._on_error = on_error
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(self, key: str, step: StepFn, pause: float = 0.0) -> bool:
        """Start a supervised loop for key.

        Args:
            key: Unique subscription key.
            step: Coroutine function performing one receive (or one poll).
            pause: Seconds to wait after each successful step. Zero for push
                streams, the poll interval for REST fallbacks.

        Returns:
            False if key already has a RUNNING subscription, True otherwise.
        """
        existing = self._subscriptions.get(key)
        if existing is not None and existing.state == SubscriptionState.RUNNING:
            logger.debug("subscription_already_running", owner=self._name, key=key)
            return False

        subscription = Subscription(key=key)
        subscription.task = asyncio.create_task(
            self._run(subscription, step, pause), name=f"{self._name}:{key}"
        )
        self._subscriptions[key] = subscription
        logger.info("subscription_started", owner=self._name, key=key, pause=pause)
        return True

    async def unsubscribe(self, key: str) -> bool:
        """Stop the subscription for key. Returns False if it was not running."""
        subscription = self._subscriptions.get(key)
        if subscription is None or subscription.state != SubscriptionState.RUNNING:
            return False

        subscription.state = SubscriptionState.STOPPING
        subscription.stop_event.set()

        task = subscription.task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=self._grace_period)
            if not done:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        subscription.state = SubscriptionState.STOPPED
        if self._subscriptions.get(key) is subscription:
            del self._subscriptions[key]
        logger.info(
            "subscription_stopped",
            owner=self._name,
            key=key,
            iterations=subscription.iterations,
            errors=subscription.errors,
        )
        return True

    async def stop_all(self) -> None:
        """Unsubscribe every key concurrently."""
        keys = list(self._subscriptions)
        if keys:
            await asyncio.gather(*[self.unsubscribe(k) for k in keys])

    def state(self, key: str) -> SubscriptionState:
        subscription = self._subscriptions.get(key)
        return subscription.state if subscription else SubscriptionState.STOPPED

    def is_running(self, key: str) -> bool:
        return self.state(key) == SubscriptionState.RUNNING

    @property
    def keys(self) -> list[str]:
        return [
            k for k, s in self._subscriptions.items()
            if s.state == SubscriptionState.RUNNING
        ]

    async def _run(self, subscription: Subscription, step: StepFn, pause: float) -> None:
        key = subscription.key
        while subscription.state == SubscriptionState.RUNNING:
            try:
                await step()
                subscription.iterations += 1
                wait = pause
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                subscription.errors += 1
                logger.warning(
                    "subscription_step_failed",
                    owner=self._name,
                    key=key,
                    error=str(exc),
                    retry_in=self._retry_delay,
                )
                await self._report(key, exc)
                wait = self._retry_delay

            if subscription.state != SubscriptionState.RUNNING:
                break
            if wait > 0:
                try:
                    await asyncio.wait_for(subscription.stop_event.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(0)

    async def _report(self, key: str, exc: Exception) -> None:
        if self._on_error is None:
            return
        try:
            result = self._on_error(key, exc)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.error("subscription_error_hook_failed", owner=self._name, key=key, exc_info=True)
