"""In-process event bus shared by connectors, the funding feed and monitors.

Listeners register per event name and may be plain callables or coroutine
functions. emit() fans an event out to every listener concurrently; a
listener that raises is logged and does not affect the others.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from funding_arb.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Awaitable[None] | None]


class EventBus:
    """Named-event fan-out with sync and async listeners."""

    def __init__(self, name: str = "events") -> None:
        self._name = name
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener for an event. Registering twice is a no-op."""
        listeners = self._listeners.setdefault(event, [])
        if listener not in listeners:
            listeners.append(listener)

    def off(self, event: str, listener: Listener) -> None:
        """Remove a listener if it is registered."""
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def emit(self, event: str, *args: Any) -> None:
        """Deliver an event to all listeners and wait for them to finish."""
        listeners = list(self._listeners.get(event, []))
        if not listeners:
            return

        results = await asyncio.gather(
            *[self._invoke(listener, args) for listener in listeners],
            return_exceptions=True,
        )
        for listener, result in zip(listeners, results):
            if isinstance(result, Exception):
                logger.error(
                    "event_listener_failed",
                    bus=self._name,
                    event_name=event,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(result),
                )

    async def _invoke(self, listener: Listener, args: tuple) -> None:
        result = listener(*args)
        if inspect.isawaitable(result):
            await result
