"""Per-key notification debouncing.

The first event for a key fires and opens a window. Further events for that
key inside the window are suppressed and counted; the count is handed to the
next event that fires so its log entry records how many events it folds
together.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class _KeyState:
    window_started_at: float
    skipped: int = 0


class DebounceManager:
    """Independent debounce windows keyed by an arbitrary string.

    Args:
        window_seconds: Length of the suppression window after a fired event.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        window_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._state: dict[str, _KeyState] = {}

    @property
    def window_seconds(self) -> float:
        return self._window

    def should_trigger(self, key: str) -> bool:
        """Decide whether an event for key fires now.

        A suppressed event increments the key's skip count.
        """
        now = self._clock()
        state = self._state.get(key)
        if state is None or now - state.window_started_at >= self._window:
            skipped = state.skipped if state else 0
            self._state[key] = _KeyState(window_started_at=now, skipped=skipped)
            return True
        state.skipped += 1
        return False

    def get_skip_count(self, key: str) -> int:
        state = self._state.get(key)
        return state.skipped if state else 0

    def take_skip_count(self, key: str) -> int:
        """Return the skip count for key and reset it to zero."""
        state = self._state.get(key)
        if state is None:
            return 0
        skipped, state.skipped = state.skipped, 0
        return skipped

    def reset(self, key: str) -> None:
        """Forget all state for one key."""
        self._state.pop(key, None)

    def clear(self) -> None:
        """Forget all state for every key."""
        self._state.clear()

    def __len__(self) -> int:
        return len(self._state)
