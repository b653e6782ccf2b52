"""Process-wide funding interval cache shared by all connectors.

Entries are immutable (hours, source, expiry) snapshots keyed by
(exchange, canonical symbol). Concurrent writers can only make an entry
more or less fresh; they never leave a half-written value behind.
"""

import time
from dataclasses import dataclass

from funding_arb.models import IntervalSource


@dataclass(frozen=True)
class IntervalEntry:
    """A cached funding interval with provenance."""

    hours: int
    source: IntervalSource
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


class FundingIntervalCache:
    """TTL cache of funding intervals.

    Args:
        ttl: Lifetime in seconds for entries without an explicit TTL.
    """

    def __init__(self, ttl: float = 86400.0) -> None:
        self._ttl = ttl
        self._entries: dict[tuple[str, str], IntervalEntry] = {}

    def get(self, exchange: str, symbol: str) -> IntervalEntry | None:
        """Return the live entry for (exchange, symbol), evicting it if expired."""
        key = (exchange, symbol)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            self._entries.pop(key, None)
            return None
        return entry

    def set(
        self,
        exchange: str,
        symbol: str,
        hours: int,
        source: IntervalSource,
        ttl: float | None = None,
    ) -> IntervalEntry:
        entry = IntervalEntry(
            hours=hours,
            source=source,
            expires_at=time.time() + (self._ttl if ttl is None else ttl),
        )
        self._entries[(exchange, symbol)] = entry
        return entry

    def set_many(
        self,
        exchange: str,
        intervals: dict[str, int],
        source: IntervalSource,
    ) -> int:
        """Bulk insert intervals for one exchange. Returns the number stored."""
        for symbol, hours in intervals.items():
            self.set(exchange, symbol, hours, source)
        return len(intervals)

    def invalidate(self, exchange: str | None = None) -> None:
        """Drop all entries, or only those of one exchange."""
        if exchange is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k[0] == exchange]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
