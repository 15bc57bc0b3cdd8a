"""
In-memory cache with TTL expiry.

Used for short-lived lookups such as the inference server's model catalog.
Entries are never written to disk and can only leave the cache by expiring.
"""

import time
from collections.abc import Callable
from typing import Any


class TTLCache:
    """Key/value store where every entry expires after a fixed time-to-live."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl_seconds: How long an entry stays valid after it is stored.
            clock: Monotonic time source (injectable for tests).
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def cache_data(self, key: str, data: Any) -> None:
        """Store data under *key*, stamped with the current time."""
        self._entries[key] = (self._clock(), data)

    def get_cached_data(self, key: str) -> Any | None:
        """Retrieve cached data if present and not expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, data = entry
        if self._clock() - stored_at < self.ttl_seconds:
            return data
        del self._entries[key]
        return None

    def age(self, key: str) -> float | None:
        """Seconds since *key* was stored, or None when absent."""
        entry = self._entries.get(key)
        return None if entry is None else self._clock() - entry[0]
