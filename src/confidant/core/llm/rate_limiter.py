"""Self-imposed request budget for the inference server.

The upstream server publishes no pacing contract, so the gateway caps
itself at ``limit_per_minute`` admissions.  The window counters follow a
fixed one-minute window; a trailing log of admission times additionally
guarantees the budget holds over any rolling 60-second span, including
bursts straddling a window reset.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from confidant.core.exceptions import RateLimitedError

WINDOW_SECONDS = 60.0


@dataclass
class RateLimitWindow:
    """Mutable counters for the current one-minute window."""

    window_start: float
    requests_in_window: int = 0
    limit_per_minute: int = 60


class RateLimiter:
    """Rolling one-minute admission budget shared by every caller of a gateway.

    Not thread-safe; all calls are expected from a single event loop.
    """

    def __init__(self, limit_per_minute: int = 60, clock: Callable[[], float] = time.monotonic):
        if limit_per_minute < 1:
            raise ValueError(f"limit_per_minute must be positive, got {limit_per_minute}")
        self._clock = clock
        self.window = RateLimitWindow(window_start=clock(), limit_per_minute=limit_per_minute)
        self._admissions: deque[float] = deque()

    @property
    def limit_per_minute(self) -> int:
        return self.window.limit_per_minute

    def check_rate_limit(self) -> bool:
        """Return True when another request may be admitted right now.

        Resets the window once more than a minute has elapsed.  Never blocks
        and never records an admission.
        """
        now = self._clock()
        if now - self.window.window_start > WINDOW_SECONDS:
            self.window.requests_in_window = 0
            self.window.window_start = now
        self._prune(now)
        return (
            self.window.requests_in_window < self.window.limit_per_minute
            and len(self._admissions) < self.window.limit_per_minute
        )

    def record_request(self) -> None:
        """Count one admitted request against the budget."""
        self.window.requests_in_window += 1
        self._admissions.append(self._clock())

    def acquire(self) -> None:
        """Admit one request or raise :class:`RateLimitedError`.

        The error carries a ``retry_after`` hint in seconds.
        """
        if not self.check_rate_limit():
            retry_after = self.seconds_until_available()
            logger.debug(
                f"Rate limit reached ({self.window.requests_in_window}/{self.window.limit_per_minute}), "
                f"retry in {retry_after:.1f}s"
            )
            raise RateLimitedError(
                "Rate limit exceeded",
                retry_after=retry_after,
                layer="rate_limiter",
                context={"limit_per_minute": self.window.limit_per_minute},
            )
        self.record_request()

    def seconds_until_available(self) -> float:
        """Best-effort estimate of how long until the next admission."""
        now = self._clock()
        waits = [0.0]
        if self.window.requests_in_window >= self.window.limit_per_minute:
            waits.append(self.window.window_start + WINDOW_SECONDS - now)
        if len(self._admissions) >= self.window.limit_per_minute:
            waits.append(self._admissions[0] + WINDOW_SECONDS - now)
        return max(waits)

    def update_limit(self, limit_per_minute: int) -> None:
        """Change the budget at runtime; existing counts are kept."""
        if limit_per_minute < 1:
            raise ValueError(f"limit_per_minute must be positive, got {limit_per_minute}")
        logger.info(f"Rate limit changed: {self.window.limit_per_minute} -> {limit_per_minute} rpm")
        self.window.limit_per_minute = limit_per_minute

    def get_status(self) -> dict[str, float | int]:
        """Snapshot for metrics and health reporting."""
        self.check_rate_limit()
        return {
            "requests_per_minute": self.window.limit_per_minute,
            "current_requests": self.window.requests_in_window,
            "window_start": self.window.window_start,
            "admitted_last_minute": len(self._admissions),
        }

    def _prune(self, now: float) -> None:
        while self._admissions and now - self._admissions[0] >= WINDOW_SECONDS:
            self._admissions.popleft()
