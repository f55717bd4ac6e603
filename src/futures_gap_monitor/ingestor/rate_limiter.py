"""Sliding-window rate limiter shared by every outbound vendor call."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Vendor budgets
MAX_REQUESTS_PER_SECOND = 5
MAX_REQUESTS_PER_MINUTE = 300
MAX_REQUESTS_PER_HOUR = 18_000

SECOND = 1.0
MINUTE = 60.0
HOUR = 3600.0

# Added to every computed wait so a retry lands after the oldest call ages out.
WAIT_BUFFER_SECONDS = 0.1


@dataclass(frozen=True)
class RateLimiterStats:
    """Current usage of each window."""

    last_second: int
    last_minute: int
    last_hour: int
    max_per_second: int
    max_per_minute: int
    max_per_hour: int

    def to_dict(self) -> dict[str, dict[str, int]]:
        return {
            "second": {"used": self.last_second, "limit": self.max_per_second},
            "minute": {"used": self.last_minute, "limit": self.max_per_minute},
            "hour": {"used": self.last_hour, "limit": self.max_per_hour},
        }


class _Window:
    """Time-ordered timestamps of calls made within one rolling window."""

    __slots__ = ("length", "limit", "calls")

    def __init__(self, length: float, limit: int) -> None:
        self.length = length
        self.limit = limit
        self.calls: deque[float] = deque()

    def prune(self, now: float) -> None:
        cutoff = now - self.length
        while self.calls and self.calls[0] <= cutoff:
            self.calls.popleft()

    def is_full(self) -> bool:
        return len(self.calls) >= self.limit

    def wait_for_oldest(self, now: float) -> float:
        return self.length - (now - self.calls[0]) + WAIT_BUFFER_SECONDS


class SlidingWindowRateLimiter:
    """Enforces per-second, per-minute and per-hour call budgets.

    Every call site awaits :meth:`wait_for_slot` before contacting the vendor.
    The check and the record happen under one lock so two callers can never
    both take the last slot of a window; sleeping happens outside the lock.

    Example:
        >>> limiter = SlidingWindowRateLimiter()
        >>> await limiter.wait_for_slot()
        >>> response = await http.get(url)

    Args:
        per_second: Calls allowed in any rolling second.
        per_minute: Calls allowed in any rolling minute.
        per_hour: Calls allowed in any rolling hour.
        clock: Monotonic clock in seconds (injectable for tests).
        sleep: Coroutine used to wait (injectable for tests).
    """

    def __init__(
        self,
        *,
        per_second: int = MAX_REQUESTS_PER_SECOND,
        per_minute: int = MAX_REQUESTS_PER_MINUTE,
        per_hour: int = MAX_REQUESTS_PER_HOUR,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        # Checked in this order; the first violated window determines the wait.
        self._windows = (
            _Window(SECOND, per_second),
            _Window(MINUTE, per_minute),
            _Window(HOUR, per_hour),
        )
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        for window in self._windows:
            window.prune(now)

    def _wait_seconds(self, now: float) -> float:
        for window in self._windows:
            if window.is_full():
                return max(window.wait_for_oldest(now), 0.0)
        return 0.0

    def can_make_request(self) -> bool:
        """Return True if a call made now would respect every window."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            return not any(window.is_full() for window in self._windows)

    def get_wait_time(self) -> int:
        """Milliseconds until a call may be made (0 when one is allowed now)."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            return int(round(self._wait_seconds(now) * 1000))

    def try_acquire(self) -> float:
        """Record a call if every window allows it.

        Returns:
            0.0 when the call was recorded, otherwise the seconds to wait
            before trying again.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            wait = self._wait_seconds(now)
            if wait > 0:
                return wait
            for window in self._windows:
                window.calls.append(now)
            return 0.0

    async def wait_for_slot(self) -> None:
        """Wait until a call is allowed under all windows, then record it."""
        while True:
            wait = self.try_acquire()
            if wait <= 0:
                return
            logger.debug("Rate limit reached, waiting %.2fs", wait)
            await self._sleep(wait)

    def get_stats(self) -> RateLimiterStats:
        """Return current usage of each window."""
        with self._lock:
            self._prune(self._clock())
            second, minute, hour = self._windows
            return RateLimiterStats(
                last_second=len(second.calls),
                last_minute=len(minute.calls),
                last_hour=len(hour.calls),
                max_per_second=second.limit,
                max_per_minute=minute.limit,
                max_per_hour=hour.limit,
            )

    def reset(self) -> None:
        """Forget every recorded call."""
        with self._lock:
            for window in self._windows:
                window.calls.clear()
