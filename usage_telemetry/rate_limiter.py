"""
Sliding-window rate limiting for telemetry events.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

logger = logging.getLogger(__name__)


class TelemetryRateLimiter:
    """Admits at most max_events per trailing window."""

    WARNING_INTERVAL = 60.0  # Warn at most once per minute
    MAX_ARRAY_SIZE = 1000  # Hard cap on stored timestamps

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_events: int = 100,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            window_seconds: Length of the sliding window
            max_events: Admissions allowed per window
            clock: Monotonic time source (default: time.monotonic)
        """
        self.window_seconds = window_seconds
        self.max_events = max_events
        self._clock = clock or time.monotonic

        self._timestamps: Deque[float] = deque()
        self._dropped_events = 0
        self._last_warning_time: Optional[float] = None
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """
        Admit an event if the window has capacity.

        Returns:
            True if the event may proceed, False if rate limited
        """
        with self._lock:
            now = self._clock()
            self._cleanup(now)

            if len(self._timestamps) >= self.max_events:
                self._handle_rate_limit_hit(now)
                return False

            self._timestamps.append(now)
            self._enforce_cap(now)
            return True

    def would_allow(self) -> bool:
        """Check capacity without recording an admission."""
        with self._lock:
            self._cleanup(self._clock())
            return len(self._timestamps) < self.max_events

    def get_time_until_capacity(self) -> float:
        """
        Estimate seconds until capacity is available.

        Returns:
            0.0 if an event would be admitted now
        """
        with self._lock:
            now = self._clock()
            self._cleanup(now)

            if len(self._timestamps) < self.max_events:
                return 0.0

            oldest_relevant = self._timestamps[len(self._timestamps) - self.max_events]
            return max(0.0, oldest_relevant + self.window_seconds - now)

    def update_limits(
        self, window_seconds: Optional[float] = None, max_events: Optional[int] = None
    ) -> None:
        """Reconfigure limits at runtime. Non-positive values are ignored."""
        with self._lock:
            if window_seconds is not None and window_seconds > 0:
                self.window_seconds = window_seconds
            if max_events is not None and max_events > 0:
                self.max_events = max_events

        logger.debug(
            f"Rate limiter updated: {self.max_events} events per {self.window_seconds}s"
        )

    def get_stats(self) -> dict:
        """Get current usage statistics."""
        with self._lock:
            self._cleanup(self._clock())
            current = len(self._timestamps)

        return {
            "current_events": current,
            "max_events": self.max_events,
            "window_seconds": self.window_seconds,
            "dropped_events": self._dropped_events,
            "utilization_percent": round(current / self.max_events * 100),
            "remaining_capacity": max(0, self.max_events - current),
            "array_size": current,
            "max_array_size": self.MAX_ARRAY_SIZE,
        }

    @property
    def dropped_events(self) -> int:
        """Number of events rejected since the last reset."""
        return self._dropped_events

    def reset_dropped_count(self) -> None:
        self._dropped_events = 0

    def reset(self) -> None:
        """Clear all state."""
        with self._lock:
            self._timestamps.clear()
            self._dropped_events = 0
            self._last_warning_time = None

    def _should_warn(self, now: float) -> bool:
        if self._last_warning_time is None or now - self._last_warning_time > self.WARNING_INTERVAL:
            self._last_warning_time = now
            return True
        return False

    def _cleanup(self, now: float) -> None:
        """Drop timestamps outside the window and enforce the hard cap. Caller holds the lock."""
        window_start = now - self.window_seconds
        while self._timestamps and self._timestamps[0] < window_start:
            self._timestamps.popleft()

        self._enforce_cap(now)

    def _enforce_cap(self, now: float) -> None:
        excess = len(self._timestamps) - self.MAX_ARRAY_SIZE
        if excess > 0:
            for _ in range(excess):
                self._timestamps.popleft()

            if self._should_warn(now):
                logger.debug(
                    f"Rate limiter trimmed {excess} oldest timestamps "
                    f"({len(self._timestamps)}/{self.MAX_ARRAY_SIZE})"
                )

    def _handle_rate_limit_hit(self, now: float) -> None:
        self._dropped_events += 1

        if self._should_warn(now):
            logger.debug(
                f"Telemetry rate limit reached: {len(self._timestamps)}/{self.max_events} events "
                f"in {self.window_seconds}s window. Total dropped: {self._dropped_events}"
            )
