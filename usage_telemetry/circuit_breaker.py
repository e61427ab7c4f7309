"""
Circuit breaker guarding delivery to the telemetry backend.

closed -> open after failure_threshold consecutive failures.
open -> half_open on the first admission check after reset_timeout.
half_open -> closed after half_open_requests successes, or back to open
on any failure.
"""

import logging
import threading
import time
from typing import Callable, Optional

from usage_telemetry.schemas import CircuitBreakerStatus, CircuitState

logger = logging.getLogger(__name__)


class TelemetryCircuitBreaker:
    """Three-state gate that stops sending to a failing backend."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_requests: int = 3,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds after the last failure before probing
            half_open_requests: Trial admissions granted while half-open
            clock: Monotonic time source (default: time.monotonic)
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_requests = half_open_requests
        self._clock = clock or time.monotonic

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._half_open_trials = 0
        self._half_open_successes = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def should_allow(self) -> bool:
        """
        Check whether a delivery attempt may proceed.

        Performs the open -> half_open transition when the reset timeout
        has elapsed. Each True returned while half-open consumes one trial.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if not self._reset_timeout_elapsed():
                    return False
                self._state = CircuitState.HALF_OPEN
                self._half_open_trials = 0
                self._half_open_successes = 0
                logger.debug("Circuit breaker transitioning to half-open")

            if self._half_open_trials < self.half_open_requests:
                self._half_open_trials += 1
                return True
            return False

    def record_success(self) -> None:
        """Record a successful delivery attempt."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.half_open_requests:
                    self._close()
                    logger.debug("Circuit breaker closed after successful recovery")
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        """Record a failed delivery attempt."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.debug(f"Circuit breaker reopened from half-open state: {error}")
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._state = CircuitState.OPEN
                logger.debug(
                    f"Circuit breaker opened after {self._failure_count} failures: {error}"
                )

    def get_state(self) -> CircuitBreakerStatus:
        """Current state. can_retry is computed without changing state."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                can_retry = True
            elif self._state == CircuitState.OPEN:
                can_retry = self._reset_timeout_elapsed()
            else:
                can_retry = self._half_open_trials < self.half_open_requests

            return CircuitBreakerStatus(
                state=self._state,
                failure_count=self._failure_count,
                can_retry=can_retry,
            )

    def reset(self) -> None:
        """Force the circuit closed."""
        with self._lock:
            self._close()
            self._last_failure_time = None

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_trials = 0
        self._half_open_successes = 0

    def _reset_timeout_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time > self.reset_timeout
