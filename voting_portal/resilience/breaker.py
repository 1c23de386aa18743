# voting_portal/resilience/breaker.py

import logging
import math
import threading
import time
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from voting_portal.errors import ErrorCode, PortalError

logger = logging.getLogger(__name__)


class BreakerState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Guard around one external dependency.

    CLOSED -> OPEN after `failure_threshold` consecutive unexpected failures.
    OPEN -> HALF_OPEN once `reset_timeout` seconds have passed since the last
    failure; a single probe call is then admitted. HALF_OPEN -> CLOSED on one
    success, back to OPEN on any unexpected failure.

    Errors matching one of `expected_errors` (exception classes or predicates)
    are re-raised untouched and do not count against the dependency.
    """

    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout: float = 30.0,
                 call_timeout: float = 5.0, expected_errors: Iterable = (),
                 clock: Callable[[], float] = time.monotonic):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self.expected_errors = tuple(expected_errors)
        self._clock = clock
        self._lock = threading.Lock()

        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._probe_in_flight = False

        self.stats = {
            "total_calls": 0,
            "total_failures": 0,
            "total_successes": 0,
            "short_circuited": 0,
        }

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def is_closed(self) -> bool:
        return self.state is BreakerState.CLOSED

    def retry_after(self) -> int:
        """Seconds until the breaker will admit a probe (at least 1)."""
        with self._lock:
            if self._state is BreakerState.OPEN and self._last_failure_at is not None:
                remaining = self.reset_timeout - (self._clock() - self._last_failure_at)
                return max(1, math.ceil(remaining))
            return max(1, math.ceil(self.reset_timeout))

    def is_expected(self, error: BaseException) -> bool:
        for expected in self.expected_errors:
            if isinstance(expected, type) and issubclass(expected, BaseException):
                if isinstance(error, expected):
                    return True
            elif callable(expected) and expected(error):
                return True
        return False

    def call(self, operation: Callable, fallback: Optional[Callable] = None):
        """Run `operation` under the breaker.

        When the breaker is OPEN the fallback result is returned, or
        SERVICE_UNAVAILABLE is raised when no fallback was supplied.
        """
        if not self._admit():
            if fallback is not None:
                logger.info("Circuit breaker %s OPEN, executing fallback", self.name)
                return fallback()
            raise PortalError(
                ErrorCode.SERVICE_UNAVAILABLE,
                f"{self.name} is temporarily unavailable",
                retry_after=self.retry_after(),
            )

        try:
            result = operation()
        except Exception as error:
            if self.is_expected(error):
                self._on_success()
            else:
                self._on_failure(error)
            raise
        self._on_success()
        return result

    def _maybe_half_open(self):
        # caller holds the lock
        if (self._state is BreakerState.OPEN
                and self._last_failure_at is not None
                and self._clock() - self._last_failure_at >= self.reset_timeout):
            self._state = BreakerState.HALF_OPEN
            self._probe_in_flight = False
            logger.warning("Circuit breaker %s transitioning to HALF_OPEN", self.name)

    def _admit(self) -> bool:
        with self._lock:
            self.stats["total_calls"] += 1
            self._maybe_half_open()
            if self._state is BreakerState.CLOSED:
                return True
            if self._state is BreakerState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return True
            self.stats["short_circuited"] += 1
            return False

    def _on_success(self):
        with self._lock:
            self.stats["total_successes"] += 1
            self._consecutive_failures = 0
            self._probe_in_flight = False
            if self._state is not BreakerState.CLOSED:
                self._state = BreakerState.CLOSED
                logger.warning("Circuit breaker %s reset to CLOSED after successful call", self.name)

    def _on_failure(self, error: BaseException):
        with self._lock:
            self.stats["total_failures"] += 1
            self._consecutive_failures += 1
            self._last_failure_at = self._clock()
            self._probe_in_flight = False
            if self._state is BreakerState.HALF_OPEN:
                self._state = BreakerState.OPEN
                logger.warning("Circuit breaker %s probe failed, back to OPEN: %s", self.name, error)
            elif (self._state is BreakerState.CLOSED
                  and self._consecutive_failures >= self.failure_threshold):
                self._state = BreakerState.OPEN
                logger.warning("Circuit breaker %s opened after %d failures: %s",
                               self.name, self._consecutive_failures, error)

    def reset(self):
        with self._lock:
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._last_failure_at = None
            self._probe_in_flight = False
        logger.info("Circuit breaker %s manually reset", self.name)

    def snapshot(self) -> Dict:
        with self._lock:
            self._maybe_half_open()
            calls = self.stats["total_calls"]
            failure_rate = (self.stats["total_failures"] / calls * 100) if calls else 0.0
            return {
                "state": self._state.value,
                "healthy": self._state is not BreakerState.OPEN,
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
                "failure_rate": round(failure_rate, 2),
                **self.stats,
            }


class BreakerRegistry:
    """Named breakers for one application instance."""

    def __init__(self):
        self._breakers: Dict[str, CircuitBreaker] = {}

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        if breaker.name in self._breakers:
            raise ValueError(f"Breaker {breaker.name!r} already registered")
        self._breakers[breaker.name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    def __contains__(self, name):
        return name in self._breakers

    def names(self):
        return list(self._breakers)

    def snapshot(self) -> Dict[str, Dict]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}
