# voting_portal/resilience/envelope.py

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple

from voting_portal.errors import ErrorCode, PortalError
from voting_portal.resilience.breaker import BreakerRegistry, BreakerState, CircuitBreaker

logger = logging.getLogger(__name__)

TALLY_STORE = "tally_store"
CACHE = "cache"
CREDENTIAL_STORE = "credential_store"
OBJECT_STORE = "object_store"
AUTHENTICATOR = "authenticator"
IDENTITY_PROVIDER = "identity_provider"

# breaker name -> code used when the dependency fails while the breaker is still closed
UNAVAILABLE_CODES = {
    TALLY_STORE: ErrorCode.STORE_UNAVAILABLE,
    CACHE: ErrorCode.CACHE_UNAVAILABLE,
    CREDENTIAL_STORE: ErrorCode.CACHE_UNAVAILABLE,
    OBJECT_STORE: ErrorCode.SERVICE_UNAVAILABLE,
    AUTHENTICATOR: ErrorCode.SERVICE_UNAVAILABLE,
    IDENTITY_PROVIDER: ErrorCode.SERVICE_UNAVAILABLE,
}


class Deadline:
    """Request deadline; outbound calls take the smaller of this and their own timeout."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0

    def bound(self, timeout: float) -> float:
        if self.expired():
            raise PortalError(ErrorCode.SERVICE_UNAVAILABLE, "Request deadline exceeded", retry_after=1)
        return min(timeout, self.remaining())


class LastKnownGood:
    """Small LRU of the most recent tallies served, used when the tally store is down."""

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, List[Tuple[str, int]]]" = OrderedDict()

    def remember(self, contest_id: str, tally: List[Tuple[str, int]]):
        with self._lock:
            self._entries[contest_id] = list(tally)
            self._entries.move_to_end(contest_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def recall(self, contest_id: str) -> Optional[List[Tuple[str, int]]]:
        with self._lock:
            tally = self._entries.get(contest_id)
            return list(tally) if tally is not None else None

    def __len__(self):
        with self._lock:
            return len(self._entries)


class ResilienceEnvelope:
    """Runs dependency calls through their breakers.

    Unexpected dependency errors come out as STORE_UNAVAILABLE /
    CACHE_UNAVAILABLE / SERVICE_UNAVAILABLE with retry_after drawn from the
    breaker's reset timeout. Expected errors (domain failures, constraint
    violations, rejected assertions) pass through unchanged.
    """

    def __init__(self, breakers: BreakerRegistry, last_known_good: LastKnownGood = None):
        self.breakers = breakers
        self.last_known_good = last_known_good or LastKnownGood()

    def _guard(self, name: str, operation: Callable, fallback: Optional[Callable] = None):
        breaker: CircuitBreaker = self.breakers.get(name)
        try:
            return breaker.call(operation, fallback)
        except PortalError:
            raise
        except Exception as error:
            if breaker.is_expected(error):
                raise
            logger.warning("Dependency %s failed: %s", name, error)
            if fallback is not None and breaker.state is BreakerState.OPEN:
                return fallback()
            raise PortalError(
                UNAVAILABLE_CODES.get(name, ErrorCode.SERVICE_UNAVAILABLE),
                retry_after=int(breaker.reset_timeout),
            ) from error

    def store(self, operation: Callable, fallback: Optional[Callable] = None):
        return self._guard(TALLY_STORE, operation, fallback)

    def cache(self, operation: Callable, fallback: Optional[Callable] = None):
        return self._guard(CACHE, operation, fallback)

    def credentials(self, operation: Callable):
        # no fallback: credential checks fail closed
        return self._guard(CREDENTIAL_STORE, operation)

    def authenticator(self, operation: Callable, fallback: Optional[Callable] = None):
        return self._guard(AUTHENTICATOR, operation, fallback)

    def identity(self, operation: Callable):
        return self._guard(IDENTITY_PROVIDER, operation)

    def object_store(self, operation: Callable):
        breaker = self.breakers.get(OBJECT_STORE)

        def retry_later():
            raise PortalError(
                ErrorCode.SERVICE_UNAVAILABLE,
                "Object storage temporarily unavailable",
                retry_after=breaker.retry_after(),
            )

        return self._guard(OBJECT_STORE, operation, retry_later)

    def cache_degraded(self) -> bool:
        # HALF_OPEN is not degraded: the next cache call is the trial call that can close the breaker
        return self.breakers.get(CACHE).state is BreakerState.OPEN

    def tally_fallback(self, contest_id: str) -> Callable:
        """Fallback for tally reads: last known good tally, or SERVICE_UNAVAILABLE."""
        def recall():
            tally = self.last_known_good.recall(contest_id)
            if tally is None:
                raise PortalError(
                    ErrorCode.SERVICE_UNAVAILABLE,
                    "Tally temporarily unavailable",
                    retry_after=self.breakers.get(TALLY_STORE).retry_after(),
                )
            logger.info("Serving last known good tally for contest %s", contest_id)
            return tally
        return recall
