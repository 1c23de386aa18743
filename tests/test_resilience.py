import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from voting_portal.errors import ErrorCode, PortalError
from voting_portal.registry import build_breakers
from voting_portal.resilience.breaker import BreakerState
from voting_portal.resilience.envelope import (
    CACHE, OBJECT_STORE, TALLY_STORE, Deadline, LastKnownGood, ResilienceEnvelope,
)


def db_down():
    raise OperationalError("SELECT 1", {}, Exception("connection refused"))


@pytest.fixture
def envelope(clock):
    settings = {TALLY_STORE: {'failure_threshold': 2, 'reset_timeout': 30},
                OBJECT_STORE: {'failure_threshold': 1, 'reset_timeout': 60}}
    return ResilienceEnvelope(build_breakers(settings, clock=clock), LastKnownGood(max_entries=2))


def test_unexpected_store_error_becomes_store_unavailable(envelope):
    with pytest.raises(PortalError) as excinfo:
        envelope.store(db_down)
    assert excinfo.value.code is ErrorCode.STORE_UNAVAILABLE
    assert excinfo.value.retry_after == 30


def test_cache_error_becomes_cache_unavailable(envelope):
    def refused():
        raise ConnectionError("redis down")

    with pytest.raises(PortalError) as excinfo:
        envelope.cache(refused)
    assert excinfo.value.code is ErrorCode.CACHE_UNAVAILABLE


def test_domain_errors_pass_through(envelope):
    def constraint():
        raise IntegrityError("INSERT", {}, Exception("unique"))

    def closed():
        raise PortalError(ErrorCode.WINDOW_CLOSED)

    for _ in range(5):
        with pytest.raises(IntegrityError):
            envelope.store(constraint)
        with pytest.raises(PortalError) as excinfo:
            envelope.store(closed)
        assert excinfo.value.code is ErrorCode.WINDOW_CLOSED
    assert envelope.breakers.get(TALLY_STORE).state is BreakerState.CLOSED


def test_open_store_breaker_without_fallback(envelope):
    for _ in range(2):
        with pytest.raises(PortalError):
            envelope.store(db_down)
    with pytest.raises(PortalError) as excinfo:
        envelope.store(lambda: "never")
    assert excinfo.value.code is ErrorCode.SERVICE_UNAVAILABLE
    assert excinfo.value.retry_after == 30


def test_tally_fallback_serves_last_known_good(envelope):
    envelope.last_known_good.remember("c1", [("n1", 3)])
    for _ in range(2):
        with pytest.raises(PortalError):
            envelope.store(db_down)
    result = envelope.store(db_down, fallback=envelope.tally_fallback("c1"))
    assert result == [("n1", 3)]


def test_tally_fallback_without_snapshot(envelope):
    with pytest.raises(PortalError) as excinfo:
        envelope.tally_fallback("unknown")()
    assert excinfo.value.code is ErrorCode.SERVICE_UNAVAILABLE


def test_object_store_open_means_retry_later(envelope, clock):
    def timeout():
        raise TimeoutError("object store slow")

    with pytest.raises(PortalError) as first:
        envelope.object_store(timeout)
    assert first.value.code is ErrorCode.SERVICE_UNAVAILABLE
    clock.advance(20)
    with pytest.raises(PortalError) as second:
        envelope.object_store(lambda: "never")
    assert second.value.retry_after == 40


def test_cache_degraded_follows_breaker(envelope, clock):
    breaker = envelope.breakers.get(CACHE)
    assert envelope.cache_degraded() is False
    for _ in range(breaker.failure_threshold):
        with pytest.raises(PortalError):
            envelope.cache(db_down)
    assert envelope.cache_degraded() is True
    # once the reset timeout passes the cache is tried again
    clock.advance(breaker.reset_timeout)
    assert breaker.state is BreakerState.HALF_OPEN
    assert envelope.cache_degraded() is False
    assert envelope.cache(lambda: "pong") == "pong"
    assert breaker.state is BreakerState.CLOSED


def test_last_known_good_is_bounded():
    lkg = LastKnownGood(max_entries=2)
    lkg.remember("a", [("x", 1)])
    lkg.remember("b", [("y", 1)])
    lkg.remember("c", [("z", 1)])
    assert lkg.recall("a") is None
    assert lkg.recall("c") == [("z", 1)]
    assert len(lkg) == 2


def test_deadline_bounds_timeouts(clock):
    deadline = Deadline(10, clock=clock)
    assert deadline.bound(5) == 5
    clock.advance(8)
    assert deadline.bound(5) == pytest.approx(2)
    clock.advance(3)
    assert deadline.expired()
    with pytest.raises(PortalError) as excinfo:
        deadline.bound(5)
    assert excinfo.value.code is ErrorCode.SERVICE_UNAVAILABLE
