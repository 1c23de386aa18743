import pytest

from voting_portal.api.idempotency import IdempotencyGuard, StoredResponse, is_recordable
from voting_portal.cache.credential_store import MemoryCredentialStore
from voting_portal.errors import ErrorCode, PortalError
from voting_portal.registry import build_breakers
from voting_portal.resilience.envelope import ResilienceEnvelope

KEY = "client-key-000000001"


class DownStore(MemoryCredentialStore):
    def set_if_absent(self, key, value, ttl):
        raise ConnectionError("redis down")


@pytest.fixture
def envelope(clock):
    return ResilienceEnvelope(build_breakers({}, clock=clock))


@pytest.fixture
def guard(clock, envelope):
    return IdempotencyGuard(MemoryCredentialStore(clock=clock), envelope, ttl=3600, pending_ttl=60)


def test_first_request_proceeds_and_is_recorded(guard):
    assert guard.begin("voter", "api.submit_vote", KEY) is None
    guard.complete("voter", "api.submit_vote", KEY, 201, {"vote_id": "abc"})
    assert guard.begin("voter", "api.submit_vote", KEY) == StoredResponse(201, {"vote_id": "abc"})


def test_in_flight_duplicate_is_refused(guard):
    guard.begin("voter", "api.submit_vote", KEY)
    with pytest.raises(PortalError) as excinfo:
        guard.begin("voter", "api.submit_vote", KEY)
    assert excinfo.value.code is ErrorCode.DUPLICATE_ENTRY


def test_pending_marker_expires(guard, clock):
    guard.begin("voter", "api.submit_vote", KEY)
    clock.advance(60)
    assert guard.begin("voter", "api.submit_vote", KEY) is None


def test_keys_are_scoped_by_caller_and_endpoint(guard):
    guard.begin("voter-a", "api.submit_vote", KEY)
    assert guard.begin("voter-b", "api.submit_vote", KEY) is None
    assert guard.begin("voter-a", "api.apply_bias", KEY) is None


def test_final_errors_are_replayed(guard):
    guard.begin("voter", "api.submit_vote", KEY)
    guard.fail("voter", "api.submit_vote", KEY, PortalError(ErrorCode.ALREADY_VOTED))
    stored = guard.begin("voter", "api.submit_vote", KEY)
    assert stored.status == 409
    assert stored.body["error"]["code"] == "ALREADY_VOTED"


def test_retryable_errors_release_the_key(guard):
    guard.begin("voter", "api.submit_vote", KEY)
    guard.fail("voter", "api.submit_vote", KEY, PortalError(ErrorCode.STORE_UNAVAILABLE, retry_after=30))
    assert guard.begin("voter", "api.submit_vote", KEY) is None


def test_store_outage_fails_open(clock, envelope):
    guard = IdempotencyGuard(DownStore(clock=clock), envelope)
    assert guard.begin("voter", "api.submit_vote", KEY) is None


def test_is_recordable():
    assert is_recordable(201, {"vote_id": "x"})
    assert is_recordable(204, None)
    assert not is_recordable(503, None)
    assert not is_recordable(429, {"error": {"retryable": True}})
    assert is_recordable(409, {"error": {"retryable": False}})
