from unittest.mock import MagicMock

import pytest

from voting_portal.cache.counter_cache import (
    SEEDED_FIELD, CachedTally, MemoryCounterCache, RedisCounterCache, RepairHints, tally_key,
)


@pytest.fixture
def snapshot():
    return CachedTally(counts={"a": 3, "b": 3, "c": 0}, biases={"c": 5}, orders={"a": 2, "b": 1, "c": 0})


def test_observable_adds_bias_and_sorts(snapshot):
    # ties broken by display order
    assert snapshot.observable() == [("c", 5), ("b", 3), ("a", 3)]


def test_fields_round_trip_with_bytes(snapshot):
    fields = {k.encode(): v.encode() for k, v in snapshot.to_fields().items()}
    assert CachedTally.from_fields(fields) == snapshot


def test_unseeded_hash_is_ignored():
    assert CachedTally.from_fields({"a": "1"}) is None


def test_memory_increment_requires_seed(clock):
    cache = MemoryCounterCache(ttl=60, clock=clock)
    assert cache.increment("c1", "a") is None
    assert cache.read("c1") is None

    cache.rewrite("c1", CachedTally(counts={"a": 1}))
    assert cache.increment("c1", "a") == 2
    assert cache.increment("c1", "b") == 1
    assert cache.read("c1").counts == {"a": 2, "b": 1}


def test_memory_clear_and_expiry(clock):
    cache = MemoryCounterCache(ttl=60, clock=clock)
    cache.rewrite("c1", CachedTally(counts={"a": 1}))
    assert cache.clear("c1") == 1
    assert cache.clear("c1") == 0
    cache.rewrite("c1", CachedTally(counts={"a": 1}))
    clock.advance(60)
    assert cache.read("c1") is None


def test_redis_increment_runs_guarded_script():
    client = MagicMock()
    script = client.register_script.return_value
    script.return_value = 4
    cache = RedisCounterCache(client, ttl=120)
    assert cache.increment("c1", "a") == 4
    script.assert_called_once_with(keys=[tally_key("c1")], args=["a", 1])

    script.return_value = None
    assert cache.increment("c1", "a") is None


def test_redis_rewrite_is_one_transaction(snapshot):
    client = MagicMock()
    pipe = client.pipeline.return_value
    cache = RedisCounterCache(client, ttl=120)
    cache.rewrite("c1", snapshot)
    client.pipeline.assert_called_once_with(transaction=True)
    pipe.delete.assert_called_once_with("tally:c1")
    mapping = pipe.hset.call_args.kwargs["mapping"]
    assert mapping[SEEDED_FIELD] == "1"
    assert mapping["bias:c"] == "5"
    pipe.expire.assert_called_once_with("tally:c1", 120)
    pipe.execute.assert_called_once()


def test_redis_read_empty_hash():
    client = MagicMock()
    client.hgetall.return_value = {}
    assert RedisCounterCache(client).read("c1") is None


def test_repair_hints():
    hints = RepairHints()
    hints.add("c2")
    hints.add("c1", "(increment failed)")
    assert "c1" in hints
    assert hints.pending() == ["c1", "c2"]
    hints.discard("c1")
    assert "c1" not in hints
