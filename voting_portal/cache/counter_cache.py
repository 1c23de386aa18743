# voting_portal/cache/counter_cache.py

"""Per-contest tally cache.

One hash per contest, `tally:{contest_id}`:

    {nominee_id}        -> stored vote count
    bias:{nominee_id}   -> active bias amount
    order:{nominee_id}  -> display order, for tie-breaking
    __seeded__          -> "1" once the hash holds a full snapshot

Increments only apply to a seeded hash. After a clear, the next read
re-seeds the hash from the tally store, so a partially rebuilt hash is
never served.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

SEEDED_FIELD = "__seeded__"
BIAS_PREFIX = "bias:"
ORDER_PREFIX = "order:"

# Increment only when the hash exists, otherwise leave it to the next seed.
_GUARDED_INCREMENT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return redis.call('HINCRBY', KEYS[1], ARGV[1], ARGV[2])
end
return false
"""


def tally_key(contest_id: str) -> str:
    return f"tally:{contest_id}"


@dataclass
class CachedTally:
    """Stored counts, bias overlay and display order for one contest."""
    counts: Dict[str, int] = field(default_factory=dict)
    biases: Dict[str, int] = field(default_factory=dict)
    orders: Dict[str, int] = field(default_factory=dict)

    def observable(self) -> List[Tuple[str, int]]:
        """(nominee_id, count + bias) sorted by count desc, then display order, then id."""
        nominees = set(self.counts) | set(self.biases)
        rows = [(nominee_id, self.counts.get(nominee_id, 0) + self.biases.get(nominee_id, 0))
                for nominee_id in nominees]
        rows.sort(key=lambda row: (-row[1], self.orders.get(row[0], 0), row[0]))
        return rows

    def to_fields(self) -> Dict[str, str]:
        fields = {SEEDED_FIELD: "1"}
        for nominee_id, count in self.counts.items():
            fields[nominee_id] = str(int(count))
        for nominee_id, amount in self.biases.items():
            fields[BIAS_PREFIX + nominee_id] = str(int(amount))
        for nominee_id, order in self.orders.items():
            fields[ORDER_PREFIX + nominee_id] = str(int(order))
        return fields

    @classmethod
    def from_fields(cls, fields: Dict) -> Optional["CachedTally"]:
        decoded = {}
        for name, value in fields.items():
            if isinstance(name, bytes):
                name = name.decode()
            if isinstance(value, bytes):
                value = value.decode()
            decoded[name] = value
        if decoded.pop(SEEDED_FIELD, None) is None:
            return None
        tally = cls()
        for name, value in decoded.items():
            if name.startswith(BIAS_PREFIX):
                tally.biases[name[len(BIAS_PREFIX):]] = int(value)
            elif name.startswith(ORDER_PREFIX):
                tally.orders[name[len(ORDER_PREFIX):]] = int(value)
            else:
                tally.counts[name] = int(value)
        return tally


class CounterCache(ABC):

    @abstractmethod
    def increment(self, contest_id: str, nominee_id: str, amount: int = 1) -> Optional[int]:
        """Increment a seeded tally; returns None when the contest is not cached."""

    @abstractmethod
    def read(self, contest_id: str) -> Optional[CachedTally]:
        ...

    @abstractmethod
    def rewrite(self, contest_id: str, tally: CachedTally) -> None:
        """Atomically replace the whole hash (delete + set all fields)."""

    @abstractmethod
    def clear(self, contest_id: str) -> int:
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...


class RedisCounterCache(CounterCache):

    def __init__(self, client, ttl: int = 86400):
        self.client = client
        self.ttl = int(ttl)
        self._increment_script = client.register_script(_GUARDED_INCREMENT)

    def increment(self, contest_id, nominee_id, amount=1):
        result = self._increment_script(keys=[tally_key(contest_id)], args=[nominee_id, int(amount)])
        return None if result is None else int(result)

    def read(self, contest_id):
        fields = self.client.hgetall(tally_key(contest_id))
        if not fields:
            return None
        return CachedTally.from_fields(fields)

    def rewrite(self, contest_id, tally):
        key = tally_key(contest_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping=tally.to_fields())
        pipe.expire(key, self.ttl)
        pipe.execute()

    def clear(self, contest_id):
        return int(self.client.delete(tally_key(contest_id)))

    def ping(self):
        return bool(self.client.ping())


class MemoryCounterCache(CounterCache):

    def __init__(self, ttl: int = 86400, clock: Callable[[], float] = time.time):
        self.ttl = int(ttl)
        self._clock = clock
        self._lock = threading.Lock()
        self._hashes = {}  # key -> (fields, expires_at)

    def _live(self, key):
        entry = self._hashes.get(key)
        if entry is None:
            return None
        if self._clock() >= entry[1]:
            del self._hashes[key]
            return None
        return entry[0]

    def increment(self, contest_id, nominee_id, amount=1):
        with self._lock:
            fields = self._live(tally_key(contest_id))
            if fields is None:
                return None
            value = int(fields.get(nominee_id, "0")) + int(amount)
            fields[nominee_id] = str(value)
            return value

    def read(self, contest_id):
        with self._lock:
            fields = self._live(tally_key(contest_id))
            if not fields:
                return None
            return CachedTally.from_fields(dict(fields))

    def rewrite(self, contest_id, tally):
        with self._lock:
            self._hashes[tally_key(contest_id)] = (tally.to_fields(), self._clock() + self.ttl)

    def clear(self, contest_id):
        with self._lock:
            return 1 if self._hashes.pop(tally_key(contest_id), None) is not None else 0

    def ping(self):
        return True


class RepairHints:
    """Contests whose cached tally may be stale until the next rewrite."""

    def __init__(self):
        self._lock = threading.Lock()
        self._contests = set()

    def add(self, contest_id: str, reason: str = ""):
        with self._lock:
            self._contests.add(contest_id)
        logger.warning("Cache repair hint queued for contest %s %s", contest_id, reason)

    def discard(self, contest_id: str):
        with self._lock:
            self._contests.discard(contest_id)

    def __contains__(self, contest_id):
        with self._lock:
            return contest_id in self._contests

    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._contests)
