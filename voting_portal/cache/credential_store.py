# voting_portal/cache/credential_store.py

"""Key-value store backing credential revocation and replay tracking.

Two backends share one contract:

- RedisCredentialStore: production; `set_if_absent` is a single `SET NX EX`
  so concurrent callers on the same key are linearized by Redis.
- MemoryCredentialStore: single-process deployments and tests; a lock-guarded
  dict with lazily expired entries.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

INSTALLED = "installed"
ALREADY_PRESENT = "already_present"

# The window TTL is set by the same call that creates the counter.
_INCREMENT_WITH_TTL = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return value
"""


def blacklist_key(token_id: str) -> str:
    return f"blacklist:{token_id}"


def revoked_family_key(family_id: str) -> str:
    return f"revoked_family:{family_id}"


def used_refresh_key(token_id: str) -> str:
    return f"used_refresh:{token_id}"


def failed_auth_key(origin_hash: str) -> str:
    return f"failed_auth:{origin_hash}"


def idempotency_key(caller: str, endpoint: str, key: str) -> str:
    return f"idempotency:{caller}:{endpoint}:{key}"


class CredentialStore(ABC):

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl: int) -> str:
        """Atomically install `value` unless `key` exists. Returns INSTALLED or ALREADY_PRESENT."""

    @abstractmethod
    def set(self, key: str, value: str, ttl: int) -> None:
        ...

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def delete(self, key: str) -> int:
        ...

    @abstractmethod
    def increment(self, key: str, ttl_on_creation: int) -> int:
        """Increment a counter; the TTL is set only when the counter is created."""

    @abstractmethod
    def ping(self) -> bool:
        ...


def _check_ttl(ttl):
    ttl = int(ttl)
    if ttl < 1:
        raise ValueError("Credential store entries require a positive TTL")
    return ttl


class RedisCredentialStore(CredentialStore):

    def __init__(self, client):
        self.client = client
        self._increment_script = client.register_script(_INCREMENT_WITH_TTL)

    def set_if_absent(self, key, value, ttl):
        installed = self.client.set(key, value, ex=_check_ttl(ttl), nx=True)
        return INSTALLED if installed else ALREADY_PRESENT

    def set(self, key, value, ttl):
        self.client.set(key, value, ex=_check_ttl(ttl))

    def get(self, key):
        value = self.client.get(key)
        if isinstance(value, bytes):
            value = value.decode()
        return value

    def delete(self, key):
        return int(self.client.delete(key))

    def increment(self, key, ttl_on_creation):
        ttl = _check_ttl(ttl_on_creation)
        return int(self._increment_script(keys=[key], args=[ttl]))

    def ping(self):
        return bool(self.client.ping())


class MemoryCredentialStore(CredentialStore):
    """Expired entries are dropped when read and swept every `sweep_every` writes."""

    def __init__(self, clock: Callable[[], float] = time.time, sweep_every: int = 256):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = {}  # key -> (value, expires_at)
        self.sweep_every = sweep_every
        self._writes = 0

    def _store(self, key, value, expires_at):
        # caller holds the lock
        self._entries[key] = (value, expires_at)
        self._writes += 1
        if self._writes >= self.sweep_every:
            self._writes = 0
            self._sweep()

    def _sweep(self) -> int:
        # caller holds the lock
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _live(self, key):
        # caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry[1]:
            del self._entries[key]
            return None
        return entry

    def set_if_absent(self, key, value, ttl):
        ttl = _check_ttl(ttl)
        with self._lock:
            if self._live(key) is not None:
                return ALREADY_PRESENT
            self._store(key, value, self._clock() + ttl)
            return INSTALLED

    def set(self, key, value, ttl):
        ttl = _check_ttl(ttl)
        with self._lock:
            self._store(key, value, self._clock() + ttl)

    def get(self, key):
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def delete(self, key):
        with self._lock:
            if self._live(key) is None:
                return 0
            del self._entries[key]
            return 1

    def increment(self, key, ttl_on_creation):
        ttl = _check_ttl(ttl_on_creation)
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._store(key, "1", self._clock() + ttl)
                return 1
            value = int(entry[0]) + 1
            self._entries[key] = (str(value), entry[1])
            return value

    def ping(self):
        return True

    def purge_expired(self) -> int:
        with self._lock:
            return self._sweep()

    def __len__(self):
        with self._lock:
            return len(self._entries)
