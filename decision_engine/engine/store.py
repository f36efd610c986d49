"""
Shared key/counter store used for cross-worker coordination.

Every operation is atomic on its own: dedupe keys are set-if-absent, counters are
incremented and compared in one step, and rolling windows admit a member only if
the window is under its cap. ``InMemoryStore`` guards its maps with one lock;
``RedisStore`` relies on single commands and Lua scripts.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import redis

logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
    """The backing store could not be reached or timed out."""


class KeyStore(Protocol):
    def set_nx(self, key: str, value: str, ttl_seconds: float) -> bool: ...

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: float) -> None: ...

    def incr(self, key: str, ttl_seconds: float) -> int: ...

    def increment_if_under(self, key: str, cap: int, ttl_seconds: float) -> bool: ...

    def get_count(self, key: str) -> int: ...

    def window_add(self, key: str, member: str, now: float, window_seconds: float,
                   cap: Optional[int] = None) -> bool: ...

    def window_members(self, key: str, now: float, window_seconds: float) -> List[str]: ...

    def ping(self) -> bool: ...


class InMemoryStore:
    """Single-process store with Redis semantics."""

    SWEEP_EVERY = 1000   # writes between purges of expired entries

    def __init__(self, clock: Callable[[], float] = time.time, sweep_every: int = SWEEP_EVERY):
        self._clock = clock
        self._lock = threading.Lock()
        self._store: Dict[str, Tuple[str, Optional[float]]] = {}      # key -> (value, expire_at)
        self._counters: Dict[str, Tuple[int, Optional[float]]] = {}   # key -> (count, expire_at)
        self._windows: Dict[str, Dict[str, float]] = {}                # key -> {member: ts}
        self._window_expiry: Dict[str, float] = {}
        self._sweep_every = sweep_every
        self._writes = 0

    def _is_expired(self, expire_at: Optional[float]) -> bool:
        return expire_at is not None and self._clock() >= expire_at

    def _wrote(self) -> None:
        # Caller holds the lock
        self._writes += 1
        if self._writes >= self._sweep_every:
            self._writes = 0
            self._purge()

    def _purge(self) -> int:
        now = self._clock()
        dead = [k for k, (_, exp) in self._store.items() if exp is not None and now >= exp]
        for key in dead:
            del self._store[key]
        dead_counters = [k for k, (_, exp) in self._counters.items() if exp is not None and now >= exp]
        for key in dead_counters:
            del self._counters[key]
        dead_windows = [k for k, exp in self._window_expiry.items() if now >= exp]
        for key in dead_windows:
            self._windows.pop(key, None)
            del self._window_expiry[key]
        return len(dead) + len(dead_counters) + len(dead_windows)

    def purge_expired(self) -> int:
        """Drop expired keys, counters and idle windows; returns how many went."""
        with self._lock:
            return self._purge()

    def set_nx(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Set only if not exists. Returns True if set, False if key existed."""
        with self._lock:
            entry = self._store.get(key)
            if entry and not self._is_expired(entry[1]):
                return False
            self._store[key] = (value, self._clock() + ttl_seconds)
            self._wrote()
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._store.get(key)
            if entry and not self._is_expired(entry[1]):
                return entry[0]
            if entry:
                del self._store[key]
            return None

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._store[key] = (value, self._clock() + ttl_seconds)
            self._wrote()

    def _live_count(self, key: str) -> Tuple[int, Optional[float]]:
        entry = self._counters.get(key)
        if not entry or self._is_expired(entry[1]):
            return 0, None
        return entry

    def incr(self, key: str, ttl_seconds: float) -> int:
        """Increment counter. Sets TTL only on first increment."""
        with self._lock:
            count, expire_at = self._live_count(key)
            if count == 0:
                expire_at = self._clock() + ttl_seconds
            self._counters[key] = (count + 1, expire_at)
            self._wrote()
            return count + 1

    def increment_if_under(self, key: str, cap: int, ttl_seconds: float) -> bool:
        with self._lock:
            count, expire_at = self._live_count(key)
            if count >= cap:
                return False
            if count == 0:
                expire_at = self._clock() + ttl_seconds
            self._counters[key] = (count + 1, expire_at)
            self._wrote()
            return True

    def get_count(self, key: str) -> int:
        with self._lock:
            return self._live_count(key)[0]

    def _trim(self, key: str, now: float, window_seconds: float) -> Dict[str, float]:
        cutoff = now - window_seconds
        members = {m: ts for m, ts in self._windows.get(key, {}).items() if ts > cutoff}
        if members:
            self._windows[key] = members
        else:
            self._windows.pop(key, None)
        return members

    def window_add(self, key: str, member: str, now: float, window_seconds: float,
                   cap: Optional[int] = None) -> bool:
        """Sorted-set semantics: re-adding a member moves it, it never counts twice."""
        with self._lock:
            members = self._trim(key, now, window_seconds)
            if cap is not None and member not in members and len(members) >= cap:
                return False
            members[member] = now
            self._windows[key] = members
            self._window_expiry[key] = self._clock() + window_seconds
            self._wrote()
            return True

    def window_members(self, key: str, now: float, window_seconds: float) -> List[str]:
        with self._lock:
            members = self._trim(key, now, window_seconds)
            return sorted(members, key=members.__getitem__)

    def ping(self) -> bool:
        return True


_INCR_IF_UNDER = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
    return 0
end
local value = redis.call('INCR', KEYS[1])
if value == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 1
"""

_WINDOW_ADD = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local cap = tonumber(ARGV[4])
if cap >= 0 and not redis.call('ZSCORE', KEYS[1], ARGV[3]) and redis.call('ZCARD', KEYS[1]) >= cap then
    return 0
end
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[3])
redis.call('PEXPIRE', KEYS[1], ARGV[5])
return 1
"""


class RedisStore:
    """redis-py backed store; errors surface as ``StoreUnavailable``."""

    def __init__(self, client: "redis.Redis", prefix: str = "nde:"):
        self.client = client
        self.prefix = prefix
        self._incr_if_under = client.register_script(_INCR_IF_UNDER)
        self._window_add = client.register_script(_WINDOW_ADD)

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 0.05, **kwargs) -> "RedisStore":
        client = redis.Redis.from_url(url, socket_timeout=socket_timeout, decode_responses=True)
        logger.info("Redis store configured at %s", url.split("@")[-1])
        return cls(client, **kwargs)

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _ms(seconds: float) -> int:
        return max(1, int(seconds * 1000))

    def set_nx(self, key: str, value: str, ttl_seconds: float) -> bool:
        try:
            return bool(self.client.set(self._k(key), value, nx=True, px=self._ms(ttl_seconds)))
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._k(key))
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        try:
            self.client.set(self._k(key), value, px=self._ms(ttl_seconds))
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def incr(self, key: str, ttl_seconds: float) -> int:
        try:
            pipe = self.client.pipeline()
            pipe.incr(self._k(key))
            pipe.pexpire(self._k(key), self._ms(ttl_seconds), nx=True)
            count, _ = pipe.execute()
            return int(count)
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def increment_if_under(self, key: str, cap: int, ttl_seconds: float) -> bool:
        try:
            return bool(self._incr_if_under(keys=[self._k(key)], args=[cap, self._ms(ttl_seconds)]))
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def get_count(self, key: str) -> int:
        try:
            return int(self.client.get(self._k(key)) or 0)
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def window_add(self, key: str, member: str, now: float, window_seconds: float,
                   cap: Optional[int] = None) -> bool:
        try:
            return bool(self._window_add(
                keys=[self._k(key)],
                args=[now - window_seconds, now, member, -1 if cap is None else cap,
                      self._ms(window_seconds)],
            ))
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def window_members(self, key: str, now: float, window_seconds: float) -> List[str]:
        try:
            return list(self.client.zrangebyscore(self._k(key), f"({now - window_seconds}", "+inf"))
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False
