"""
History store — key/value with per-key TTL, counters and capped recent lists.

InMemoryHistoryStore simulates the Redis semantics the engine relies on
(SET NX, DEL, INCR + EXPIRE, DECR, LPUSH + LTRIM, TTL). In production: back the
HistoryStore protocol with redis-py calls.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from notification_triage.engine.errors import DependencyUnavailable


class HistoryStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    def set_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> None: ...

    def incr(self, key: str, ttl_seconds: float) -> int: ...

    def decr(self, key: str) -> int: ...

    def get_count(self, key: str) -> int: ...

    def ttl(self, key: str) -> Optional[float]: ...

    def push_recent(self, key: str, value: Any, max_len: int, ttl_seconds: float) -> None: ...

    def get_recent(self, key: str) -> List[Any]: ...


class InMemoryHistoryStore:
    """
    Every public method is a single atomic operation under one lock,
    matching one Redis round-trip. Set `available = False` to simulate
    an outage: every call then raises DependencyUnavailable.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[Any, Optional[float]]] = {}    # key -> (value, expire_at)
        self._counters: Dict[str, Tuple[int, Optional[float]]] = {}  # key -> (count, expire_at)
        self._lists: Dict[str, Tuple[List[Any], Optional[float]]] = {}
        self.available = True

    def _check(self):
        if not self.available:
            raise DependencyUnavailable("history store", "connection refused")

    def _is_expired(self, expire_at: Optional[float]) -> bool:
        return expire_at is not None and self._clock() >= expire_at

    def _live(self, table: dict, key: str):
        entry = table.get(key)
        if entry is None:
            return None
        if self._is_expired(entry[1]):
            del table[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        self._check()
        with self._lock:
            entry = self._live(self._values, key)
            return entry[0] if entry else None

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._check()
        with self._lock:
            self._values[key] = (value, self._clock() + ttl_seconds)

    def set_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
        """Set only if not exists. Returns True if set, False if key existed."""
        self._check()
        with self._lock:
            if self._live(self._values, key):
                return False
            self._values[key] = (value, self._clock() + ttl_seconds)
            return True

    def exists(self, key: str) -> bool:
        self._check()
        with self._lock:
            return self._live(self._values, key) is not None

    def delete(self, key: str) -> None:
        self._check()
        with self._lock:
            self._values.pop(key, None)
            self._counters.pop(key, None)
            self._lists.pop(key, None)

    def incr(self, key: str, ttl_seconds: float) -> int:
        """Increment counter. Sets TTL only on first increment."""
        self._check()
        with self._lock:
            entry = self._live(self._counters, key)
            if not entry:
                self._counters[key] = (1, self._clock() + ttl_seconds)
                return 1
            count = entry[0] + 1
            self._counters[key] = (count, entry[1])
            return count

    def decr(self, key: str) -> int:
        """Decrement a live counter, keeping its TTL. A missing counter stays missing."""
        self._check()
        with self._lock:
            entry = self._live(self._counters, key)
            if not entry:
                return 0
            count = entry[0] - 1
            self._counters[key] = (count, entry[1])
            return count

    def get_count(self, key: str) -> int:
        self._check()
        with self._lock:
            entry = self._live(self._counters, key)
            return entry[0] if entry else 0

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until `key` expires, None if it does not exist."""
        self._check()
        with self._lock:
            for table in (self._values, self._counters, self._lists):
                entry = self._live(table, key)
                if entry:
                    return None if entry[1] is None else max(0.0, entry[1] - self._clock())
            return None

    def push_recent(self, key: str, value: Any, max_len: int, ttl_seconds: float) -> None:
        """Prepend `value`, keep the newest `max_len` items, refresh the TTL."""
        self._check()
        with self._lock:
            entry = self._live(self._lists, key)
            items = [value] + (entry[0] if entry else [])
            self._lists[key] = (items[:max_len], self._clock() + ttl_seconds)

    def get_recent(self, key: str) -> List[Any]:
        self._check()
        with self._lock:
            entry = self._live(self._lists, key)
            return list(entry[0]) if entry else []

    def clear(self):
        with self._lock:
            self._values.clear()
            self._counters.clear()
            self._lists.clear()
