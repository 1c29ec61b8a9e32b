"""Thread-safe in-process TTL cache."""

import threading
import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Key/value cache whose entries expire after a fixed TTL.

    Owned by whoever constructs it; there is no module-level instance.
    ``clock`` returns monotonic seconds and is injectable for tests.
    """

    def __init__(self, ttl_seconds: float, *, max_entries: int = 4096, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[V, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[V]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: V) -> None:
        now = self._clock()
        with self._lock:
            if len(self._entries) >= self.max_entries and key not in self._entries:
                self._evict_expired(now)
                if len(self._entries) >= self.max_entries:
                    # Oldest insertion goes first.
                    self._entries.pop(next(iter(self._entries)))
            self._entries[key] = (value, now + self.ttl_seconds)

    def get_or_set(self, key: Hashable, factory: Callable[[], V]) -> V:
        """Return the cached value or compute, store and return a fresh one."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = factory()
        self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_matching(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key satisfies ``predicate``. Returns the number dropped."""
        with self._lock:
            matched = [key for key in self._entries if predicate(key)]
            for key in matched:
                del self._entries[key]
        return len(matched)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
