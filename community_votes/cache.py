"""
Bounded in-memory cache for read-heavy results (post pages, stats).
"""

import time
from collections import OrderedDict
from enum import Enum
from typing import Callable, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class BoundedCache(Generic[V]):
    """
    Size- and time-bounded key/value cache.

    Entries expire ``ttl_seconds`` after insertion. When a new key would
    push the cache past ``max_entries``, the oldest *inserted* entry is
    evicted; reads do not refresh an entry's position.

    Not locked: all mutation happens on the event loop thread without
    suspending, the same discipline the request deduplicator relies on.
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[V, float]]" = OrderedDict()

    def get(self, key: str) -> Optional[V]:
        """Return the cached value, or None on a miss or expiry."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, inserted_at = entry
        if self._clock() - inserted_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: V):
        """Insert or overwrite ``key``, evicting the oldest entry if full."""
        if key in self._entries:
            # Overwrite counts as a fresh insertion
            del self._entries[key]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (value, self._clock())

    def invalidate(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``."""
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def invalidate_all(self):
        self._entries.clear()

    def cleanup_expired(self) -> int:
        """Remove all expired entries"""
        now = self._clock()
        expired = [
            key for key, (_, inserted_at) in self._entries.items()
            if now - inserted_at > self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


def make_key(request_type: str, **params) -> str:
    """Deterministic cache key: request type followed by sorted parameters."""
    parts = [request_type]
    for name in sorted(params):
        value = params[name]
        if isinstance(value, Enum):
            value = value.value
        parts.append(f"{name}={'' if value is None else value}")
    return ":".join(parts)
