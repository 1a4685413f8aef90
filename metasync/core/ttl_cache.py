"""MetaSync - Bounded TTL Map.

Small LRU + TTL container used by the page-token and list caches. Not
thread-safe; all callers run on the event loop, and last-write-wins is an
acceptable outcome for cached data.
"""

import time
from collections import OrderedDict
from typing import Callable, Generic, Iterator, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Mapping with per-entry expiry and least-recently-used eviction."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[K, Tuple[V, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: K) -> Optional[V]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return value

    def set(self, key: K, value: V, ttl_seconds: Optional[float] = None) -> float:
        """Store ``value``; returns the monotonic expiry time."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + ttl
        self._data[key] = (value, expires_at)
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)
        return expires_at

    def pop(self, key: K) -> Optional[V]:
        item = self._data.pop(key, None)
        return item[0] if item else None

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> Iterator[Tuple[K, V]]:
        """Yield live (key, value) pairs, most recently used last."""
        now = self._clock()
        for key, (value, expires_at) in list(self._data.items()):
            if expires_at > now:
                yield key, value

    def keys(self) -> Iterator[K]:
        """All stored keys, expired ones included."""
        return iter(list(self._data.keys()))
