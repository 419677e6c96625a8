"""
TTL cache with an injected clock.

Owned by whoever creates it (the batch processor holds one per data kind);
there is no module-level instance.
"""

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Hashable, Iterable, Optional, Tuple, TypeVar

V = TypeVar('V')

_MISSING = object()


class TTLCache(Generic[V]):
    """
    Bounded mapping whose entries expire ``ttl`` seconds after being set.

    Expired entries are never returned; they are physically removed by
    ``evict_expired()`` or when the size bound forces out the oldest entry.
    """

    def __init__(
        self,
        ttl: float = 300.0,
        max_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: 'OrderedDict[Hashable, Tuple[float, V]]' = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key, _MISSING)
        if entry is _MISSING or entry[0] <= self._clock():
            self.misses += 1
            return default
        self.hits += 1
        return entry[1]

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[0] > self._clock()

    def set(self, key: Hashable, value: V) -> None:
        self._entries.pop(key, None)
        self._entries[key] = (self._clock() + self.ttl, value)
        if self.max_size is not None:
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def update(self, items: Dict[Hashable, V]) -> None:
        for key, value in items.items():
            self.set(key, value)

    def missing(self, keys: Iterable[Hashable]) -> list:
        """Keys (deduplicated, in order) without a live entry"""
        return [key for key in dict.fromkeys(keys) if key not in self]

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def evict_expired(self) -> int:
        """Remove expired entries; returns how many were dropped"""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'size': len(self._entries),
            'max_size': self.max_size,
            'ttl': self.ttl,
            'hits': self.hits,
            'misses': self.misses,
        }
