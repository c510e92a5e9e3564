from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Small keyed cache whose entries expire ``ttl_seconds`` after insertion.

    Expired entries are dropped lazily on lookup; ``max_entries`` evicts the
    oldest insertion first.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, V]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> V | None:
        item = self._entries.get(key)
        if item is None:
            self.misses += 1
            return None
        expires_at, value = item
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def __contains__(self, key: str) -> bool:
        item = self._entries.get(key)
        return item is not None and self._clock() < item[0]

    def set(self, key: str, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)
