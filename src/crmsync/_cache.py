"""Bounded least-recently-used cache used for per-key bookkeeping."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterator
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class BoundedLruCache(Generic[K, V]):
    """Mapping with a fixed maximum number of keys.

    Every ``get`` hit and every ``put`` moves the key to the most-recently-used
    end. Inserting a new key while full evicts the least-recently-used one.
    """

    def __init__(self, max_size: int) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._entries: OrderedDict[K, V] = OrderedDict()
        self._evictions = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def evictions(self) -> int:
        """Number of entries dropped under size pressure so far."""
        return self._evictions

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[K]:
        return iter(self._entries)

    def get(self, key: K) -> V | None:
        value = self._entries.get(key)
        if value is not None:
            self._entries.move_to_end(key)
        return value

    def put(self, key: K, value: V) -> K | None:
        """Store *value* and return the evicted key, if any."""
        if key in self._entries:
            self._entries[key] = value
            self._entries.move_to_end(key)
            return None

        evicted: K | None = None
        if len(self._entries) >= self._max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
        self._entries[key] = value
        return evicted

    def pop(self, key: K) -> V | None:
        return self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
