from __future__ import annotations
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Iterator, Optional, TypeVar

V = TypeVar("V")

class SessionStore(Generic[V]):
    """
    Bounded per-session state, keyed by session id.
    Reads and writes refresh recency; the least recently used entry is
    evicted once `capacity` is exceeded.
    """

    def __init__(self, capacity: int = 256):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._data: "OrderedDict[Hashable, V]" = OrderedDict()

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        if key not in self._data:
            return default
        self._data.move_to_end(key)
        return self._data[key]

    def put(self, key: Hashable, value: V) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self.capacity:
            self._data.popitem(last=False)

    def setdefault(self, key: Hashable, factory: Callable[[], V]) -> V:
        if key in self._data:
            return self.get(key)
        value = factory()
        self.put(key, value)
        return value

    def pop(self, key: Hashable, default: Any = None):
        return self._data.pop(key, default)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self._data)
