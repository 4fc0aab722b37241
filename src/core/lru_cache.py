import threading
from collections import OrderedDict
from typing import Optional


class TileMemoryCache:
    """Bounded least-recently-used map of tile key -> bytes.

    Both reads and writes refresh recency; inserting past capacity evicts
    the least recently used entry.
    """

    def __init__(self, capacity: int = 500):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: 'OrderedDict[str, bytes]' = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            data = self._items.get(key)
            if data is None:
                self.misses += 1
                return None
            self._items.move_to_end(key)
            self.hits += 1
            return data

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = data
            while len(self._items) > self.capacity:
                self._items.popitem(last=False)

    def evict_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix; returns how many"""
        with self._lock:
            keys = [k for k in self._items if k.startswith(prefix)]
            for key in keys:
                del self._items[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
