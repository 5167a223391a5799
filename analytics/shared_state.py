"""Thread-safe containers shared between the frame worker and readers.

The analysis pipeline follows a single-writer / multi-reader contract:
only the frame worker mutates counters and keyed state, while reporting
paths (metrics, dashboards, exporters) read them concurrently. Every
operation below takes a short lock so a reader never observes a torn
write. Reads across several containers are not transactional; callers
get an eventually consistent view.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")
R = TypeVar("R")


class AtomicCounter:
    """Integer counter with atomic read-modify-write operations."""

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> int:
        with self._lock:
            return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    def increment(self, delta: int = 1) -> int:
        """Add ``delta`` and return the new value."""
        with self._lock:
            self._value += delta
            return self._value

    def reset(self) -> None:
        self.set(0)


class SharedMap(Generic[K, V]):
    """Lock-protected dictionary with copy-on-read iteration.

    ``items`` and ``keys`` return snapshots, so readers can iterate while
    the writer keeps updating the map.
    """

    def __init__(self) -> None:
        self._data: Dict[K, V] = {}
        self._lock = threading.RLock()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._data[key] = value

    def setdefault(self, key: K, factory: Callable[[], V]) -> V:
        """Return the value for ``key``, creating it with ``factory`` if absent."""
        with self._lock:
            if key not in self._data:
                self._data[key] = factory()
            return self._data[key]

    def apply(
        self,
        key: K,
        fn: Callable[[Optional[V]], R],
        factory: Optional[Callable[[], V]] = None,
    ) -> R:
        """Run ``fn`` on the value for ``key`` while holding the map lock.

        ``fn`` receives ``None`` for a missing key unless ``factory`` is
        given, in which case the value is created first. Compound reads and
        read-modify-write updates go through here so no reader observes a
        half-applied change.
        """
        with self._lock:
            value = self._data.get(key)
            if value is None and factory is not None:
                value = self._data[key] = factory()
            return fn(value)

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            return self._data.pop(key, default)

    def keys(self) -> List[K]:
        with self._lock:
            return list(self._data.keys())

    def items(self) -> List[Tuple[K, V]]:
        with self._lock:
            return list(self._data.items())

    def retain(self, keys: Iterable[K]) -> List[K]:
        """Drop every entry whose key is not in ``keys``; return the dropped keys."""
        keep = set(keys)
        with self._lock:
            dropped = [key for key in self._data if key not in keep]
            for key in dropped:
                del self._data[key]
        return dropped

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
