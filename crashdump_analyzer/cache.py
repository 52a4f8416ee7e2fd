"""Single-flight memo cache shared by the decode workers."""
from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Callable, Dict, Generic, Hashable, List, Optional, TypeVar

V = TypeVar("V")


class SingleFlightCache(Generic[V]):
    """Computes each key at most once, even under concurrent requests.

    The first caller for a key becomes its owner and runs the computation
    outside the lock; later callers wait on the owner's future. A result is
    published only on success. When the computation raises, every waiter
    receives the exception and the key is forgotten, so the next request
    computes it again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[Hashable, V] = {}
        self._pending: Dict[Hashable, Future] = {}
        self.stats = {
            'computed': 0,
            'hits': 0,
            'waits': 0,
            'failures': 0,
        }

    def get_or_compute(self, key: Hashable, compute: Callable[[], V]) -> V:
        with self._lock:
            if key in self._values:
                self.stats['hits'] += 1
                return self._values[key]
            future = self._pending.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._pending[key] = future
            else:
                self.stats['waits'] += 1

        if not owner:
            return future.result()

        try:
            value = compute()
        except BaseException as e:
            with self._lock:
                del self._pending[key]
                self.stats['failures'] += 1
            future.set_exception(e)
            raise

        with self._lock:
            self._values[key] = value
            del self._pending[key]
            self.stats['computed'] += 1
        future.set_result(value)
        return value

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            return self._values.get(key)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def values(self) -> List[V]:
        with self._lock:
            return list(self._values.values())

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
