"""Process-wide caches with single-flight semantics per key."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Callable, Generic, Hashable, Iterable, TypeVar

LOGGER = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlightCache(Generic[K, V]):
    """Memoizes ``compute(key)`` so each key is computed at most once at a time.

    The first caller for an uncached key runs the computation; concurrent
    callers for the same key block on the same future and reuse its result.
    Results are kept until discarded. A computation that raises is not cached, and
    the exception is re-raised in every waiting caller.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._values: dict[K, V] = {}
        self._inflight: dict[K, Future] = {}
        self.hits = 0
        self.misses = 0

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def peek(self, key: K, default: V | None = None) -> V | None:
        with self._lock:
            return self._values.get(key, default)

    def get_or_compute(self, key: K, compute: Callable[[K], V]) -> V:
        with self._lock:
            if key in self._values:
                self.hits += 1
                return self._values[key]
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                self.misses += 1
                future = Future()
                self._inflight[key] = future

        if not owner:
            LOGGER.debug("Waiting on in-flight %s computation for %s", self.name, key)
            return future.result()

        try:
            value = compute(key)
        except BaseException as exc:
            with self._lock:
                del self._inflight[key]
            future.set_exception(exc)
            raise

        with self._lock:
            self._values[key] = value
            del self._inflight[key]
        future.set_result(value)
        return value

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._values[key] = value

    def update(self, items: Iterable[tuple[K, V]]) -> None:
        with self._lock:
            for key, value in items:
                self._values.setdefault(key, value)

    def snapshot(self) -> dict[K, V]:
        with self._lock:
            return dict(self._values)

    def discard_where(self, predicate: Callable[[K], bool]) -> int:
        """Drop cached values whose key matches ``predicate``; in-flight keys are left alone."""
        with self._lock:
            stale = [key for key in self._values if predicate(key)]
            for key in stale:
                del self._values[key]
        return len(stale)
