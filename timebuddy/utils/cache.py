"""Time-to-live cache utility.

This module provides a thin, typed wrapper over :class:`cachetools.TTLCache`
with a minimal API for `get`/`set`. It is the single cache authority for
schema lists and variable value sets: entries expire by age and stale reads
simply re-fetch. There is no push-based invalidation apart from explicit
``delete``/``delete_prefix`` calls (e.g., when a connection is removed).
"""

from __future__ import annotations

import time
from typing import Callable, Generic, Iterator, Optional, TypeVar

from cachetools import TTLCache  # type: ignore[import-untyped]

V = TypeVar("V")


class Cache(Generic[V]):
    """String-keyed TTL cache.

    Parameters
    ----------
    maxsize: int
        Maximum number of entries to retain.
        When the cache is full, the least-recently-used entry is discarded.
    ttl_seconds: float
        Lifetime of each entry.
    timer: Callable[[], float]
        Clock used for expiry (injectable for tests).
    """

    def __init__(
        self,
        maxsize: int = 1024,
        ttl_seconds: float = 24 * 60 * 60,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TTLCache[str, V] = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds, timer=timer
        )

    def get(self, key: str) -> Optional[V]:
        """Return value for `key` or None if missing or expired."""
        return self._cache.get(key)

    def set(self, key: str, value: V) -> None:
        """Insert or update `key` with `value`."""
        self._cache[key] = value

    def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        """Drop every key starting with `prefix`; return how many were removed."""
        doomed = [key for key in list(self._cache.keys()) if key.startswith(prefix)]
        for key in doomed:
            self._cache.pop(key, None)
        return len(doomed)

    def clear(self) -> None:
        self._cache.clear()

    def keys(self) -> Iterator[str]:
        return iter(list(self._cache.keys()))

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)
