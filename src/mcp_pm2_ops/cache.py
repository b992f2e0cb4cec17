"""Single-value caches with a time-to-live."""

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    fetched_at: float


class TTLCache(Generic[T]):
    """Holds at most one value, considered fresh for ``ttl`` seconds."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entry: Optional[CacheEntry[T]] = None

    def get(self) -> Optional[CacheEntry[T]]:
        """Return the entry if it is still fresh, else None."""
        entry = self._entry
        if entry is None or self._clock() - entry.fetched_at >= self.ttl:
            return None
        return entry

    def put(self, value: T) -> CacheEntry[T]:
        self._entry = CacheEntry(value=value, fetched_at=self._clock())
        return self._entry

    def invalidate(self) -> None:
        self._entry = None

    def age(self) -> Optional[float]:
        if self._entry is None:
            return None
        return self._clock() - self._entry.fetched_at
