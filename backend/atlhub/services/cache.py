# atlhub/services/cache.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from atlhub.services.logging import log_kv

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: Optional[float] = None  # absolute clock reading; None never expires
    generation: int = 0

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ExpiringCache(Generic[T]):
    """
    Keyed cache where each entry may carry its own time-to-live.

    Expired entries are evicted lazily by whichever read observes them; there
    is no background sweep. `update` swaps the value of a live entry without
    touching its expiry, so a rebuilt value keeps the lifetime of the one it
    replaced.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.RLock()
        self._store: Dict[str, CacheEntry[T]] = {}

    def _live_entry(self, key: str) -> Optional[CacheEntry[T]]:
        # caller holds the lock
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            self._store.pop(key, None)
            log_kv(LOG, logging.DEBUG, "cache.expired", key=key)
            return None
        return entry

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry else None

    def entry(self, key: str) -> Optional[CacheEntry[T]]:
        with self._lock:
            return self._live_entry(key)

    def set(self, key: str, value: T, ttl_seconds: Optional[float] = None, generation: int = 0) -> None:
        with self._lock:
            expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
            self._store[key] = CacheEntry(value=value, expires_at=expires_at, generation=generation)

    def update(self, key: str, value: T, generation: Optional[int] = None) -> bool:
        """Replace the value of a live entry, keeping its expiry. Returns False if there was none."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                log_kv(LOG, logging.WARNING, "cache.update_missing", key=key)
                return False
            entry.value = value
            if generation is not None:
                entry.generation = generation
            return True

    def ttl_remaining(self, key: str) -> Optional[float]:
        """Seconds until expiry; None if absent or if the entry never expires."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.expires_at is None:
                return None
            return entry.expires_at - self._clock()

    def clear(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear_all(self) -> None:
        with self._lock:
            self._store.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return [k for k in list(self._store) if self._live_entry(k) is not None]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.entry(key) is not None

    def __len__(self) -> int:
        return len(self.keys())
