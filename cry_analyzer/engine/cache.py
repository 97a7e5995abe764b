"""
Prediction cache keyed by audio fingerprint
Entries expire after a TTL; concurrent misses for the same key share one computation
"""

import logging
import threading
import time
from concurrent.futures import Future

from ..config import CACHE_TTL_MS, CACHE_MAX_ENTRIES

logger = logging.getLogger(__name__)


class PredictionCache:
    """
    TTL cache with single-flight read-through.

    get_or_compute() returns a cached value when fresh. Otherwise the first
    caller for a key runs `compute` and every concurrent caller for the same
    key waits on that caller's future instead of computing again. Failures
    are propagated to all waiters and are not cached.

    Expired entries are dropped on every write, and the map never holds
    more than `max_entries` results (oldest dropped first).
    """

    def __init__(self, ttl_ms=CACHE_TTL_MS, max_entries=CACHE_MAX_ENTRIES, clock=None):
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._entries = {}
        self._in_flight = {}
        self.hits = 0
        self.misses = 0

    def __len__(self):
        with self._lock:
            self._drop_expired()
            return len(self._entries)

    def _fresh(self, stored_at):
        return (self._clock() - stored_at) * 1000.0 < self.ttl_ms

    def get(self, key):
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            value, stored_at = item
            if not self._fresh(stored_at):
                del self._entries[key]
                return None
            return value

    def put(self, key, value):
        with self._lock:
            self._drop_expired()
            # Re-insert so dict order stays oldest first
            self._entries.pop(key, None)
            self._entries[key] = (value, self._clock())
            while len(self._entries) > self.max_entries:
                del self._entries[next(iter(self._entries))]

    def get_or_compute(self, key, compute):
        with self._lock:
            item = self._entries.get(key)
            if item is not None and self._fresh(item[1]):
                self.hits += 1
                logger.debug(f"Cache hit for {key}")
                return item[0]
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future
                self.misses += 1

        if not owner:
            logger.debug(f"Waiting on in-flight request for {key}")
            return future.result()

        try:
            value = compute()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(value)
            self.put(key, value)
            return value
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    def _drop_expired(self):
        expired = [k for k, (_, stored_at) in self._entries.items()
                   if not self._fresh(stored_at)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def evict_expired(self):
        with self._lock:
            evicted = self._drop_expired()
        if evicted:
            logger.debug(f"Evicted {evicted} expired cache entries")
        return evicted

    def clear(self):
        with self._lock:
            self._entries.clear()
