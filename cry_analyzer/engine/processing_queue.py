"""
Bounded queue of in-flight prediction requests
"""

import logging
import threading
import time
from contextlib import contextmanager

from ..config import MAX_QUEUE_SIZE
from ..exceptions import QueueFullError
from ..schema import ProcessingQueueEntry

logger = logging.getLogger(__name__)


class ProcessingQueue:
    """
    Tracks requests between admission and completion.

    The capacity check and the insert happen under one lock, so concurrent
    callers can never push the queue past `capacity`.
    """

    def __init__(self, capacity=MAX_QUEUE_SIZE):
        if capacity <= 0:
            raise ValueError(f"Queue capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._entries = {}
        self.rejected = 0

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def enqueue(self, fingerprint):
        """Admit a request or raise QueueFullError."""
        entry = ProcessingQueueEntry(
            fingerprint=fingerprint, enqueued_monotonic=time.monotonic()
        )
        with self._lock:
            if len(self._entries) >= self.capacity:
                self.rejected += 1
                raise QueueFullError(
                    f"Processing queue is full ({self.capacity} requests in flight)"
                )
            self._entries[entry.request_id] = entry
        return entry

    def remove(self, entry):
        with self._lock:
            self._entries.pop(entry.request_id, None)

    @contextmanager
    def reserve(self, fingerprint):
        """Hold a queue slot for the duration of the block."""
        entry = self.enqueue(fingerprint)
        try:
            yield entry
        finally:
            self.remove(entry)

    def entries(self):
        with self._lock:
            return list(self._entries.values())

    def oldest_age_ms(self):
        with self._lock:
            if not self._entries:
                return 0.0
            oldest = min(e.enqueued_monotonic for e in self._entries.values())
        return (time.monotonic() - oldest) * 1000.0
