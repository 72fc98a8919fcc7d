"""In-memory bounded implementation of RecordQueue."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from geotrack.core.models import PositionRecord

log = structlog.get_logger()

# Maximum number of records kept while offline.
DEFAULT_CAPACITY = 1000


class BoundedOfflineQueue:
    """RecordQueue backed by a deque. Oldest records are evicted on overflow."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._records: deque[PositionRecord] = deque()
        self.dropped: int = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, record: PositionRecord) -> None:
        self._records.append(record)
        self._trim()

    def take(self, count: int) -> list[PositionRecord]:
        """Remove and return up to ``count`` records from the front."""
        batch = []
        while self._records and len(batch) < count:
            batch.append(self._records.popleft())
        return batch

    def requeue_front(self, records: list[PositionRecord]) -> None:
        """Put a failed batch back at the front, preserving its order."""
        self._records.extendleft(reversed(records))
        self._trim()

    def clear(self) -> None:
        self._records.clear()

    def _trim(self) -> None:
        overflow = len(self._records) - self._capacity
        if overflow <= 0:
            return
        for _ in range(overflow):
            self._records.popleft()
        self.dropped += overflow
        log.debug("offline_queue_overflow", dropped=overflow, capacity=self._capacity)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(list(self._records))
