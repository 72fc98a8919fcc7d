"""Queue interface (port) for undelivered position records."""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from geotrack.core.models import PositionRecord


class RecordQueue(Protocol):
    """Port: buffers records until the server accepts them, FIFO."""

    def append(self, record: PositionRecord) -> None: ...

    def take(self, count: int) -> list[PositionRecord]: ...

    def requeue_front(self, records: list[PositionRecord]) -> None: ...

    def __len__(self) -> int: ...
