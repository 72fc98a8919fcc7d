"""Position source interface (port).

Two distinct capabilities: a continuous watch that keeps emitting fixes
until cleared, and a one-shot query for the current position.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Hashable, Protocol

from geotrack.core.errors import SourceError
from geotrack.core.models import PositionFix

FixCallback = Callable[[PositionFix], None]
ErrorCallback = Callable[[SourceError], None]


@dataclass(frozen=True)
class WatchOptions:
    high_accuracy: bool = True
    timeout_s: float = 15.0
    max_age_s: float = 5.0


class PositionSource(Protocol):
    """Port: produces position fixes through callbacks."""

    def watch(self, on_fix: FixCallback, on_error: ErrorCallback, options: WatchOptions) -> Hashable: ...

    def get_once(self, on_fix: FixCallback, on_error: ErrorCallback, options: WatchOptions) -> None: ...

    def clear_watch(self, handle: Hashable) -> None: ...
