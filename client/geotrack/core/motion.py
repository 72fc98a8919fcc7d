"""Motion classifier: moving / stationary / sleeping state machine.

Driven by fix speed and elapsed stillness. Deferred transitions are held as
a single revocable ``asyncio.TimerHandle``; every qualifying fix cancels and
reschedules it, so at most one transition is ever pending.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import structlog

from geotrack.core.models import MotionState, PositionFix

log = structlog.get_logger()

# Speed above which the device counts as moving (m/s).
MOVING_SPEED_MPS = 0.5

# Continued stillness before moving -> stationary (seconds).
STATIONARY_AFTER_SECONDS = 30.0


class MotionClassifier:
    """Classifies motion for one device."""

    def __init__(
        self,
        sleep_after_seconds: float,
        *,
        stationary_after_seconds: float = STATIONARY_AFTER_SECONDS,
        on_change: Callable[[MotionState], None] | None = None,
    ) -> None:
        self._sleep_after = sleep_after_seconds
        self._stationary_after = stationary_after_seconds
        self._on_change = on_change
        self._state = MotionState.UNKNOWN
        self._pending: asyncio.TimerHandle | None = None

    @property
    def state(self) -> MotionState:
        return self._state

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def set_sleep_after(self, seconds: float) -> None:
        """Apply a new stationary heartbeat. Takes effect on the next schedule."""
        self._sleep_after = seconds

    def observe(self, fix: PositionFix) -> MotionState:
        """Feed one fix. Must be called from the event loop thread."""
        speed = fix.speed_mps or 0.0
        if speed > MOVING_SPEED_MPS:
            self.cancel()
            self._transition(MotionState.MOVING)
        elif self._state in (MotionState.STATIONARY, MotionState.SLEEPING):
            # Already still. Further still fixes do not re-arm the timer, so the
            # stationary -> sleeping countdown runs from the first still fix.
            pass
        else:
            self.cancel()
            self._schedule(self._stationary_after, self._enter_stationary)
        return self._state

    def cancel(self) -> None:
        """Revoke the pending deferred transition, if any."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _schedule(self, delay: float, callback: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(delay, callback)

    def _enter_stationary(self) -> None:
        self._pending = None
        self._transition(MotionState.STATIONARY)
        if self._sleep_after > 0:
            self._schedule(self._sleep_after, self._enter_sleeping)

    def _enter_sleeping(self) -> None:
        self._pending = None
        self._transition(MotionState.SLEEPING)

    def _transition(self, state: MotionState) -> None:
        if state == self._state:
            return
        log.debug("motion_state_changed", previous=self._state.value, state=state.value)
        self._state = state
        if self._on_change is not None:
            self._on_change(state)
