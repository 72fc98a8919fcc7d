"""Tracking orchestrator. Composes source, policy, motion and transport.

Owns the lifecycle (authenticate / start / stop / disconnect) and the
authoritative ClientState. Source callbacks only enqueue fixes; a single
consumer task processes them in arrival order, so no two fixes ever mutate
state concurrently.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Hashable

import structlog

from geotrack.config import save_tracker_config
from geotrack.core.errors import AuthenticationError, SourceError
from geotrack.core.models import ClientState, ClientStatus, MotionState, create_position_record
from geotrack.core.motion import STATIONARY_AFTER_SECONDS, MotionClassifier
from geotrack.core.policy import should_send
from geotrack.source.base import WatchOptions
from geotrack.transport.traccar import MESSAGE_TYPES

if TYPE_CHECKING:
    from geotrack.config import ConfigStore, TraccarConfiguration
    from geotrack.core.models import PositionFix
    from geotrack.device.battery import BatterySource
    from geotrack.source.base import PositionSource
    from geotrack.transport.traccar import TraccarClient

log = structlog.get_logger()

# How often the host battery is sampled (seconds).
BATTERY_POLL_SECONDS = 60.0

_STILL_STATES = (MotionState.STATIONARY, MotionState.SLEEPING)


class TrackingClient:
    """One tracked device bound to one server session."""

    def __init__(
        self,
        session: TraccarClient,
        source: PositionSource,
        *,
        battery: BatterySource | None = None,
        store: ConfigStore | None = None,
        battery_interval: float = BATTERY_POLL_SECONDS,
        stationary_after_seconds: float = STATIONARY_AFTER_SECONDS,
    ) -> None:
        self._session = session
        self._source = source
        self._battery = battery
        self._store = store
        self._battery_interval = battery_interval

        self.state = ClientState()
        self._motion = MotionClassifier(
            session.config.stationary_heartbeat,
            stationary_after_seconds=stationary_after_seconds,
            on_change=self._on_motion_change,
        )
        self._last_sent_fix: PositionFix | None = None
        self._watch_handle: Hashable | None = None
        self._fixes: asyncio.Queue[PositionFix] | None = None
        self._consumer: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None
        self._battery_task: asyncio.Task | None = None

        for kind in MESSAGE_TYPES:
            session.add_listener(kind, self._on_server_message)

    @property
    def config(self) -> TraccarConfiguration:
        return self._session.config

    @property
    def session(self) -> TraccarClient:
        return self._session

    def snapshot(self) -> dict:
        return self.state.snapshot(queue_depth=self._session.queue_depth)

    # -- lifecycle -----------------------------------------------------------

    async def open(self) -> None:
        """Start ambient loops (battery polling)."""
        if self._battery is not None and self._battery_task is None:
            self._battery_task = asyncio.get_running_loop().create_task(self._battery_loop())

    async def aclose(self) -> None:
        self.disconnect()
        if self._battery_task is not None:
            self._battery_task.cancel()
            self._battery_task = None
        await self._session.aclose()

    async def __aenter__(self) -> TrackingClient:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def authenticate(self, username: str | None = None, password: str | None = None) -> bool:
        """Open a server session. Falls back to the configured credentials."""
        username = username or self.config.username
        password = password or self.config.password
        self.state.status = ClientStatus.CONNECTING

        try:
            success = await self._session.authenticate(username, password)
        except AuthenticationError as e:
            log.warning("authentication_refused", error=str(e))
            self._set_session_flags(False)
            self.state.status = ClientStatus.ERROR
            self.state.error = str(e)
            return False

        self._set_session_flags(success)
        if not success:
            self.state.status = ClientStatus.ERROR
            self.state.error = self._session.last_error or "Authentication failed"
            return False

        self.state.status = ClientStatus.TRACKING if self.state.is_tracking else ClientStatus.IDLE
        self.state.error = None
        self._session.connect_socket()
        self._persist()
        return True

    def use_token(self, token: str | None = None) -> bool:
        """Authenticate with a bearer token instead of a password session."""
        try:
            self._session.use_token(token)
        except AuthenticationError as e:
            self.state.status = ClientStatus.ERROR
            self.state.error = str(e)
            return False
        self._set_session_flags(True)
        self.state.status = ClientStatus.IDLE
        self.state.error = None
        self._session.connect_socket()
        return True

    def start_tracking(self) -> bool:
        """Begin continuous observation. Only allowed once authenticated."""
        if not self.state.is_authenticated:
            log.warning("tracking_requires_authentication")
            return False
        if self.state.is_tracking:
            return True

        self._fixes = asyncio.Queue()
        self._consumer = asyncio.get_running_loop().create_task(self._consume_fixes())
        self._start_watch()

        self.state.is_tracking = True
        self.state.status = ClientStatus.TRACKING
        self.state.error = None
        log.info("tracking_started", device=self.config.device_id,
                 mode=self.config.tracking_mode.value)
        return True

    def stop_tracking(self) -> None:
        """Cancel the watch, heartbeat poll, motion timer and fix consumer."""
        self._stop_watch()
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        self._fixes = None
        self._motion.cancel()

        if self.state.is_tracking:
            log.info("tracking_stopped", device=self.config.device_id)
        self.state.is_tracking = False
        self.state.status = ClientStatus.IDLE

    def disconnect(self) -> None:
        self.stop_tracking()
        self._session.disconnect()
        self._set_session_flags(False)
        self.state.status = ClientStatus.IDLE

    def update_config(self, **changes: Any) -> TraccarConfiguration:
        """Merge, validate, apply and persist a partial configuration update."""
        previous = self.config
        new_config = self._session.update_config(**changes)
        self._motion.set_sleep_after(new_config.stationary_heartbeat)
        self._persist()

        watch_changed = (
            new_config.high_accuracy != previous.high_accuracy
            or new_config.stationary_heartbeat != previous.stationary_heartbeat
        )
        if self.state.is_tracking and watch_changed:
            self._stop_watch()
            self._start_watch()
        log.info("config_updated", keys=sorted(changes))
        return new_config

    async def send_now(self) -> bool:
        """Send the current fix immediately, bypassing the update policy."""
        if not self.state.is_authenticated:
            return False
        fix = self.state.current_position
        if fix is None:
            try:
                fix = await self._request_fix()
            except SourceError as e:
                self._record_error(f"Geolocation error: {e}")
                return False
            self.state.current_position = fix
        return await self._send(fix)

    # -- watch ---------------------------------------------------------------

    def _watch_options(self) -> WatchOptions:
        return WatchOptions(high_accuracy=self.config.high_accuracy)

    def _start_watch(self) -> None:
        options = self._watch_options()
        self._watch_handle = self._source.watch(self._on_fix, self._on_source_error, options)
        heartbeat = self.config.stationary_heartbeat
        if heartbeat > 0:
            self._heartbeat = asyncio.get_running_loop().create_task(
                self._heartbeat_loop(heartbeat, options)
            )

    def _stop_watch(self) -> None:
        if self._watch_handle is not None:
            self._source.clear_watch(self._watch_handle)
            self._watch_handle = None
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    async def _heartbeat_loop(self, interval: float, options: WatchOptions) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.state.motion_state in _STILL_STATES:
                log.debug("heartbeat_poll", motion=self.state.motion_state.value)
                self._source.get_once(self._on_fix, self._on_source_error, options)

    async def _request_fix(self) -> PositionFix:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[PositionFix] = loop.create_future()

        def on_fix(fix: PositionFix) -> None:
            if not future.done():
                future.set_result(fix)

        def on_error(error: SourceError) -> None:
            if not future.done():
                future.set_exception(error)

        options = self._watch_options()
        self._source.get_once(on_fix, on_error, options)
        try:
            return await asyncio.wait_for(future, timeout=options.timeout_s)
        except asyncio.TimeoutError as e:
            raise SourceError("timed out waiting for a position") from e

    # -- per-fix pipeline ----------------------------------------------------

    def _on_fix(self, fix: PositionFix) -> None:
        if self._fixes is None:
            # Late callback after stop_tracking()
            return
        self._fixes.put_nowait(fix)

    def _on_source_error(self, error: SourceError) -> None:
        log.warning("source_error", error=str(error))
        self._record_error(f"Geolocation error: {error}")

    async def _consume_fixes(self) -> None:
        queue = self._fixes
        assert queue is not None
        while True:
            fix = await queue.get()
            try:
                await self._process_fix(fix)
            except Exception as e:
                log.error("fix_processing_failed", exc_info=True)
                self._record_error(str(e) or type(e).__name__)
            finally:
                queue.task_done()

    async def wait_until_processed(self) -> None:
        """Wait until every fix received so far has been handled."""
        if self._fixes is not None:
            await self._fixes.join()

    async def _process_fix(self, fix: PositionFix) -> None:
        self.state.current_position = fix
        config = self.config
        if config.motion_detection:
            self._motion.observe(fix)
        if should_send(self._last_sent_fix, fix, config):
            await self._send(fix)

    async def _send(self, fix: PositionFix) -> bool:
        record = create_position_record(
            self.config.device_id,
            fix,
            battery_level=self.state.battery_level,
            charging=self.state.is_charging,
            motion=self.state.motion_state == MotionState.MOVING,
        )
        success = await self._session.send_position(record)
        if not success:
            self._record_error(self._session.last_error or "Failed to send position")
            return False

        self.state.last_sent_position = record
        self.state.sent_count += 1
        self.state.error = None
        self._last_sent_fix = fix
        if self.state.is_tracking and self.state.status == ClientStatus.ERROR:
            self.state.status = ClientStatus.TRACKING
        return True

    # -- state helpers -------------------------------------------------------

    def _record_error(self, message: str) -> None:
        self.state.error_count += 1
        self.state.error = message
        if self.state.is_tracking:
            self.state.status = ClientStatus.ERROR

    def _set_session_flags(self, value: bool) -> None:
        self.state.is_authenticated = value
        self.state.is_connected = value

    def _on_motion_change(self, motion: MotionState) -> None:
        self.state.motion_state = motion

    def _on_server_message(self, data: dict) -> None:
        self.state.last_server_message = data.get("type")

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            save_tracker_config(self._store, self.config)
        except OSError as e:
            log.warning("config_persist_failed", path=str(self._store.path), error=str(e))

    async def _battery_loop(self) -> None:
        while True:
            self._sample_battery()
            await asyncio.sleep(self._battery_interval)

    def _sample_battery(self) -> None:
        try:
            reading = self._battery.read() if self._battery is not None else None
        except Exception:
            # Battery status is best effort; fields stay unknown.
            log.debug("battery_unavailable", exc_info=True)
            return
        if reading is None:
            return
        self.state.battery_level = reading.level
        self.state.is_charging = reading.charging
