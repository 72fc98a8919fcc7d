"""Simulated position sources.

- ``RandomWalkSource`` drifts around a center point with random turns,
  speed changes and the occasional stop.
- ``CircuitSource`` drives a loop of GPS waypoints loaded from JSON, so every
  lap is reproducible and all data stays within a known area.

Both emit from asyncio tasks on the running loop.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import math
import random
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from geotrack.core.errors import SourceError
from geotrack.core.models import PositionFix
from geotrack.source.base import ErrorCallback, FixCallback, WatchOptions

log = structlog.get_logger()


def _now_ms() -> int:
    return int(time.time() * 1000)


class SimulatedSource:
    """Base class: subclasses produce the next fix from ``_advance``."""

    def __init__(self, interval_seconds: float = 1.0) -> None:
        self._interval = interval_seconds
        self._watches: dict[int, asyncio.Task] = {}
        self._ids = itertools.count(1)

    def _advance(self, dt_seconds: float) -> PositionFix:
        raise NotImplementedError

    def _emit(self, on_fix: FixCallback, on_error: ErrorCallback, dt_seconds: float) -> None:
        try:
            fix = self._advance(dt_seconds)
        except SourceError as e:
            on_error(e)
            return
        except ValueError as e:
            on_error(SourceError(f"invalid fix: {e}"))
            return
        on_fix(fix)

    async def _watch_loop(self, on_fix: FixCallback, on_error: ErrorCallback) -> None:
        dt = 0.0
        while True:
            self._emit(on_fix, on_error, dt)
            await asyncio.sleep(self._interval)
            dt = self._interval

    def watch(self, on_fix: FixCallback, on_error: ErrorCallback, options: WatchOptions) -> int:
        handle = next(self._ids)
        loop = asyncio.get_running_loop()
        self._watches[handle] = loop.create_task(self._watch_loop(on_fix, on_error))
        log.debug("watch_started", handle=handle, high_accuracy=options.high_accuracy)
        return handle

    def get_once(self, on_fix: FixCallback, on_error: ErrorCallback, options: WatchOptions) -> None:
        asyncio.get_running_loop().call_soon(self._emit, on_fix, on_error, 0.0)

    def clear_watch(self, handle: int) -> None:
        task = self._watches.pop(handle, None)
        if task is not None:
            task.cancel()
            log.debug("watch_cleared", handle=handle)


# ---------------------------------------------------------------------------
# Random walk
# ---------------------------------------------------------------------------

class RandomWalkSource(SimulatedSource):
    """City driving around a center point, 3-20 m/s, with stops."""

    def __init__(
        self,
        center_lat: float,
        center_lon: float,
        *,
        interval_seconds: float = 1.0,
        stop_probability: float = 0.05,
        seed: int | None = None,
    ) -> None:
        super().__init__(interval_seconds)
        self._rng = random.Random(seed)
        self.lat = center_lat
        self.lon = center_lon
        self.bearing = self._rng.uniform(0, 360)
        self.speed_mps = self._rng.uniform(5, 15)
        self._stop_probability = stop_probability
        self._stopped_for = 0.0

    def _advance(self, dt_seconds: float) -> PositionFix:
        if self._stopped_for > 0:
            self._stopped_for = max(0.0, self._stopped_for - dt_seconds)
            self.speed_mps = 0.0
        elif self._rng.random() < self._stop_probability:
            # Park for a while (traffic light, errand)
            self._stopped_for = self._rng.uniform(10, 120)
            self.speed_mps = 0.0
        else:
            # Random bearing change (simulates turns)
            self.bearing = (self.bearing + self._rng.uniform(-15, 15)) % 360
            self.speed_mps = max(3.0, min(20.0, (self.speed_mps or 5.0) + self._rng.uniform(-1, 1)))

        distance_m = self.speed_mps * dt_seconds
        bearing_rad = math.radians(self.bearing)

        # Approximate: 1 degree latitude ~ 111,000 m
        self.lat += (distance_m * math.cos(bearing_rad)) / 111_000
        self.lon += (distance_m * math.sin(bearing_rad)) / (111_000 * math.cos(math.radians(self.lat)))

        return PositionFix(
            lat=self.lat,
            lon=self.lon,
            accuracy_m=self._rng.uniform(3, 15),
            timestamp_ms=_now_ms(),
            speed_mps=round(self.speed_mps, 1),
            heading_deg=round(self.bearing, 1),
        )


# ---------------------------------------------------------------------------
# Circuit
# ---------------------------------------------------------------------------

@dataclass
class Waypoint:
    index: int
    lat: float
    lon: float
    wp_type: str          # start, straight, stop, turn_right, loop_end
    bearing_deg: float
    distance_to_next_m: float
    suggested_speed_kmh: float
    description: str = ""


@dataclass
class Circuit:
    name: str
    description: str
    total_distance_m: float
    waypoints: list[Waypoint]

    @classmethod
    def from_json(cls, path: str | Path) -> "Circuit":
        try:
            raw = json.loads(Path(path).read_text())
            wps = [
                Waypoint(
                    index=w["index"],
                    lat=w["lat"],
                    lon=w["lon"],
                    wp_type=w["type"],
                    bearing_deg=w["bearing_deg"],
                    distance_to_next_m=w["distance_to_next_m"],
                    suggested_speed_kmh=w["suggested_speed_kmh"],
                    description=w.get("description", ""),
                )
                for w in raw["waypoints"]
            ]
            circuit = cls(
                name=raw["circuit_name"],
                description=raw.get("description", ""),
                total_distance_m=raw["circuit_stats"]["total_distance_m"],
                waypoints=wps,
            )
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise SourceError(f"cannot load circuit {path}: {e}") from e
        if len(circuit.waypoints) < 2:
            raise SourceError(f"circuit {path} needs at least two waypoints")
        return circuit


def interpolate_point(
    lat1: float, lon1: float, lat2: float, lon2: float, fraction: float
) -> tuple[float, float]:
    """Linearly interpolate between two GPS points (good enough for <100 m)."""
    return (
        lat1 + (lat2 - lat1) * fraction,
        lon1 + (lon2 - lon1) * fraction,
    )


class CircuitSource(SimulatedSource):
    """Drives the circuit lap after lap. ``stop`` waypoints hold for 2 seconds."""

    def __init__(
        self,
        circuit: Circuit,
        *,
        interval_seconds: float = 1.0,
        start_index: int = 0,
        seed: int | None = None,
    ) -> None:
        super().__init__(interval_seconds)
        self.circuit = circuit
        self._rng = random.Random(seed)
        self.current_wp_idx = start_index % len(circuit.waypoints)
        self.segment_progress = 0.0
        wp = circuit.waypoints[self.current_wp_idx]
        self.lat = wp.lat
        self.lon = wp.lon
        self.bearing = wp.bearing_deg
        self.speed_mps = 0.0
        self.laps_completed = 0

    def _restart_lap(self) -> None:
        wp0 = self.circuit.waypoints[0]
        self.current_wp_idx = 0
        self.segment_progress = 0.0
        self.laps_completed += 1
        self.lat, self.lon, self.bearing = wp0.lat, wp0.lon, wp0.bearing_deg

    def _fix(self) -> PositionFix:
        return PositionFix(
            lat=self.lat,
            lon=self.lon,
            accuracy_m=self._rng.uniform(3, 8),
            timestamp_ms=_now_ms(),
            speed_mps=round(self.speed_mps, 1),
            heading_deg=round(self.bearing, 1),
        )

    def _advance(self, dt_seconds: float) -> PositionFix:
        wps = self.circuit.waypoints
        wp = wps[self.current_wp_idx]

        if wp.wp_type == "stop":
            self.speed_mps = 0.0
            self.segment_progress += dt_seconds / 2.0
            if self.segment_progress >= 1.0:
                self.segment_progress = 0.0
                self.current_wp_idx = (self.current_wp_idx + 1) % len(wps)
            self.lat, self.lon, self.bearing = wp.lat, wp.lon, wp.bearing_deg
            return self._fix()

        # Suggested speed with small jitter
        target_mps = (wp.suggested_speed_kmh / 3.6) * self._rng.uniform(0.85, 1.15)
        self.speed_mps = max(1.0, target_mps)

        seg_dist = wp.distance_to_next_m
        if seg_dist <= 0:
            # loop_end
            self._restart_lap()
            return self._fix()

        self.segment_progress += self.speed_mps * dt_seconds / seg_dist
        if self.segment_progress >= 1.0:
            overflow = (self.segment_progress - 1.0) * seg_dist
            self.current_wp_idx += 1
            if self.current_wp_idx >= len(wps):
                self._restart_lap()
                return self._fix()
            next_wp = wps[self.current_wp_idx]
            self.segment_progress = min(overflow / max(next_wp.distance_to_next_m, 0.1), 0.99)

        cur_wp = wps[self.current_wp_idx]
        nxt_wp = wps[(self.current_wp_idx + 1) % len(wps)]
        self.lat, self.lon = interpolate_point(
            cur_wp.lat, cur_wp.lon, nxt_wp.lat, nxt_wp.lon, self.segment_progress
        )
        self.bearing = cur_wp.bearing_deg
        return self._fix()
