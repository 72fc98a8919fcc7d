"""GeoTrack client — core internal data models.

Plain dataclasses with no framework dependencies. Records are converted to
the Traccar JSON schema at the transport boundary via ``to_json()``.
"""

from __future__ import annotations

import platform
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Protocol tag attached to every record we send.
PROTOCOL_TAG = "geotrack"

# m/s -> km/h
_MPS_TO_KMH = 3.6


class TrackingMode(str, Enum):
    TIME = "time"
    DISTANCE = "distance"
    ANGLE = "angle"
    HYBRID = "hybrid"


class MotionState(str, Enum):
    UNKNOWN = "unknown"
    MOVING = "moving"
    STATIONARY = "stationary"
    SLEEPING = "sleeping"


class ClientStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    TRACKING = "tracking"
    ERROR = "error"


@dataclass(frozen=True)
class PositionFix:
    """A single observed position sample from the position source."""

    lat: float
    lon: float
    accuracy_m: float
    timestamp_ms: int
    altitude_m: float | None = None
    speed_mps: float | None = None
    heading_deg: float | None = None

    def __post_init__(self) -> None:
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"latitude {self.lat} out of range")
        if not -180.0 <= self.lon <= 180.0:
            raise ValueError(f"longitude {self.lon} out of range")
        if self.accuracy_m < 0:
            raise ValueError(f"accuracy {self.accuracy_m} must be >= 0")

    def to_dict(self) -> dict:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "accuracy_m": self.accuracy_m,
            "timestamp_ms": self.timestamp_ms,
            "altitude_m": self.altitude_m,
            "speed_mps": self.speed_mps,
            "heading_deg": self.heading_deg,
        }


@dataclass(frozen=True)
class PositionRecord:
    """Wire-ready Traccar position. Never mutated after creation."""

    device_id: str
    device_time: str
    fix_time: str
    latitude: float
    longitude: float
    altitude: float = 0.0
    speed_kmh: float = 0.0
    course: float = 0.0
    accuracy: float | None = None
    valid: bool = True
    outdated: bool = False
    protocol: str = PROTOCOL_TAG
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict:
        data = {
            "deviceId": self.device_id,
            "protocol": self.protocol,
            "deviceTime": self.device_time,
            "fixTime": self.fix_time,
            "outdated": self.outdated,
            "valid": self.valid,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "altitude": self.altitude,
            "speed": self.speed_kmh,
            "course": self.course,
            "attributes": dict(self.attributes),
        }
        if self.accuracy is not None:
            data["accuracy"] = self.accuracy
        return data


def _iso_utc(timestamp_ms: int) -> str:
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _host_attributes() -> dict[str, str]:
    return {"hostname": socket.gethostname(), "platform": platform.system()}


def create_position_record(
    device_id: str,
    fix: PositionFix,
    *,
    battery_level: int | None = None,
    charging: bool | None = None,
    motion: bool = False,
    extra: dict[str, Any] | None = None,
    now_ms: int | None = None,
) -> PositionRecord:
    """Build a record from a fix plus the device state at send time.

    Battery fields are left out of the attribute map when unknown.
    """
    if now_ms is None:
        now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)

    attributes: dict[str, Any] = {
        "motion": motion,
        "accuracy": fix.accuracy_m,
    }
    if battery_level is not None:
        attributes["batteryLevel"] = battery_level
    if charging is not None:
        attributes["charge"] = charging
    attributes.update(_host_attributes())
    if extra:
        attributes.update(extra)

    return PositionRecord(
        device_id=device_id,
        device_time=_iso_utc(now_ms),
        fix_time=_iso_utc(fix.timestamp_ms),
        latitude=fix.lat,
        longitude=fix.lon,
        altitude=fix.altitude_m or 0.0,
        speed_kmh=(fix.speed_mps or 0.0) * _MPS_TO_KMH,
        course=fix.heading_deg or 0.0,
        accuracy=fix.accuracy_m,
        attributes=attributes,
    )


@dataclass
class ClientState:
    """Externally visible snapshot of the tracking client.

    Mutated only by the orchestrator.
    """

    is_connected: bool = False
    is_tracking: bool = False
    is_authenticated: bool = False
    current_position: PositionFix | None = None
    last_sent_position: PositionRecord | None = None
    error: str | None = None
    status: ClientStatus = ClientStatus.IDLE
    motion_state: MotionState = MotionState.UNKNOWN
    battery_level: int | None = None
    is_charging: bool | None = None
    sent_count: int = 0
    error_count: int = 0
    last_server_message: str | None = None

    def snapshot(self, queue_depth: int = 0) -> dict:
        """Return a JSON-serializable snapshot of the state."""
        return {
            "is_connected": self.is_connected,
            "is_tracking": self.is_tracking,
            "is_authenticated": self.is_authenticated,
            "status": self.status.value,
            "motion_state": self.motion_state.value,
            "current_position": self.current_position.to_dict() if self.current_position else None,
            "last_sent_position": self.last_sent_position.to_json() if self.last_sent_position else None,
            "battery_level": self.battery_level,
            "is_charging": self.is_charging,
            "sent_count": self.sent_count,
            "error_count": self.error_count,
            "error": self.error,
            "queue_depth": queue_depth,
            "last_server_message": self.last_server_message,
        }
