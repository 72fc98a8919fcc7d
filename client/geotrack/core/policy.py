"""Update policy: decides whether a new fix is worth transmitting.

Pure functions, no side effects. ``hybrid`` mode fires on the first trigger
that holds (time OR distance OR angle).
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from geotrack.core.models import TrackingMode

if TYPE_CHECKING:
    from geotrack.config import TraccarConfiguration
    from geotrack.core.models import PositionFix

# Earth radius in meters (for Haversine).
_EARTH_R = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return 2 * _EARTH_R * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def heading_difference(heading1: float | None, heading2: float | None) -> float:
    """Absolute circular difference in degrees, folded to [0, 180].

    A missing heading counts as 0.
    """
    diff = abs((heading2 or 0.0) - (heading1 or 0.0)) % 360
    return min(diff, 360 - diff)


def _time_due(last: PositionFix, candidate: PositionFix, config: TraccarConfiguration) -> bool:
    elapsed_ms = candidate.timestamp_ms - last.timestamp_ms
    if elapsed_ms <= 0:
        return False
    return elapsed_ms >= config.time_interval * 1000


def _distance_due(last: PositionFix, candidate: PositionFix, config: TraccarConfiguration) -> bool:
    distance = haversine_m(last.lat, last.lon, candidate.lat, candidate.lon)
    return distance >= config.distance_threshold


def _angle_due(last: PositionFix, candidate: PositionFix, config: TraccarConfiguration) -> bool:
    return heading_difference(last.heading_deg, candidate.heading_deg) >= config.angle_threshold


def should_send(
    last_sent: PositionFix | None,
    candidate: PositionFix,
    config: TraccarConfiguration,
) -> bool:
    """Return True if ``candidate`` qualifies for transmission."""
    if last_sent is None:
        return True

    mode = config.tracking_mode
    if mode == TrackingMode.TIME:
        return _time_due(last_sent, candidate, config)
    if mode == TrackingMode.DISTANCE:
        return _distance_due(last_sent, candidate, config)
    if mode == TrackingMode.ANGLE:
        return _angle_due(last_sent, candidate, config)
    if mode == TrackingMode.HYBRID:
        return (
            _time_due(last_sent, candidate, config)
            or _distance_due(last_sent, candidate, config)
            or _angle_due(last_sent, candidate, config)
        )
    return True
