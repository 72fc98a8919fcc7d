"""Host battery readings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import psutil


@dataclass(frozen=True)
class BatteryReading:
    level: int        # percent, 0-100
    charging: bool


class BatterySource(Protocol):
    def read(self) -> BatteryReading | None: ...


class PsutilBatterySource:
    """Reads the host battery through psutil. None when there is no battery."""

    def read(self) -> BatteryReading | None:
        battery = psutil.sensors_battery()
        if battery is None:
            return None
        return BatteryReading(
            level=int(round(battery.percent)),
            charging=bool(battery.power_plugged),
        )
