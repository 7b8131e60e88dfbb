"""Power source providers used to gate uploads."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from telemetry_spool.const import POWER_SUPPLY_ROOT
from telemetry_spool.models import BatteryState

logger = logging.getLogger(__name__)


class PowerMonitor(Protocol):
    """Reports the current power source."""

    def battery_state(self) -> BatteryState:
        """Return a snapshot of the power source."""
        ...


class StaticPowerMonitor:
    """Power state supplied by the host application."""

    def __init__(self, charging: bool = True, level: float | None = None) -> None:
        """Initialise StaticPowerMonitor.

        Args:
            charging: Whether the device is on external power.
            level: Battery charge in [0, 1], None when unknown.
        """
        self._state = BatteryState(charging=charging, level=level)

    def set_state(self, charging: bool, level: float | None = None) -> None:
        """Replace the reported power state."""
        self._state = BatteryState(charging=charging, level=level)

    def battery_state(self) -> BatteryState:
        """Return the configured power state."""
        return self._state


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except OSError:
        return None


class SysfsPowerMonitor:
    """Read the power source from Linux ``/sys/class/power_supply``.

    A machine without a battery (desktop, server, container) reports
    ``charging=True``.
    """

    def __init__(self, root: Path = POWER_SUPPLY_ROOT) -> None:
        """Initialise SysfsPowerMonitor.

        Args:
            root: Power supply class directory.
        """
        self._root = root

    def _supplies(self) -> list[Path]:
        try:
            return sorted(path for path in self._root.iterdir() if path.is_dir())
        except OSError:
            return []

    def battery_state(self) -> BatteryState:
        """Return a snapshot of the power source."""
        batteries: list[Path] = []
        on_mains = False
        for supply in self._supplies():
            supply_type = _read_text(supply / "type")
            if supply_type == "Battery":
                batteries.append(supply)
            elif supply_type in ("Mains", "USB"):
                on_mains = on_mains or _read_text(supply / "online") == "1"

        if not batteries:
            return BatteryState(charging=True)

        battery = batteries[0]
        status = _read_text(battery / "status")
        charging = on_mains or status in ("Charging", "Full")

        level: float | None = None
        capacity = _read_text(battery / "capacity")
        if capacity is not None:
            try:
                level = max(0.0, min(1.0, int(capacity) / 100))
            except ValueError:
                logger.debug("Unreadable battery capacity %r", capacity)
        return BatteryState(charging=charging, level=level)
