"""Battery discharge-rate sensor for laptops.

Reads ``power_now`` (microwatts) from /sys/class/power_supply/BAT*, or
``current_now`` x ``voltage_now`` on batteries that only report current.
Only meaningful while discharging: on AC power the battery rate says
nothing about system draw.
"""

import time
from pathlib import Path

from ..models import CounterKind, RawCounterSample, SourceId
from .base import PowerSource, SensorUnavailable, read_sysfs_number

DEFAULT_POWER_SUPPLY_ROOT = Path("/sys/class/power_supply")


def find_battery(root: Path = DEFAULT_POWER_SUPPLY_ROOT) -> Path | None:
    """Return the first BAT* directory that reports power or current."""
    if not root.is_dir():
        return None
    for entry in sorted(root.iterdir()):
        if not entry.name.startswith("BAT"):
            continue
        if (entry / "power_now").exists() or (entry / "current_now").exists():
            return entry
    return None


class BatterySource(PowerSource):
    """Battery discharge rate. Tier 3."""

    source_id = SourceId.BATTERY
    tier = 3
    name = "Battery discharge rate"

    def __init__(self, root: Path = DEFAULT_POWER_SUPPLY_ROOT) -> None:
        self.root = Path(root)
        self._battery: Path | None = None

    @property
    def battery_dir(self) -> Path:
        if self._battery is None:
            found = find_battery(self.root)
            if found is None:
                raise SensorUnavailable(f"No battery under {self.root}")
            self._battery = found
        return self._battery

    def _status(self) -> str:
        try:
            return (self.battery_dir / "status").read_text().strip()
        except OSError:
            return "Unknown"

    def sample(self) -> RawCounterSample:
        battery = self.battery_dir
        if self._status() in ("Charging", "Full", "Not charging"):
            raise SensorUnavailable(f"{battery.name} is not discharging")

        if (battery / "power_now").exists():
            microwatts = read_sysfs_number(battery / "power_now")
        else:
            microamps = read_sysfs_number(battery / "current_now")
            microvolts = read_sysfs_number(battery / "voltage_now")
            microwatts = microamps * microvolts / 1_000_000

        return RawCounterSample(
            value=abs(microwatts) / 1_000_000,
            timestamp=time.monotonic(),
            kind=CounterKind.POWER,
        )
