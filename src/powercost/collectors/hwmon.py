"""hwmon power sensors (AMD ``amdgpu``/``zenpower``/``fam15h_power``, board sensors).

hwmon exposes instantaneous power in microwatts as ``power<N>_input`` or
``power<N>_average``; there is no counter to difference.
"""

import logging
import re
import time
from pathlib import Path

from ..models import CounterKind, RawCounterSample, SourceId
from .base import PowerSource, SensorUnavailable, read_sysfs_number

logger = logging.getLogger(__name__)

DEFAULT_HWMON_ROOT = Path("/sys/class/hwmon")
POWER_FILE_RE = re.compile(r"^power(\d+)_(input|average)$")

# GPU chips report the card, not the system; they are read by the detail collector
SKIP_CHIPS = {"amdgpu", "nouveau"}


def find_power_sensor(root: Path = DEFAULT_HWMON_ROOT) -> tuple[str, Path] | None:
    """Return (chip name, path) of the first readable power sensor, if any."""
    if not root.is_dir():
        return None

    for chip_dir in sorted(root.iterdir()):
        try:
            chip = (chip_dir / "name").read_text().strip()
        except OSError:
            chip = chip_dir.name
        if chip in SKIP_CHIPS:
            continue
        try:
            matches = [(POWER_FILE_RE.match(p.name), p) for p in chip_dir.iterdir()]
        except OSError:
            continue
        # Lowest channel first, *_input before *_average
        candidates = sorted(
            ((int(m.group(1)), m.group(2) != "input", p) for m, p in matches if m),
        )
        for _, _, path in candidates:
            if path.is_file():
                return chip, path
    return None


class HwmonSource(PowerSource):
    """Instantaneous power from an hwmon sensor. Tier 1: a direct hardware reading."""

    source_id = SourceId.HWMON
    tier = 1
    name = "hwmon power sensor"
    permission_hint = "Grant read access to /sys/class/hwmon/*/power*_input"

    def __init__(self, root: Path = DEFAULT_HWMON_ROOT) -> None:
        self.root = Path(root)
        self._sensor: tuple[str, Path] | None = None

    @property
    def sensor_path(self) -> Path:
        if self._sensor is None:
            found = find_power_sensor(self.root)
            if found is None:
                raise SensorUnavailable(f"No hwmon power sensor under {self.root}")
            self._sensor = found
            logger.info("Found hwmon power sensor %s at %s", found[0], found[1])
        return self._sensor[1]

    def sample(self) -> RawCounterSample:
        microwatts = read_sysfs_number(self.sensor_path)
        return RawCounterSample(
            value=microwatts / 1_000_000,
            timestamp=time.monotonic(),
            kind=CounterKind.POWER,
        )
