"""TDP-based power estimate for machines without any usable sensor.

The CPU model is matched against a table of thermal design power values;
the estimate interpolates between an idle fraction of TDP and full TDP using
the instantaneous load from psutil, plus a fixed allowance for the rest of
the platform (board, memory, storage, fans).
"""

import logging
import platform
import re
import threading
import time
from pathlib import Path

import psutil

from ..models import CounterKind, RawCounterSample, SourceId
from .base import PowerSource

logger = logging.getLogger(__name__)

CPUINFO_PATH = Path("/proc/cpuinfo")

DEFAULT_TDP_WATTS = 65.0
IDLE_FRACTION = 0.15  # share of TDP drawn by an idle package
PLATFORM_OVERHEAD_WATTS = 20.0

# Ordered most specific first; the first pattern found in the model name wins
TDP_TABLE: list[tuple[str, float]] = [
    # Intel mobile suffixes
    (r"i[3579]-\d{4,5}U\b", 15.0),
    (r"i[3579]-\d{4,5}P\b", 28.0),
    (r"i[3579]-\d{4,5}G\d", 28.0),
    (r"i[3579]-\d{4,5}H[KSX]?\b", 45.0),
    (r"Core\(TM\) Ultra [579] \d{3}U", 15.0),
    (r"Core\(TM\) Ultra [579] \d{3}H", 28.0),
    # Intel desktop
    (r"i9-\d{4,5}K", 125.0),
    (r"i7-\d{4,5}K", 125.0),
    (r"i5-\d{4,5}K", 125.0),
    (r"i9-\d{4,5}", 65.0),
    (r"i7-\d{4,5}", 65.0),
    (r"i5-\d{4,5}", 65.0),
    (r"i3-\d{4,5}", 60.0),
    (r"Xeon", 150.0),
    (r"Celeron|Pentium|Atom", 10.0),
    # AMD
    (r"Ryzen \d \d{4}U", 15.0),
    (r"Ryzen \d \d{4}H[SX]?", 45.0),
    (r"Ryzen 9 \d{4}X3D", 120.0),
    (r"Ryzen 9 \d{4}X", 170.0),
    (r"Ryzen 7 \d{4}X", 105.0),
    (r"Ryzen [3579] \d{4}", 65.0),
    (r"Threadripper", 280.0),
    (r"EPYC", 200.0),
    # Apple silicon
    (r"Apple M\d (Max|Ultra)", 60.0),
    (r"Apple M\d", 20.0),
]


def read_cpu_model(cpuinfo_path: Path = CPUINFO_PATH) -> str:
    """Best-effort CPU model string."""
    try:
        for line in cpuinfo_path.read_text().splitlines():
            if line.lower().startswith("model name"):
                return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor() or "Unknown CPU"


def lookup_tdp(cpu_model: str) -> float:
    """TDP in watts for a CPU model string, or the default when unknown."""
    for pattern, tdp in TDP_TABLE:
        if re.search(pattern, cpu_model, re.IGNORECASE):
            return tdp
    return DEFAULT_TDP_WATTS


def estimate_cpu_watts(tdp_watts: float, load_percent: float) -> float:
    """Linear interpolation between idle and full package power."""
    load = min(max(load_percent, 0.0), 100.0) / 100
    return tdp_watts * (IDLE_FRACTION + (1 - IDLE_FRACTION) * load)


class CpuLoadMeter:
    """CPU busy percentage since this meter's previous reading.

    Keeps its own reference point instead of psutil's process-wide one, so
    other callers of ``psutil.cpu_percent`` do not shorten its interval.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = psutil.cpu_times()

    @staticmethod
    def _idle(times) -> float:
        return times.idle + getattr(times, "iowait", 0.0)

    @staticmethod
    def _total(times) -> float:
        # Linux guest time is already included in user/nice
        return sum(times) - getattr(times, "guest", 0.0) - getattr(times, "guest_nice", 0.0)

    def percent(self) -> float:
        with self._lock:
            current = psutil.cpu_times()
            last, self._last = self._last, current
        total = self._total(current) - self._total(last)
        if total <= 0:
            return 0.0
        busy = 1 - (self._idle(current) - self._idle(last)) / total
        return min(max(busy * 100, 0.0), 100.0)


class EstimatorSource(PowerSource):
    """Synthetic CPU-load based estimate. Tier 4, always available."""

    source_id = SourceId.ESTIMATED
    tier = 4
    name = "TDP estimate (no hardware sensor)"

    def __init__(
        self,
        cpu_model: str | None = None,
        platform_overhead_watts: float = PLATFORM_OVERHEAD_WATTS,
    ) -> None:
        self.cpu_model = cpu_model or read_cpu_model()
        self.tdp_watts = lookup_tdp(self.cpu_model)
        self.platform_overhead_watts = platform_overhead_watts
        self.load = CpuLoadMeter()
        logger.debug("Estimator using TDP %.0f W for %s", self.tdp_watts, self.cpu_model)

    def cpu_watts(self) -> float:
        return estimate_cpu_watts(self.tdp_watts, self.load.percent())

    def sample(self) -> RawCounterSample:
        return RawCounterSample(
            value=self.cpu_watts() + self.platform_overhead_watts,
            timestamp=time.monotonic(),
            kind=CounterKind.POWER,
        )
