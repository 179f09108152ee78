"""Data models for power readings, tariffs and tracking sessions."""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum


class SourceId(str, Enum):
    """Acquisition technique a reading came from."""

    RAPL = "rapl"
    HWMON = "hwmon"
    GPU = "gpu"
    BATTERY = "battery"
    ESTIMATED = "estimated"


class CounterKind(str, Enum):
    """Whether a raw sample is an accumulating energy counter or a power value."""

    ENERGY = "energy"
    POWER = "power"


class DayColor(str, Enum):
    """Tempo day classification, published by the utility a day ahead."""

    BLUE = "blue"
    WHITE = "white"
    RED = "red"


@dataclass(frozen=True)
class RawCounterSample:
    """A single raw indicator read from a source provider."""

    value: float
    timestamp: float  # monotonic seconds
    kind: CounterKind = CounterKind.ENERGY
    max_range: int | None = None
    joules_per_unit: float = 1e-6  # RAPL counters are in microjoules


@dataclass(frozen=True)
class PowerReading:
    """Resolved power at one fast tick."""

    timestamp: datetime
    power_watts: float
    source_id: SourceId
    is_estimated: bool
    component_breakdown: dict[str, float] | None = None


@dataclass(frozen=True)
class SimpleTariff:
    """Flat rate per kWh."""

    rate_per_kwh: float = 0.20


@dataclass(frozen=True)
class PeakOffpeakTariff:
    """Time-of-day tariff with one off-peak window (may wrap past midnight)."""

    peak_rate: float = 0.27
    offpeak_rate: float = 0.20
    offpeak_start: time = time(22, 0)
    offpeak_end: time = time(6, 0)


@dataclass(frozen=True)
class SeasonalTariff:
    """Summer/winter rates selected by calendar month."""

    summer_rate: float = 0.20
    winter_rate: float = 0.25
    winter_months: frozenset[int] = frozenset({11, 12, 1, 2, 3})


@dataclass(frozen=True)
class TempoTariff:
    """Day color x peak/off-peak tariff. Day colors are supplied, never computed."""

    blue_peak: float = 0.16
    blue_offpeak: float = 0.13
    white_peak: float = 0.19
    white_offpeak: float = 0.15
    red_peak: float = 0.76
    red_offpeak: float = 0.16
    offpeak_start: time = time(22, 0)
    offpeak_end: time = time(6, 0)
    day_start: time = time(6, 0)
    day_colors: dict[date, DayColor] = field(default_factory=dict, hash=False)
    fallback_color: DayColor = DayColor.RED


TariffConfig = SimpleTariff | PeakOffpeakTariff | SeasonalTariff | TempoTariff


@dataclass(frozen=True)
class BaselineDetection:
    """Estimated idle power draw."""

    detected_watts: float
    confidence: float
    sample_count: int


@dataclass
class Session:
    """A surplus-over-baseline tracking session."""

    id: int | None
    start_time: datetime
    baseline_watts: float
    end_time: datetime | None = None
    cumulative_wh: float = 0.0
    surplus_wh: float = 0.0
    surplus_cost: float = 0.0
    label: str | None = None
    category: str | None = None

    @property
    def is_active(self) -> bool:
        return self.end_time is None


@dataclass
class DailyAggregate:
    """Energy and cost totals for one calendar day."""

    date: date
    total_wh: float = 0.0
    total_cost: float = 0.0
    avg_watts: float = 0.0
    max_watts: float = 0.0
    pricing_mode: str | None = None
    readings_count: int = 0


@dataclass(frozen=True)
class SourceStatus:
    """What the selector is currently reading from, for display."""

    source_id: SourceId
    name: str
    tier: int
    is_estimated: bool
    degraded: bool = False
    consecutive_failures: int = 0
    last_error: str | None = None
    hint: str | None = None


@dataclass(frozen=True)
class AccrualSnapshot:
    """Immutable copy of the accrual state handed to readers."""

    session_start: datetime
    latest_reading: PowerReading | None = None
    cumulative_energy_wh: float = 0.0
    current_cost: float = 0.0
    avg_power_watts: float = 0.0
    hourly_cost_estimate: float = 0.0
    daily_cost_estimate: float = 0.0
    monthly_cost_estimate: float = 0.0
    tick_count: int = 0
    source: SourceStatus | None = None
    active_session: Session | None = None

    @property
    def session_duration_secs(self) -> float:
        if self.latest_reading is None:
            return 0.0
        return max(0.0, (self.latest_reading.timestamp - self.session_start).total_seconds())


@dataclass(frozen=True)
class ProcessSample:
    """One process line in the detail view."""

    pid: int
    name: str
    cpu_percent: float
    memory_bytes: int
    memory_percent: float
    is_pinned: bool = False


@dataclass(frozen=True)
class GpuMetrics:
    """Discrete GPU metrics, from NVML or the amdgpu sysfs files."""

    name: str
    power_watts: float | None = None
    usage_percent: float | None = None
    temperature_celsius: float | None = None
    vram_used_mb: int | None = None
    vram_total_mb: int | None = None
    source: str = "nvml"


@dataclass(frozen=True)
class DetailSnapshot:
    """Output of one slow-cadence tick."""

    timestamp: datetime
    component_breakdown: dict[str, float] = field(default_factory=dict)
    processes: list[ProcessSample] = field(default_factory=list)
    temperatures: dict[str, float] = field(default_factory=dict)
    fans: dict[str, int] = field(default_factory=dict)
    cpu_percent: float | None = None
    memory_percent: float | None = None
    gpu: GpuMetrics | None = None
