"""Settings loading, validation and saving.

Settings come from a YAML file (``POWERCOST_CONFIG`` or
``~/.config/powercost-tracker/config.yaml``). A Settings object is immutable;
edits produce a new validated object that replaces the old one wholesale.
"""

import os
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, time
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import (
    DayColor,
    PeakOffpeakTariff,
    SeasonalTariff,
    SimpleTariff,
    TariffConfig,
    TempoTariff,
)
from .tariffs import parse_time, tariff_mode

load_dotenv()

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "powercost-tracker" / "config.yaml"

PRICING_MODES = ("simple", "peak_offpeak", "seasonal", "tempo")


class ConfigInvalid(ValueError):
    """A settings value failed validation. ``key`` names the offending entry."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"{key}: {message}")
        self.key = key


@dataclass(frozen=True)
class Settings:
    """Validated engine settings."""

    # general
    refresh_interval_s: float = 1.0
    detail_interval_s: float = 5.0
    persist_every: int = 10
    daily_aggregate_every: int = 60
    retention_days: int = 90

    # pricing
    pricing_mode: str = "simple"
    currency: str = "EUR"
    currency_symbol: str = "€"
    simple: SimpleTariff = field(default_factory=SimpleTariff)
    peak_offpeak: PeakOffpeakTariff = field(default_factory=PeakOffpeakTariff)
    seasonal: SeasonalTariff = field(default_factory=SeasonalTariff)
    tempo: TempoTariff = field(default_factory=TempoTariff)

    # sources
    failure_threshold: int = 3
    invalid_threshold: int = 5
    reprobe_interval_s: float = 60.0
    probe_timeout_s: float = 2.0
    max_plausible_watts: float = 5000.0

    # baseline
    baseline_auto: bool = True
    baseline_watts: float = 0.0
    baseline_window: int = 300

    # advanced
    process_limit: int = 10
    pinned_processes: tuple[str, ...] = ()

    @property
    def tariff(self) -> TariffConfig:
        """The tariff for the selected pricing mode."""
        return getattr(self, self.pricing_mode)

    def with_tariff(self, tariff: TariffConfig) -> "Settings":
        mode = tariff_mode(tariff)
        return replace(self, pricing_mode=mode, **{mode: tariff})


def get_config_path() -> Path:
    return Path(os.environ.get("POWERCOST_CONFIG") or DEFAULT_CONFIG_PATH).expanduser()


def _require(condition: bool, key: str, message: str) -> None:
    if not condition:
        raise ConfigInvalid(key, message)


def _number(data: dict, key: str, default: float, prefix: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigInvalid(f"{prefix}.{key}", f"expected a number, got {value!r}")
    return float(value)


def _integer(data: dict, key: str, default: int, prefix: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigInvalid(f"{prefix}.{key}", f"expected an integer, got {value!r}")
    return value


def _rate(data: dict, key: str, default: float, prefix: str) -> float:
    value = _number(data, key, default, prefix)
    _require(value >= 0, f"{prefix}.{key}", "rate must be >= 0")
    return value


def _time(data: dict, key: str, default: time, prefix: str) -> time:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, int):
        # YAML 1.1 reads unquoted 22:00 as a sexagesimal integer
        value = f"{value // 60:02d}:{value % 60:02d}"
    try:
        return parse_time(str(value))
    except ValueError:
        raise ConfigInvalid(f"{prefix}.{key}", f"expected HH:MM, got {value!r}")


def _section(data: dict, key: str) -> dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigInvalid(key, "expected a mapping")
    return value


def tariff_from_dict(mode: str, data: dict | None) -> TariffConfig:
    """Build one tariff variant from its config section."""
    data = data or {}
    prefix = f"pricing.{mode}"
    if mode == "simple":
        return SimpleTariff(rate_per_kwh=_rate(data, "rate_per_kwh", SimpleTariff.rate_per_kwh, prefix))

    if mode == "peak_offpeak":
        d = PeakOffpeakTariff()
        return PeakOffpeakTariff(
            peak_rate=_rate(data, "peak_rate", d.peak_rate, prefix),
            offpeak_rate=_rate(data, "offpeak_rate", d.offpeak_rate, prefix),
            offpeak_start=_time(data, "offpeak_start", d.offpeak_start, prefix),
            offpeak_end=_time(data, "offpeak_end", d.offpeak_end, prefix),
        )

    if mode == "seasonal":
        d = SeasonalTariff()
        months = data.get("winter_months", sorted(d.winter_months))
        _require(isinstance(months, list), f"{prefix}.winter_months", "expected a list of months")
        for month in months:
            _require(
                isinstance(month, int) and not isinstance(month, bool) and 1 <= month <= 12,
                f"{prefix}.winter_months",
                f"month must be 1..12, got {month!r}",
            )
        return SeasonalTariff(
            summer_rate=_rate(data, "summer_rate", d.summer_rate, prefix),
            winter_rate=_rate(data, "winter_rate", d.winter_rate, prefix),
            winter_months=frozenset(months),
        )

    if mode == "tempo":
        d = TempoTariff()
        rates = {
            f.name: _rate(data, f.name, getattr(d, f.name), prefix)
            for f in fields(TempoTariff)
            if f.name.endswith(("_peak", "_offpeak"))
        }
        day_colors = {}
        for day, color in (data.get("days") or {}).items():
            try:
                day_colors[date.fromisoformat(str(day))] = DayColor(str(color).lower())
            except ValueError:
                raise ConfigInvalid(f"{prefix}.days", f"bad entry {day!r}: {color!r}")
        fallback = str(data.get("fallback_color", d.fallback_color.value)).lower()
        try:
            fallback_color = DayColor(fallback)
        except ValueError:
            raise ConfigInvalid(f"{prefix}.fallback_color", f"unknown color {fallback!r}")
        return TempoTariff(
            **rates,
            offpeak_start=_time(data, "offpeak_start", d.offpeak_start, prefix),
            offpeak_end=_time(data, "offpeak_end", d.offpeak_end, prefix),
            day_start=_time(data, "day_start", d.day_start, prefix),
            day_colors=day_colors,
            fallback_color=fallback_color,
        )

    raise ConfigInvalid("pricing.mode", f"unknown mode {mode!r} (expected one of {', '.join(PRICING_MODES)})")


def tariff_to_dict(tariff: TariffConfig) -> dict:
    """Config section for a tariff (inverse of tariff_from_dict)."""
    data: dict[str, Any] = {}
    for key, value in asdict(tariff).items():
        if isinstance(value, time):
            data[key] = value.strftime("%H:%M")
        elif isinstance(value, frozenset):
            data[key] = sorted(value)
        elif isinstance(value, DayColor):
            data[key] = value.value
        elif key == "day_colors":
            if value:
                data["days"] = {day.isoformat(): color.value for day, color in sorted(value.items())}
        else:
            data[key] = value
    return data


def validate_settings(settings: Settings) -> Settings:
    """Check cross-field constraints. Returns the settings unchanged if valid."""
    _require(settings.refresh_interval_s > 0, "general.refresh_interval_s", "must be > 0")
    _require(settings.detail_interval_s > 0, "general.detail_interval_s", "must be > 0")
    _require(
        settings.detail_interval_s >= settings.refresh_interval_s,
        "general.detail_interval_s",
        "must be >= refresh_interval_s",
    )
    _require(settings.persist_every >= 1, "general.persist_every", "must be >= 1")
    _require(settings.daily_aggregate_every >= 1, "general.daily_aggregate_every", "must be >= 1")
    _require(settings.retention_days >= 1, "general.retention_days", "must be >= 1")
    _require(settings.pricing_mode in PRICING_MODES, "pricing.mode", f"unknown mode {settings.pricing_mode!r}")
    _require(settings.failure_threshold >= 1, "sources.failure_threshold", "must be >= 1")
    _require(settings.invalid_threshold >= 1, "sources.invalid_threshold", "must be >= 1")
    _require(settings.reprobe_interval_s > 0, "sources.reprobe_interval_s", "must be > 0")
    _require(settings.probe_timeout_s > 0, "sources.probe_timeout_s", "must be > 0")
    _require(settings.max_plausible_watts > 0, "sources.max_plausible_watts", "must be > 0")
    _require(settings.baseline_watts >= 0, "baseline.watts", "must be >= 0")
    _require(settings.baseline_window >= 10, "baseline.window", "must be >= 10")
    _require(settings.process_limit >= 0, "advanced.process_limit", "must be >= 0")

    for mode in PRICING_MODES:
        tariff = getattr(settings, mode)
        for f in fields(tariff):
            if not f.name.endswith(("rate", "_peak", "_offpeak", "rate_per_kwh")):
                continue
            value = getattr(tariff, f.name)
            key = f"pricing.{mode}.{f.name}"
            _require(
                isinstance(value, (int, float)) and not isinstance(value, bool),
                key,
                f"expected a number, got {value!r}",
            )
            _require(value >= 0, key, "rate must be >= 0")

    months = settings.seasonal.winter_months
    _require(
        all(isinstance(m, int) and not isinstance(m, bool) and 1 <= m <= 12 for m in months),
        "pricing.seasonal.winter_months",
        "months must be numbers 1-12",
    )
    return settings


def settings_from_dict(data: dict | None) -> Settings:
    """Parse and validate a config mapping. Missing keys take their defaults."""
    data = data or {}
    d = Settings()
    general = _section(data, "general")
    pricing = _section(data, "pricing")
    sources = _section(data, "sources")
    baseline = _section(data, "baseline")
    advanced = _section(data, "advanced")

    mode = pricing.get("mode", d.pricing_mode)
    _require(mode in PRICING_MODES, "pricing.mode", f"unknown mode {mode!r}")

    pinned = advanced.get("pinned_processes") or []
    _require(isinstance(pinned, list), "advanced.pinned_processes", "expected a list of names")

    settings = Settings(
        refresh_interval_s=_number(general, "refresh_interval_s", d.refresh_interval_s, "general"),
        detail_interval_s=_number(general, "detail_interval_s", d.detail_interval_s, "general"),
        persist_every=_integer(general, "persist_every", d.persist_every, "general"),
        daily_aggregate_every=_integer(general, "daily_aggregate_every", d.daily_aggregate_every, "general"),
        retention_days=_integer(general, "retention_days", d.retention_days, "general"),
        pricing_mode=mode,
        currency=str(pricing.get("currency", d.currency)),
        currency_symbol=str(pricing.get("currency_symbol", d.currency_symbol)),
        simple=tariff_from_dict("simple", _section(pricing, "simple")),
        peak_offpeak=tariff_from_dict("peak_offpeak", _section(pricing, "peak_offpeak")),
        seasonal=tariff_from_dict("seasonal", _section(pricing, "seasonal")),
        tempo=tariff_from_dict("tempo", _section(pricing, "tempo")),
        failure_threshold=_integer(sources, "failure_threshold", d.failure_threshold, "sources"),
        invalid_threshold=_integer(sources, "invalid_threshold", d.invalid_threshold, "sources"),
        reprobe_interval_s=_number(sources, "reprobe_interval_s", d.reprobe_interval_s, "sources"),
        probe_timeout_s=_number(sources, "probe_timeout_s", d.probe_timeout_s, "sources"),
        max_plausible_watts=_number(sources, "max_plausible_watts", d.max_plausible_watts, "sources"),
        baseline_auto=bool(baseline.get("auto", d.baseline_auto)),
        baseline_watts=_number(baseline, "watts", d.baseline_watts, "baseline"),
        baseline_window=_integer(baseline, "window", d.baseline_window, "baseline"),
        process_limit=_integer(advanced, "process_limit", d.process_limit, "advanced"),
        pinned_processes=tuple(str(name) for name in pinned),
    )
    return validate_settings(settings)


def settings_to_dict(settings: Settings) -> dict:
    return {
        "general": {
            "refresh_interval_s": settings.refresh_interval_s,
            "detail_interval_s": settings.detail_interval_s,
            "persist_every": settings.persist_every,
            "daily_aggregate_every": settings.daily_aggregate_every,
            "retention_days": settings.retention_days,
        },
        "pricing": {
            "mode": settings.pricing_mode,
            "currency": settings.currency,
            "currency_symbol": settings.currency_symbol,
            **{mode: tariff_to_dict(getattr(settings, mode)) for mode in PRICING_MODES},
        },
        "sources": {
            "failure_threshold": settings.failure_threshold,
            "invalid_threshold": settings.invalid_threshold,
            "reprobe_interval_s": settings.reprobe_interval_s,
            "probe_timeout_s": settings.probe_timeout_s,
            "max_plausible_watts": settings.max_plausible_watts,
        },
        "baseline": {
            "auto": settings.baseline_auto,
            "watts": settings.baseline_watts,
            "window": settings.baseline_window,
        },
        "advanced": {
            "process_limit": settings.process_limit,
            "pinned_processes": list(settings.pinned_processes),
        },
    }


def load_config(config_path: Path | None = None) -> Settings:
    """Load settings from YAML. A missing file yields the defaults."""
    path = config_path or get_config_path()
    if not path.exists():
        return Settings()
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigInvalid(str(path), f"not valid YAML: {e}")
    if data is not None and not isinstance(data, dict):
        raise ConfigInvalid(str(path), "expected a mapping at the top level")
    return settings_from_dict(data)


def save_config(settings: Settings, config_path: Path | None = None) -> Path:
    """Validate and write settings as YAML. Returns the path written."""
    validate_settings(settings)
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(settings_to_dict(settings), f, sort_keys=False, allow_unicode=True)
    return path
