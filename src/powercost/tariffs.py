"""Pricing engine: rate lookup and cost calculation for the four tariff modes.

Peak/off-peak windows are billed at the rate in effect at the end of the
window (the tick timestamp). Energy is never prorated across a boundary
inside a single window.
"""

from dataclasses import replace
from datetime import date, datetime, time, timedelta

from .models import (
    DayColor,
    PeakOffpeakTariff,
    SeasonalTariff,
    SimpleTariff,
    TariffConfig,
    TempoTariff,
)

HOURS_PER_DAY = 24
DAYS_PER_MONTH = 30


def parse_time(time_str: str) -> time:
    """Parse HH:MM string to time object."""
    parts = time_str.split(":")
    if len(parts) != 2:
        raise ValueError(f"Expected HH:MM, got {time_str!r}")
    return time(int(parts[0]), int(parts[1]))


def time_in_range(check_time: time, start: time, end: time) -> bool:
    """Check if a time falls within [start, end) (handles overnight ranges)."""
    if start <= end:
        return start <= check_time < end
    else:
        # Overnight range (e.g., 22:00 to 06:00)
        return check_time >= start or check_time < end


def tariff_mode(tariff: TariffConfig) -> str:
    """Config name of a tariff variant."""
    match tariff:
        case SimpleTariff():
            return "simple"
        case PeakOffpeakTariff():
            return "peak_offpeak"
        case SeasonalTariff():
            return "seasonal"
        case TempoTariff():
            return "tempo"
    raise TypeError(f"Unknown tariff type: {type(tariff).__name__}")


def tempo_day(dt: datetime, tariff: TempoTariff) -> date:
    """The Tempo day a moment belongs to. Days roll over at ``day_start``, not midnight."""
    if dt.time() < tariff.day_start:
        return dt.date() - timedelta(days=1)
    return dt.date()


def tempo_color(dt: datetime, tariff: TempoTariff) -> DayColor:
    """Color in effect at ``dt``; unknown days fall back to the least favourable color."""
    return tariff.day_colors.get(tempo_day(dt, tariff), tariff.fallback_color)


def rate_for_time(dt: datetime, tariff: TariffConfig) -> float:
    """Get the rate per kWh in effect at a specific datetime."""
    match tariff:
        case SimpleTariff(rate_per_kwh=rate):
            return rate
        case PeakOffpeakTariff():
            if time_in_range(dt.time(), tariff.offpeak_start, tariff.offpeak_end):
                return tariff.offpeak_rate
            return tariff.peak_rate
        case SeasonalTariff():
            if dt.month in tariff.winter_months:
                return tariff.winter_rate
            return tariff.summer_rate
        case TempoTariff():
            offpeak = time_in_range(dt.time(), tariff.offpeak_start, tariff.offpeak_end)
            color = tempo_color(dt, tariff)
            rates = {
                (DayColor.BLUE, False): tariff.blue_peak,
                (DayColor.BLUE, True): tariff.blue_offpeak,
                (DayColor.WHITE, False): tariff.white_peak,
                (DayColor.WHITE, True): tariff.white_offpeak,
                (DayColor.RED, False): tariff.red_peak,
                (DayColor.RED, True): tariff.red_offpeak,
            }
            return rates[(color, offpeak)]
    raise TypeError(f"Unknown tariff type: {type(tariff).__name__}")


def cost(
    energy_wh: float,
    window_start: datetime,
    window_end: datetime,
    tariff: TariffConfig,
) -> float:
    """Cost of ``energy_wh`` consumed between ``window_start`` and ``window_end``.

    Pure: the same arguments always give the same result, so callers can
    recompute a running cost from a cumulative total on every tick.
    """
    if energy_wh <= 0:
        return 0.0
    if window_end < window_start:
        raise ValueError("window_end is before window_start")
    return energy_wh / 1000 * rate_for_time(window_end, tariff)


def estimate_costs(watts: float, at: datetime, tariff: TariffConfig) -> dict[str, float]:
    """Projected hourly, daily and monthly cost for a constant draw at the current rate."""
    hourly = cost(watts, at, at, tariff)
    return {
        "hourly": hourly,
        "daily": hourly * HOURS_PER_DAY,
        "monthly": hourly * HOURS_PER_DAY * DAYS_PER_MONTH,
    }


def with_day_colors(tariff: TariffConfig, colors: dict[date, DayColor]) -> TariffConfig:
    """Return a Tempo tariff with extra day colors merged in (explicit entries win)."""
    if not isinstance(tariff, TempoTariff) or not colors:
        return tariff
    merged = dict(colors)
    merged.update(tariff.day_colors)
    return replace(tariff, day_colors=merged)


def describe_tariff(tariff: TariffConfig, currency_symbol: str = "€") -> list[tuple[str, str]]:
    """Human readable (label, value) rows for a tariff."""
    def money(rate: float) -> str:
        return f"{rate:.4f} {currency_symbol}/kWh"

    rows = [("Mode", tariff_mode(tariff))]
    match tariff:
        case SimpleTariff():
            rows.append(("Rate", money(tariff.rate_per_kwh)))
        case PeakOffpeakTariff():
            rows.append(("Peak", money(tariff.peak_rate)))
            rows.append(("Off-peak", money(tariff.offpeak_rate)))
            rows.append(
                ("Off-peak hours", f"{tariff.offpeak_start:%H:%M} - {tariff.offpeak_end:%H:%M}")
            )
        case SeasonalTariff():
            rows.append(("Summer", money(tariff.summer_rate)))
            rows.append(("Winter", money(tariff.winter_rate)))
            rows.append(("Winter months", ", ".join(str(m) for m in sorted(tariff.winter_months))))
        case TempoTariff():
            for color in DayColor:
                peak = getattr(tariff, f"{color.value}_peak")
                offpeak = getattr(tariff, f"{color.value}_offpeak")
                rows.append((f"{color.value.title()} day", f"{money(peak)} / {money(offpeak)}"))
            rows.append(
                ("Off-peak hours", f"{tariff.offpeak_start:%H:%M} - {tariff.offpeak_end:%H:%M}")
            )
            rows.append(("Known day colors", str(len(tariff.day_colors))))
            rows.append(("Unknown days billed as", tariff.fallback_color.value))
    return rows
