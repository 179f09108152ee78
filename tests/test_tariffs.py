"""Tests for the pricing engine."""

from datetime import date, datetime, time

import pytest
from powercost.models import (
    DayColor,
    PeakOffpeakTariff,
    SeasonalTariff,
    SimpleTariff,
    TempoTariff,
)
from powercost.tariffs import (
    cost,
    describe_tariff,
    estimate_costs,
    parse_time,
    rate_for_time,
    tariff_mode,
    tempo_day,
    time_in_range,
    with_day_colors,
)


def test_simple_cost():
    """10 kWh at 0.20/kWh is 2.00."""
    tariff = SimpleTariff(rate_per_kwh=0.20)
    start = datetime(2024, 6, 1, 0, 0)
    end = datetime(2024, 6, 1, 10, 0)
    assert cost(10_000, start, end, tariff) == pytest.approx(2.00)


def test_cost_is_idempotent():
    tariff = PeakOffpeakTariff()
    start = datetime(2024, 6, 1, 8, 0)
    end = datetime(2024, 6, 1, 23, 0)
    assert cost(1234.5, start, end, tariff) == cost(1234.5, start, end, tariff)


@pytest.mark.parametrize(
    "tariff",
    [SimpleTariff(), PeakOffpeakTariff(), SeasonalTariff(), TempoTariff()],
)
def test_zero_energy_costs_nothing(tariff):
    now = datetime(2024, 1, 15, 12, 0)
    assert cost(0, now, now, tariff) == 0.0
    assert cost(-5, now, now, tariff) == 0.0


def test_cost_rejects_reversed_window():
    with pytest.raises(ValueError):
        cost(100, datetime(2024, 1, 2), datetime(2024, 1, 1), SimpleTariff())


def test_peak_offpeak_rates():
    """Off-peak 22:00-06:00 at 0.20, peak 0.27."""
    tariff = PeakOffpeakTariff(peak_rate=0.27, offpeak_rate=0.20)
    assert rate_for_time(datetime(2024, 6, 1, 23, 0), tariff) == 0.20
    assert rate_for_time(datetime(2024, 6, 1, 14, 0), tariff) == 0.27
    assert rate_for_time(datetime(2024, 6, 1, 3, 0), tariff) == 0.20
    # Window is [start, end)
    assert rate_for_time(datetime(2024, 6, 1, 22, 0), tariff) == 0.20
    assert rate_for_time(datetime(2024, 6, 1, 6, 0), tariff) == 0.27


def test_peak_offpeak_bills_whole_window_at_end_rate():
    tariff = PeakOffpeakTariff(peak_rate=0.27, offpeak_rate=0.20)
    start = datetime(2024, 6, 1, 20, 0)
    end = datetime(2024, 6, 1, 23, 0)
    assert cost(1000, start, end, tariff) == pytest.approx(0.20)


def test_seasonal_rates():
    tariff = SeasonalTariff(summer_rate=0.20, winter_rate=0.25)
    assert rate_for_time(datetime(2024, 1, 10, 12, 0), tariff) == 0.25
    assert rate_for_time(datetime(2024, 11, 1, 0, 0), tariff) == 0.25
    assert rate_for_time(datetime(2024, 7, 10, 12, 0), tariff) == 0.20
    assert rate_for_time(datetime(2024, 4, 1, 0, 0), tariff) == 0.20


def test_tempo_uses_day_color():
    tariff = TempoTariff(day_colors={date(2024, 1, 15): DayColor.BLUE})
    assert rate_for_time(datetime(2024, 1, 15, 12, 0), tariff) == tariff.blue_peak
    assert rate_for_time(datetime(2024, 1, 15, 23, 0), tariff) == tariff.blue_offpeak


def test_tempo_day_rolls_over_at_six():
    """02:00 still belongs to the previous Tempo day."""
    tariff = TempoTariff(
        day_colors={
            date(2024, 1, 15): DayColor.WHITE,
            date(2024, 1, 16): DayColor.RED,
        }
    )
    early = datetime(2024, 1, 16, 2, 0)
    assert tempo_day(early, tariff) == date(2024, 1, 15)
    assert rate_for_time(early, tariff) == tariff.white_offpeak
    assert rate_for_time(datetime(2024, 1, 16, 7, 0), tariff) == tariff.red_peak


def test_tempo_unknown_day_falls_back_to_red():
    tariff = TempoTariff()
    assert rate_for_time(datetime(2024, 3, 1, 12, 0), tariff) == tariff.red_peak


def test_with_day_colors_keeps_explicit_entries():
    tariff = TempoTariff(day_colors={date(2024, 1, 15): DayColor.BLUE})
    merged = with_day_colors(
        tariff,
        {date(2024, 1, 15): DayColor.RED, date(2024, 1, 16): DayColor.WHITE},
    )
    assert merged.day_colors[date(2024, 1, 15)] == DayColor.BLUE
    assert merged.day_colors[date(2024, 1, 16)] == DayColor.WHITE
    # Other tariffs pass through untouched
    simple = SimpleTariff()
    assert with_day_colors(simple, {date(2024, 1, 16): DayColor.RED}) is simple


def test_estimate_costs():
    """100 W for an hour is 0.1 kWh."""
    estimates = estimate_costs(100, datetime(2024, 6, 1, 12, 0), SimpleTariff(rate_per_kwh=0.20))
    assert estimates["hourly"] == pytest.approx(0.02)
    assert estimates["daily"] == pytest.approx(0.48)
    assert estimates["monthly"] == pytest.approx(14.40)


def test_time_helpers():
    assert parse_time("22:30") == time(22, 30)
    with pytest.raises(ValueError):
        parse_time("2230")
    assert time_in_range(time(23, 0), time(22, 0), time(6, 0))
    assert not time_in_range(time(12, 0), time(22, 0), time(6, 0))
    assert time_in_range(time(12, 0), time(9, 0), time(17, 0))


def test_tariff_mode_and_description():
    assert tariff_mode(SeasonalTariff()) == "seasonal"
    rows = dict(describe_tariff(PeakOffpeakTariff(), currency_symbol="€"))
    assert rows["Mode"] == "peak_offpeak"
    assert rows["Off-peak hours"] == "22:00 - 06:00"
    assert rows["Peak"] == "0.2700 €/kWh"
