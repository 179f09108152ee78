"""Tests for settings loading and validation."""

from datetime import date, time

import pytest
import yaml
from powercost import config
from powercost.config import ConfigInvalid, Settings
from powercost.models import DayColor, PeakOffpeakTariff, SeasonalTariff, SimpleTariff, TempoTariff


def write_config(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_missing_file_gives_defaults(tmp_path):
    settings = config.load_config(tmp_path / "nope.yaml")
    assert settings == Settings()
    assert settings.tariff == SimpleTariff(rate_per_kwh=0.20)
    assert settings.refresh_interval_s == 1.0
    assert settings.detail_interval_s == 5.0


def test_load_peak_offpeak(tmp_path):
    path = write_config(
        tmp_path,
        {
            "general": {"refresh_interval_s": 2},
            "pricing": {
                "mode": "peak_offpeak",
                "currency_symbol": "£",
                "peak_offpeak": {"peak_rate": 0.30, "offpeak_start": "23:30", "offpeak_end": "07:30"},
            },
        },
    )
    settings = config.load_config(path)
    assert settings.refresh_interval_s == 2.0
    assert settings.currency_symbol == "£"
    assert settings.tariff == PeakOffpeakTariff(
        peak_rate=0.30,
        offpeak_rate=0.20,
        offpeak_start=time(23, 30),
        offpeak_end=time(7, 30),
    )


def test_unquoted_yaml_time(tmp_path):
    """YAML 1.1 reads 22:00 as the integer 1320."""
    path = tmp_path / "config.yaml"
    path.write_text("pricing:\n  mode: peak_offpeak\n  peak_offpeak:\n    offpeak_start: 22:00\n")
    assert config.load_config(path).tariff.offpeak_start == time(22, 0)


def test_tempo_days_from_config():
    tariff = config.tariff_from_dict("tempo", {"days": {"2024-01-15": "Red"}, "fallback_color": "white"})
    assert tariff.day_colors == {date(2024, 1, 15): DayColor.RED}
    assert tariff.fallback_color == DayColor.WHITE


@pytest.mark.parametrize(
    "data, key",
    [
        ({"general": {"refresh_interval_s": 0}}, "general.refresh_interval_s"),
        ({"general": {"refresh_interval_s": 10, "detail_interval_s": 5}}, "general.detail_interval_s"),
        ({"pricing": {"mode": "dynamic"}}, "pricing.mode"),
        ({"pricing": {"simple": {"rate_per_kwh": -0.1}}}, "pricing.simple.rate_per_kwh"),
        ({"pricing": {"seasonal": {"winter_months": [12, 13]}}}, "pricing.seasonal.winter_months"),
        ({"pricing": {"peak_offpeak": {"offpeak_start": "late"}}}, "pricing.peak_offpeak.offpeak_start"),
        ({"sources": {"failure_threshold": "three"}}, "sources.failure_threshold"),
        ({"baseline": {"watts": -5}}, "baseline.watts"),
    ],
)
def test_invalid_values_name_the_key(data, key):
    with pytest.raises(ConfigInvalid) as exc_info:
        config.settings_from_dict(data)
    assert exc_info.value.key == key
    assert isinstance(exc_info.value, ValueError)


def test_save_and_reload(tmp_path):
    settings = Settings(pinned_processes=("firefox",)).with_tariff(
        TempoTariff(day_colors={date(2024, 1, 15): DayColor.BLUE})
    )
    path = config.save_config(settings, tmp_path / "nested" / "config.yaml")
    assert config.load_config(path) == settings


def test_save_rejects_invalid_settings(tmp_path):
    with pytest.raises(ConfigInvalid):
        config.save_config(Settings(detail_interval_s=0.5), tmp_path / "config.yaml")
    assert not (tmp_path / "config.yaml").exists()


def test_config_path_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("POWERCOST_CONFIG", str(tmp_path / "custom.yaml"))
    assert config.get_config_path() == tmp_path / "custom.yaml"


@pytest.mark.parametrize(
    "settings, key",
    [
        (Settings(simple=SimpleTariff(rate_per_kwh=-1)), "pricing.simple.rate_per_kwh"),
        (Settings(tempo=TempoTariff(red_peak=-2)), "pricing.tempo.red_peak"),
        (Settings(peak_offpeak=PeakOffpeakTariff(peak_rate="0.27")), "pricing.peak_offpeak.peak_rate"),
        (Settings(seasonal=SeasonalTariff(winter_months=frozenset({12, 13}))), "pricing.seasonal.winter_months"),
    ],
)
def test_settings_built_in_code_are_validated(settings, key):
    with pytest.raises(ConfigInvalid) as exc_info:
        config.validate_settings(settings)
    assert exc_info.value.key == key


def test_integer_rates_are_accepted():
    settings = Settings(simple=SimpleTariff(rate_per_kwh=1))
    assert config.validate_settings(settings) is settings
