"""Tests for source selection, fallback and promotion."""

import threading

import pytest
from powercost.collectors.base import (
    PermissionDenied,
    PowerSource,
    SensorParseError,
    SensorTimeout,
    SensorUnavailable,
)
from powercost.collectors.selector import SourceSelector
from powercost.models import CounterKind, RawCounterSample, SourceId


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class ScriptedSource(PowerSource):
    """Returns a fixed power value, or raises ``error`` while it is set."""

    def __init__(self, name, tier, source_id=SourceId.HWMON, watts=50.0, error=None, hint=None):
        self.name = name
        self.tier = tier
        self.source_id = source_id
        self.watts = watts
        self.error = error
        self.permission_hint = hint
        self.calls = 0

    def sample(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return RawCounterSample(value=self.watts, timestamp=float(self.calls), kind=CounterKind.POWER)


class HangingSource(ScriptedSource):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = threading.Event()

    def sample(self):
        self.release.wait(5)
        return super().sample()


@pytest.fixture
def clock():
    return FakeClock()


def test_selects_highest_working_tier(clock):
    rapl = ScriptedSource("rapl", 1, SourceId.RAPL, error=SensorUnavailable("missing"))
    battery = ScriptedSource("battery", 3, SourceId.BATTERY, watts=12.0)
    estimate = ScriptedSource("estimate", 4, SourceId.ESTIMATED, watts=40.0)
    selector = SourceSelector([estimate, battery, rapl], clock=clock)

    assert selector.select() is battery
    assert selector.read().value == 12.0
    status = selector.status()
    assert status.source_id == SourceId.BATTERY
    assert status.is_estimated
    assert not status.degraded
    selector.close()


def test_nothing_available(clock):
    selector = SourceSelector([ScriptedSource("rapl", 1, error=SensorUnavailable("missing"))], clock=clock)
    with pytest.raises(SensorUnavailable):
        selector.select()
    assert selector.status() is None
    selector.close()


def test_requires_a_source():
    with pytest.raises(ValueError):
        SourceSelector([])


def test_falls_back_after_consecutive_failures(clock):
    rapl = ScriptedSource("rapl", 1, SourceId.RAPL)
    estimate = ScriptedSource("estimate", 4, SourceId.ESTIMATED, watts=40.0)
    selector = SourceSelector([rapl, estimate], failure_threshold=3, clock=clock)
    selector.select()
    generation = selector.generation

    rapl.error = SensorParseError("garbage")
    for _ in range(3):
        with pytest.raises(SensorParseError):
            selector.read()

    assert selector.active is estimate
    assert selector.generation == generation + 1
    status = selector.status()
    assert status.degraded
    assert status.last_error == "garbage"
    assert selector.read().value == 40.0
    selector.close()


def test_a_good_read_resets_the_failure_count(clock):
    rapl = ScriptedSource("rapl", 1)
    estimate = ScriptedSource("estimate", 4)
    selector = SourceSelector([rapl, estimate], failure_threshold=3, clock=clock)
    selector.select()

    for _ in range(5):
        rapl.error = SensorParseError("glitch")
        for _ in range(2):
            with pytest.raises(SensorParseError):
                selector.read()
        rapl.error = None
        selector.read()

    assert selector.active is rapl
    selector.close()


def test_invalid_samples_trigger_fallback(clock):
    rapl = ScriptedSource("rapl", 1)
    estimate = ScriptedSource("estimate", 4)
    selector = SourceSelector([rapl, estimate], invalid_threshold=2, clock=clock)
    selector.select()

    selector.report_invalid(SensorParseError("negative delta"))
    selector.report_valid()
    selector.report_invalid(SensorParseError("negative delta"))
    assert selector.active is rapl

    selector.report_invalid(SensorParseError("negative delta"))
    assert selector.active is estimate
    selector.close()


def test_promotes_back_after_reprobe_interval(clock):
    rapl = ScriptedSource("rapl", 1, error=SensorUnavailable("asleep"))
    estimate = ScriptedSource("estimate", 4)
    selector = SourceSelector([rapl, estimate], reprobe_interval=60.0, clock=clock)
    assert selector.select() is estimate

    rapl.error = None
    clock.now += 30
    assert not selector.maybe_promote()
    assert selector.active is estimate

    clock.now += 31
    assert selector.maybe_promote()
    assert selector.active is rapl
    selector.close()


def test_permission_hint_is_reported(clock):
    rapl = ScriptedSource("rapl", 1, error=PermissionDenied("denied"), hint="chmod the counters")
    estimate = ScriptedSource("estimate", 4)
    selector = SourceSelector([rapl, estimate], clock=clock)
    selector.select()

    status = selector.status()
    assert status.hint == "chmod the counters"
    assert status.degraded
    selector.close()


def test_probe_all_does_not_change_selection(clock):
    rapl = ScriptedSource("rapl", 1, error=PermissionDenied("denied"))
    estimate = ScriptedSource("estimate", 4)
    selector = SourceSelector([rapl, estimate], clock=clock)

    results = selector.probe_all()
    assert [(s.name, type(e).__name__ if e else None) for s, e in results] == [
        ("rapl", "PermissionDenied"),
        ("estimate", None),
    ]
    with pytest.raises(SensorUnavailable):
        selector.active
    selector.close()


def test_hanging_sensor_times_out(clock):
    hanging = HangingSource("stuck", 1)
    estimate = ScriptedSource("estimate", 4)
    selector = SourceSelector([hanging, estimate], probe_timeout=0.1, clock=clock)
    try:
        assert selector.select() is estimate
        assert isinstance(selector._last_error, SensorTimeout)
    finally:
        hanging.release.set()
        selector.close()


class StallingSource(ScriptedSource):
    """Answers normally until ``stall`` is set, then blocks until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.stall = False
        self.release = threading.Event()

    def sample(self):
        if self.stall:
            self.release.wait(5)
        return super().sample()


def test_source_that_hangs_after_selection_falls_back(clock):
    gpu = StallingSource("gpu", 2, SourceId.GPU)
    estimate = ScriptedSource("estimate", 4, SourceId.ESTIMATED, watts=40.0)
    selector = SourceSelector([gpu, estimate], failure_threshold=3, probe_timeout=0.1, clock=clock)
    try:
        assert selector.select() is gpu
        gpu.stall = True
        for _ in range(3):
            with pytest.raises(SensorTimeout):
                selector.read()

        assert selector.active is estimate
        assert selector.read().value == 40.0
    finally:
        gpu.release.set()
        selector.close()


def test_busy_source_is_not_queued_behind(clock):
    stuck = StallingSource("stuck", 1)
    selector = SourceSelector(
        [stuck, ScriptedSource("estimate", 4)], failure_threshold=10, probe_timeout=0.1, clock=clock
    )
    try:
        selector.select()
        stuck.stall = True
        with pytest.raises(SensorTimeout):
            selector.read()
        with pytest.raises(SensorTimeout, match="still busy"):
            selector.read()
        assert stuck.calls == 1
    finally:
        stuck.release.set()
        selector.close()
