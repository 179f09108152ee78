"""Tests for the sampling scheduler, using fake sources and a fake clock."""

import time
from datetime import datetime, timedelta

import pytest
from powercost.analysis.sessions import SessionAlreadyActive, SessionTracker
from powercost.collectors.base import PowerSource, SensorUnavailable
from powercost.collectors.selector import SourceSelector
from powercost.config import ConfigInvalid, Settings
from powercost.models import CounterKind, RawCounterSample, SimpleTariff, SourceId
from powercost.scheduler import DETAIL, BaselineUnavailable, Scheduler

START = datetime(2024, 6, 1, 12, 0)


class FakeClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t

    def now(self):
        return START + timedelta(seconds=self.t - 1000.0)


class EnergySource(PowerSource):
    """Counter that grows at a constant wattage of the fake clock."""

    source_id = SourceId.RAPL
    tier = 1
    name = "fake energy counter"

    def __init__(self, clock, watts=50.0):
        self.clock = clock
        self.watts = watts
        self.fail = False

    def sample(self):
        if self.fail:
            raise SensorUnavailable("gone")
        return RawCounterSample(
            value=self.watts * self.clock.t * 1e6,
            timestamp=self.clock.t,
            kind=CounterKind.ENERGY,
            max_range=2**40,
        )


class PowerValueSource(PowerSource):
    source_id = SourceId.ESTIMATED
    tier = 4
    name = "fake estimate"

    def __init__(self, clock, watts=30.0):
        self.clock = clock
        self.watts = watts

    def sample(self):
        return RawCounterSample(value=self.watts, timestamp=self.clock.t, kind=CounterKind.POWER)


class FakePersistence:
    def __init__(self):
        self.readings = []
        self.daily = []
        self.fail = False

    def append_reading(self, reading):
        if self.fail:
            raise OSError("disk full")
        self.readings.append(reading)

    def append_daily_aggregate(self, day, totals):
        self.daily.append((day, totals))

    def query_range(self, start, end):
        return []

    def create_session(self, session):
        return 1

    def update_session(self, session):
        pass

    def close_session(self, session):
        pass


@pytest.fixture
def clock():
    return FakeClock()


def make_scheduler(clock, sources, persistence=None, sessions=None, **settings):
    selector = SourceSelector(sources, clock=clock)
    selector.select()
    defaults = {"simple": SimpleTariff(rate_per_kwh=0.20)}
    defaults.update(settings)
    return Scheduler(
        selector, Settings(**defaults), persistence=persistence, sessions=sessions, clock=clock, now=clock.now
    )


def run_ticks(scheduler, clock, count, step=1.0):
    snapshots = []
    for _ in range(count):
        clock.t += step
        snapshots.append(scheduler.fast_tick())
    return snapshots


def test_energy_counter_needs_priming(clock):
    scheduler = make_scheduler(clock, [EnergySource(clock)])
    first, second = run_ticks(scheduler, clock, 2)
    assert first is None
    assert second.latest_reading.power_watts == pytest.approx(50.0)
    assert second.cumulative_energy_wh == pytest.approx(50 / 3600)


def test_cumulative_energy_is_monotonic_and_cost_recomputed(clock):
    scheduler = make_scheduler(clock, [EnergySource(clock)])
    snapshots = [s for s in run_ticks(scheduler, clock, 3601) if s is not None]

    totals = [s.cumulative_energy_wh for s in snapshots]
    assert totals == sorted(totals)
    assert totals[-1] == pytest.approx(50.0)
    assert snapshots[-1].current_cost == pytest.approx(0.05 * 0.20)
    assert snapshots[-1].avg_power_watts == pytest.approx(50.0)
    assert snapshots[-1].hourly_cost_estimate == pytest.approx(0.01)


def test_persists_every_tenth_reading(clock):
    persistence = FakePersistence()
    scheduler = make_scheduler(clock, [EnergySource(clock)], persistence, daily_aggregate_every=5)
    run_ticks(scheduler, clock, 26)  # one priming tick + 25 valid ticks
    assert len(persistence.readings) == 2
    assert len(persistence.daily) == 5
    day, totals = persistence.daily[-1]
    assert day == START.date()
    assert totals.readings_count == 25


def test_persistence_failure_does_not_stop_sampling(clock):
    persistence = FakePersistence()
    persistence.fail = True
    scheduler = make_scheduler(clock, [PowerValueSource(clock)], persistence, persist_every=1)
    snapshots = run_ticks(scheduler, clock, 5)
    assert all(s is not None for s in snapshots)
    assert snapshots[-1].tick_count == 5


def test_suspend_gap_is_capped(clock):
    scheduler = make_scheduler(clock, [EnergySource(clock)])
    run_ticks(scheduler, clock, 2)
    before = scheduler.snapshot().cumulative_energy_wh
    clock.t += 3600  # machine slept for an hour
    snapshot = scheduler.fast_tick()
    added = snapshot.cumulative_energy_wh - before
    assert added == pytest.approx(50 * 10 / 3600)


def test_fallback_after_repeated_failures(clock):
    primary = EnergySource(clock)
    scheduler = make_scheduler(clock, [primary, PowerValueSource(clock)])
    run_ticks(scheduler, clock, 3)
    assert scheduler.snapshot().source.source_id == SourceId.RAPL

    primary.fail = True
    run_ticks(scheduler, clock, 3)
    snapshot = run_ticks(scheduler, clock, 1)[0]
    assert snapshot.source.source_id == SourceId.ESTIMATED
    assert snapshot.source.degraded
    assert snapshot.latest_reading.is_estimated
    assert snapshot.latest_reading.power_watts == 30.0


def test_invalid_samples_demote_source(clock):
    broken = PowerValueSource(clock, watts=9000.0)
    broken.source_id = SourceId.HWMON
    broken.tier = 1
    scheduler = make_scheduler(clock, [broken, PowerValueSource(clock)])
    snapshots = run_ticks(scheduler, clock, 6)
    assert snapshots[:5] == [None] * 5
    assert snapshots[5].source.source_id == SourceId.ESTIMATED


def test_session_commands_apply_on_next_tick(clock):
    scheduler = make_scheduler(clock, [PowerValueSource(clock, watts=80.0)])
    future = scheduler.start_session(label="build", baseline_watts=50.0)
    assert not future.done()

    run_ticks(scheduler, clock, 1)
    session = future.result(timeout=1)
    assert session.label == "build"
    assert scheduler.snapshot().active_session.label == "build"

    second = scheduler.start_session(label="other", baseline_watts=10.0)
    run_ticks(scheduler, clock, 1)
    with pytest.raises(SessionAlreadyActive):
        second.result(timeout=1)

    run_ticks(scheduler, clock, 3600)
    scheduler.detail_tick()
    refreshed = scheduler.snapshot().active_session
    assert refreshed.surplus_wh == pytest.approx(30.0, rel=0.01)

    ended_future = scheduler.end_session()
    run_ticks(scheduler, clock, 1)
    ended = ended_future.result(timeout=1)
    assert ended.end_time is not None
    assert scheduler.snapshot().active_session is None


def test_start_session_without_baseline(clock):
    scheduler = make_scheduler(clock, [PowerValueSource(clock)])
    future = scheduler.start_session()
    run_ticks(scheduler, clock, 1)
    with pytest.raises(BaselineUnavailable):
        future.result(timeout=1)

    run_ticks(scheduler, clock, 20)
    future = scheduler.start_session()
    run_ticks(scheduler, clock, 1)
    assert future.result(timeout=1).baseline_watts == 30.0


def test_manual_baseline_command(clock):
    scheduler = make_scheduler(clock, [PowerValueSource(clock)])
    scheduler.set_manual_baseline(12.0)
    run_ticks(scheduler, clock, 1)
    assert scheduler.baseline.get_baseline() == 12.0
    scheduler.clear_manual_baseline()
    run_ticks(scheduler, clock, 1)
    assert scheduler.baseline.manual_watts is None


def test_detail_tick_does_not_touch_energy(clock):
    scheduler = make_scheduler(clock, [PowerValueSource(clock)])
    run_ticks(scheduler, clock, 5)
    before = scheduler.snapshot().cumulative_energy_wh
    detail = scheduler.detail_tick()
    assert detail.timestamp == clock.now()
    assert scheduler.snapshot().cumulative_energy_wh == before


def test_update_settings(clock):
    scheduler = make_scheduler(clock, [PowerValueSource(clock)])
    with pytest.raises(ConfigInvalid):
        scheduler.update_settings(Settings(refresh_interval_s=0))
    with pytest.raises(ConfigInvalid):
        scheduler.update_settings(Settings(simple=SimpleTariff(rate_per_kwh=-1)))

    new = Settings(pricing_mode="simple", simple=SimpleTariff(rate_per_kwh=1.0), persist_every=3)
    future = scheduler.update_settings(new)
    assert scheduler.settings.simple.rate_per_kwh == 0.20
    run_ticks(scheduler, clock, 1)
    assert future.result(timeout=1) is new
    assert scheduler.settings.simple.rate_per_kwh == 1.0


def test_subscribers(clock):
    scheduler = make_scheduler(clock, [PowerValueSource(clock)])
    fast, detail = [], []

    def broken(snapshot):
        raise RuntimeError("boom")

    scheduler.subscribe(broken)
    unsubscribe = scheduler.subscribe(fast.append)
    scheduler.subscribe(detail.append, cadence=DETAIL)

    run_ticks(scheduler, clock, 2)
    scheduler.detail_tick()
    assert len(fast) == 2
    assert len(detail) == 1

    unsubscribe()
    run_ticks(scheduler, clock, 1)
    assert len(fast) == 2

    with pytest.raises(ValueError):
        scheduler.subscribe(fast.append, cadence="hourly")


def test_background_loops():
    selector = SourceSelector([PowerValueSource(FakeClock())])
    settings = Settings(refresh_interval_s=0.05, detail_interval_s=0.1)
    scheduler = Scheduler(selector, settings)

    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while scheduler.snapshot().tick_count < 3 and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        scheduler.stop()
        selector.close()

    assert scheduler.snapshot().tick_count >= 3
    assert not scheduler.running
    assert scheduler.detail_snapshot() is not None


class InterleavingTracker(SessionTracker):
    """Runs queued scheduler commands right after a refresh, as the fast thread could."""

    scheduler = None

    def refresh(self, cumulative_energy_wh, now, tariff):
        session = super().refresh(cumulative_energy_wh, now, tariff)
        if self.scheduler is not None:
            self.scheduler._drain_commands()
        return session


def test_session_ended_during_detail_tick_stays_ended(clock):
    tracker = InterleavingTracker()
    scheduler = make_scheduler(clock, [PowerValueSource(clock, watts=80.0)], sessions=tracker)
    scheduler.start_session(baseline_watts=10.0)
    run_ticks(scheduler, clock, 2)
    assert scheduler.snapshot().active_session is not None

    ended_future = scheduler.end_session()
    tracker.scheduler = scheduler
    scheduler.detail_tick()

    assert ended_future.result(timeout=1).end_time is not None
    assert scheduler.snapshot().active_session is None
    run_ticks(scheduler, clock, 1)
    scheduler.detail_tick()
    assert scheduler.snapshot().active_session is None


def test_invalid_interval_is_not_billed(clock):
    source = PowerValueSource(clock, watts=30.0)
    scheduler = make_scheduler(clock, [source])
    run_ticks(scheduler, clock, 3)  # 2 s at 30 W

    source.watts = 9000.0
    assert run_ticks(scheduler, clock, 2) == [None, None]
    source.watts = 30.0
    snapshot = run_ticks(scheduler, clock, 1)[0]

    assert snapshot.cumulative_energy_wh == pytest.approx(90 / 3600)
