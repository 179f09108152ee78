"""Process-wide energy and cost accumulators.

AccrualState is written only by the scheduler's fast loop. Every mutation
happens inside one lock-protected block, and readers only ever receive an
AccrualSnapshot copy, so a reader can never observe energy updated but
cost not yet recomputed.
"""

import threading
from dataclasses import replace
from datetime import date, datetime

from .models import (
    AccrualSnapshot,
    DailyAggregate,
    PowerReading,
    Session,
    SourceStatus,
    TariffConfig,
)
from .tariffs import cost, estimate_costs


class AccrualState:
    """Cumulative energy, running cost and the latest reading for this run."""

    def __init__(self, session_start: datetime) -> None:
        self._lock = threading.Lock()
        self._session_start = session_start
        self._latest: PowerReading | None = None
        self._cumulative_wh = 0.0
        self._accrued_hours = 0.0
        self._current_cost = 0.0
        self._estimates = {"hourly": 0.0, "daily": 0.0, "monthly": 0.0}
        self._avg_watts = 0.0
        self._tick_count = 0
        self._source: SourceStatus | None = None
        self._session: Session | None = None

    def apply_reading(
        self,
        reading: PowerReading,
        elapsed_hours: float,
        tariff: TariffConfig,
        source: SourceStatus | None = None,
    ) -> float:
        """Accumulate one tick and recompute cost. Returns the energy added in Wh."""
        energy_wh = reading.power_watts * max(elapsed_hours, 0.0)
        with self._lock:
            self._cumulative_wh += energy_wh
            self._accrued_hours += max(elapsed_hours, 0.0)
            # Cost is derived from the total every tick, never summed per tick
            self._current_cost = cost(
                self._cumulative_wh, self._session_start, reading.timestamp, tariff
            )
            if self._accrued_hours > 0:
                self._avg_watts = self._cumulative_wh / self._accrued_hours
            else:
                self._avg_watts = reading.power_watts
            self._estimates = estimate_costs(self._avg_watts, reading.timestamp, tariff)
            self._latest = reading
            self._tick_count += 1
            self._source = source
        return energy_wh

    def set_active_session(self, session: Session | None) -> None:
        with self._lock:
            self._session = replace(session) if session is not None else None

    @property
    def cumulative_energy_wh(self) -> float:
        with self._lock:
            return self._cumulative_wh

    def snapshot(self) -> AccrualSnapshot:
        with self._lock:
            return AccrualSnapshot(
                session_start=self._session_start,
                latest_reading=self._latest,
                cumulative_energy_wh=self._cumulative_wh,
                current_cost=self._current_cost,
                avg_power_watts=self._avg_watts,
                hourly_cost_estimate=self._estimates["hourly"],
                daily_cost_estimate=self._estimates["daily"],
                monthly_cost_estimate=self._estimates["monthly"],
                tick_count=self._tick_count,
                source=self._source,
                active_session=replace(self._session) if self._session is not None else None,
            )


class DailyAccumulator:
    """Running totals for the current calendar day, rolled over at midnight."""

    def __init__(self, day: date, seed: DailyAggregate | None = None) -> None:
        self._start(day, seed)

    def _start(self, day: date, seed: DailyAggregate | None = None) -> None:
        self.day = day
        self.total_wh = seed.total_wh if seed else 0.0
        self.total_cost = (seed.total_cost or 0.0) if seed else 0.0
        self.max_watts = seed.max_watts if seed else 0.0
        self.count = seed.readings_count if seed else 0
        self.sum_watts = seed.avg_watts * seed.readings_count if seed else 0.0
        self.pricing_mode = seed.pricing_mode if seed else None

    def add(
        self,
        reading: PowerReading,
        energy_wh: float,
        tariff: TariffConfig,
        pricing_mode: str,
    ) -> DailyAggregate | None:
        """Add one tick. Returns the finished previous day when the date rolls over."""
        finished = None
        day = reading.timestamp.date()
        if day != self.day:
            finished = self.aggregate()
            self._start(day)

        self.total_wh += energy_wh
        self.total_cost += cost(energy_wh, reading.timestamp, reading.timestamp, tariff)
        self.max_watts = max(self.max_watts, reading.power_watts)
        self.sum_watts += reading.power_watts
        self.count += 1
        self.pricing_mode = pricing_mode
        return finished

    def aggregate(self) -> DailyAggregate:
        return DailyAggregate(
            date=self.day,
            total_wh=self.total_wh,
            total_cost=self.total_cost,
            avg_watts=self.sum_watts / self.count if self.count else 0.0,
            max_watts=self.max_watts,
            pricing_mode=self.pricing_mode,
            readings_count=self.count,
        )
