"""Two-cadence sampling loop: the single writer of accrual and session state.

The fast loop (default 1 s) reads the active source, resolves power and
accrues energy and cost. The detail loop (default 5 s) collects process and
component detail and refreshes the active session's surplus figures.

Commands from other threads (start/end session, baseline changes, new
settings) are queued and applied at the start of the next fast tick. Each
returns a concurrent.futures.Future that resolves once it has been applied.
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future
from datetime import date, datetime
from typing import Any, Callable

from .accrual import AccrualState, DailyAccumulator
from .analysis.baseline import BaselineDetector
from .analysis.sessions import SessionTracker
from .collectors.base import SensorError
from .collectors.details import DetailCollector
from .collectors.selector import SourceSelector
from .config import Settings, validate_settings
from .models import AccrualSnapshot, DailyAggregate, DetailSnapshot, PowerReading, Session
from .resolver import MIN_DELTA_SECONDS, InvalidSample, needs_previous, resolve_power
from .tariffs import tariff_mode

logger = logging.getLogger(__name__)

FAST = "fast"
DETAIL = "detail"

# Elapsed time per tick is capped so a suspend/resume gap is not billed
MAX_ELAPSED_INTERVALS = 10


class BaselineUnavailable(Exception):
    """No manual baseline is set and too few samples exist to detect one."""


class Scheduler:
    """Owns AccrualState and the session tracker, and runs both cadences."""

    def __init__(
        self,
        selector: SourceSelector,
        settings: Settings | None = None,
        persistence=None,
        detail_collector: DetailCollector | None = None,
        baseline: BaselineDetector | None = None,
        sessions: SessionTracker | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.selector = selector
        self.settings = validate_settings(settings or Settings())
        self.persistence = persistence
        self.detail_collector = detail_collector
        self.baseline = baseline or BaselineDetector(
            window=self.settings.baseline_window,
            manual_watts=None if self.settings.baseline_auto else self.settings.baseline_watts,
        )
        self._clock = clock
        self._now = now

        started = now()
        self.state = AccrualState(started)
        # The tracker publishes session changes into the accrual state under its own lock
        self.sessions = sessions or SessionTracker(persistence)
        self.sessions.on_change = self.state.set_active_session
        self._daily = DailyAccumulator(started.date(), self._load_today(started.date()))

        self._commands: queue.SimpleQueue = queue.SimpleQueue()
        self._subscribers: dict[str, list[Callable[[Any], None]]] = {FAST: [], DETAIL: []}
        self._subscribers_lock = threading.Lock()
        self._detail: DetailSnapshot | None = None
        self._detail_lock = threading.Lock()

        self._prev_sample = None
        self._generation: int | None = None
        self._last_tick: float | None = None
        self._ticks = 0

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # --- persistence (best effort) ---------------------------------------

    def _load_today(self, today: date) -> DailyAggregate | None:
        if self.persistence is None:
            return None
        try:
            rows = self.persistence.query_range(today, today)
        except Exception as e:
            logger.warning("Could not load today's totals: %s", e)
            return None
        return rows[0] if rows else None

    def _persist_reading(self, reading: PowerReading) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.append_reading(reading)
        except Exception as e:
            logger.warning("Failed to store reading: %s", e)

    def _persist_daily(self, aggregate: DailyAggregate) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.append_daily_aggregate(aggregate.date, aggregate)
        except Exception as e:
            logger.warning("Failed to store daily totals for %s: %s", aggregate.date, e)

    # --- commands --------------------------------------------------------

    def _submit(self, fn: Callable[[], Any]) -> Future:
        future: Future = Future()
        self._commands.put((fn, future))
        return future

    def _drain_commands(self) -> None:
        while True:
            try:
                fn, future = self._commands.get_nowait()
            except queue.Empty:
                return
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn()
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    def start_session(
        self,
        label: str | None = None,
        category: str | None = None,
        baseline_watts: float | None = None,
    ) -> Future:
        """Start a session. Without an explicit baseline, the detector's is used."""

        def apply() -> Session:
            baseline = baseline_watts if baseline_watts is not None else self.baseline.get_baseline()
            if baseline is None:
                raise BaselineUnavailable(
                    f"Need at least 10 samples to detect a baseline "
                    f"(have {self.baseline.sample_count}); set one manually"
                )
            return self.sessions.start(
                baseline, self.state.cumulative_energy_wh, self._now(), label, category
            )

        return self._submit(apply)

    def end_session(self) -> Future:
        def apply() -> Session:
            return self.sessions.end(
                self.state.cumulative_energy_wh, self._now(), self.settings.tariff
            )

        return self._submit(apply)

    def set_manual_baseline(self, watts: float) -> Future:
        return self._submit(lambda: self.baseline.set_manual(watts))

    def clear_manual_baseline(self) -> Future:
        return self._submit(self.baseline.clear_manual)

    def update_settings(self, settings: Settings) -> Future:
        """Replace the settings. Raises ConfigInvalid here, before anything is queued."""
        validate_settings(settings)

        def apply() -> Settings:
            self.settings = settings
            self.baseline.resize(settings.baseline_window)
            self.selector.failure_threshold = settings.failure_threshold
            self.selector.invalid_threshold = settings.invalid_threshold
            self.selector.reprobe_interval = settings.reprobe_interval_s
            self.selector.probe_timeout = settings.probe_timeout_s
            if self.detail_collector is not None:
                self.detail_collector.process_limit = settings.process_limit
                self.detail_collector.pinned_processes = {n.lower() for n in settings.pinned_processes}
            logger.info("Settings updated (pricing mode %s)", settings.pricing_mode)
            return settings

        return self._submit(apply)

    # --- ticks -----------------------------------------------------------

    def fast_tick(self) -> AccrualSnapshot | None:
        """Run one fast tick. Returns the new snapshot, or None if the tick was skipped."""
        self._drain_commands()
        settings = self.settings
        tick_time = self._clock()

        self.selector.maybe_promote()
        try:
            sample = self.selector.read()
        except SensorError as e:
            logger.debug("Skipping tick, read failed: %s", e)
            return None

        if self.selector.generation != self._generation:
            # New source: counters from the old one are meaningless
            self._generation = self.selector.generation
            self._prev_sample = None

        prev = self._prev_sample
        if needs_previous(sample) and prev is None:
            self._prev_sample = sample
            self._last_tick = tick_time
            logger.debug("Primed energy counter")
            return None

        try:
            watts = resolve_power(prev, sample, settings.max_plausible_watts)
        except InvalidSample as e:
            logger.debug("Skipping tick, invalid sample: %s", e)
            if prev is None or sample.timestamp - prev.timestamp >= MIN_DELTA_SECONDS:
                # The skipped interval is dropped, not billed at the next good reading
                self._prev_sample = sample
                self._last_tick = tick_time
            self.selector.report_invalid(e)
            return None
        self.selector.report_valid()
        self._prev_sample = sample

        elapsed = 0.0 if self._last_tick is None else max(0.0, tick_time - self._last_tick)
        elapsed = min(elapsed, MAX_ELAPSED_INTERVALS * settings.refresh_interval_s)
        self._last_tick = tick_time

        status = self.selector.status()
        detail = self.detail_snapshot()
        reading = PowerReading(
            timestamp=self._now(),
            power_watts=watts,
            source_id=status.source_id,
            is_estimated=status.is_estimated,
            component_breakdown=dict(detail.component_breakdown) if detail and detail.component_breakdown else None,
        )

        energy_wh = self.state.apply_reading(reading, elapsed / 3600, settings.tariff, status)
        self.baseline.add_sample(watts)

        finished = self._daily.add(reading, energy_wh, settings.tariff, tariff_mode(settings.tariff))
        if finished is not None:
            self._persist_daily(finished)

        self._ticks += 1
        if self._ticks % settings.persist_every == 0:
            self._persist_reading(reading)
        if self._ticks % settings.daily_aggregate_every == 0:
            self._persist_daily(self._daily.aggregate())

        snapshot = self.state.snapshot()
        self._notify(FAST, snapshot)
        return snapshot

    def detail_tick(self) -> DetailSnapshot:
        """Run one detail tick. Never touches cumulative energy."""
        now = self._now()
        if self.detail_collector is not None:
            detail = self.detail_collector.collect(now)
        else:
            detail = DetailSnapshot(timestamp=now)
        with self._detail_lock:
            self._detail = detail

        self.sessions.refresh(self.state.cumulative_energy_wh, now, self.settings.tariff)

        self._notify(DETAIL, detail)
        return detail

    # --- readers ---------------------------------------------------------

    def snapshot(self) -> AccrualSnapshot:
        return self.state.snapshot()

    def detail_snapshot(self) -> DetailSnapshot | None:
        with self._detail_lock:
            return self._detail

    def daily_totals(self) -> DailyAggregate:
        return self._daily.aggregate()

    def subscribe(self, callback: Callable[[Any], None], cadence: str = FAST) -> Callable[[], None]:
        """Call ``callback`` with each new snapshot. Returns an unsubscribe function."""
        if cadence not in self._subscribers:
            raise ValueError(f"Unknown cadence {cadence!r} (expected '{FAST}' or '{DETAIL}')")
        with self._subscribers_lock:
            self._subscribers[cadence].append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers[cadence]:
                    self._subscribers[cadence].remove(callback)

        return unsubscribe

    def _notify(self, cadence: str, payload: Any) -> None:
        with self._subscribers_lock:
            callbacks = list(self._subscribers[cadence])
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Subscriber callback failed")

    # --- lifecycle -------------------------------------------------------

    def _loop(self, name: str, interval: Callable[[], float], tick: Callable[[], Any]) -> None:
        next_run = time.monotonic()
        while not self._stop_event.is_set():
            try:
                tick()
            except Exception:
                logger.exception("Unexpected error in %s tick", name)
            # Interval is re-read every tick so new settings apply at the boundary
            next_run += interval()
            delay = next_run - time.monotonic()
            if delay < 0:
                next_run = time.monotonic()
                delay = 0
            self._stop_event.wait(delay)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Select a source if needed and start both loops on daemon threads."""
        if self.running:
            raise RuntimeError("Scheduler is already running")
        try:
            self.selector.active
        except SensorError:
            self.selector.select()

        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=(FAST, lambda: self.settings.refresh_interval_s, self.fast_tick),
                name="powercost-fast",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=(DETAIL, lambda: self.settings.detail_interval_s, self.detail_tick),
                name="powercost-detail",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Sampling every %.1fs (detail every %.1fs)",
            self.settings.refresh_interval_s,
            self.settings.detail_interval_s,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop both loops and store today's totals."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        # Commands queued after the last tick still get an answer
        self._drain_commands()
        if self._daily.count:
            self._persist_daily(self._daily.aggregate())
