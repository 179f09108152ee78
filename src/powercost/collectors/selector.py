"""Pick the most reliable working power source, and fall back when it fails.

Sources are ordered by tier. The first one that answers a probe becomes
active. Repeated read failures (or repeated implausible samples) demote to
the next tier; higher tiers are re-probed on a slow interval so a sensor that
becomes readable again is promoted back.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from pathlib import Path
from typing import Callable, Iterable, TypeVar

from ..models import RawCounterSample, SourceStatus
from .base import PermissionDenied, PowerSource, SensorError, SensorTimeout, SensorUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_INVALID_THRESHOLD = 5
DEFAULT_REPROBE_INTERVAL = 60.0
DEFAULT_PROBE_TIMEOUT = 2.0


def default_sources(
    powercap_root: Path | None = None,
    hwmon_root: Path | None = None,
    power_supply_root: Path | None = None,
) -> list[PowerSource]:
    """All providers this platform could have, highest tier first."""
    from .battery import DEFAULT_POWER_SUPPLY_ROOT, BatterySource
    from .estimator import EstimatorSource
    from .gpu import GpuSource
    from .hwmon import DEFAULT_HWMON_ROOT, HwmonSource
    from .rapl import DEFAULT_POWERCAP_ROOT, RaplSource

    estimator = EstimatorSource()
    return [
        RaplSource(powercap_root or DEFAULT_POWERCAP_ROOT),
        HwmonSource(hwmon_root or DEFAULT_HWMON_ROOT),
        GpuSource(estimator=estimator),
        BatterySource(power_supply_root or DEFAULT_POWER_SUPPLY_ROOT),
        estimator,
    ]


class SourceSelector:
    """Owns the active source and the fallback/promotion policy."""

    def __init__(
        self,
        sources: Iterable[PowerSource],
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        invalid_threshold: int = DEFAULT_INVALID_THRESHOLD,
        reprobe_interval: float = DEFAULT_REPROBE_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        # sorted() is stable, so equal tiers keep their given order
        self.sources = sorted(sources, key=lambda s: s.tier)
        if not self.sources:
            raise ValueError("At least one power source is required")
        self.failure_threshold = failure_threshold
        self.invalid_threshold = invalid_threshold
        self.reprobe_interval = reprobe_interval
        self.probe_timeout = probe_timeout
        self._clock = clock

        self._lock = threading.Lock()
        # One worker per source: a hung driver only ever blocks its own source
        self._executors: dict[int, ThreadPoolExecutor] = {}
        self._pending: dict[int, Future] = {}
        self._active_index: int | None = None
        self._best_index: int | None = None
        self._failures = 0
        self._invalids = 0
        self._last_error: SensorError | None = None
        self._hint: str | None = None
        self._last_reprobe = 0.0
        self.generation = 0

    # --- internals -------------------------------------------------------

    def _call(self, index: int, fn: Callable[[], T]) -> T:
        """Run a sensor call on the source's worker, bounded by the probe timeout.

        While an earlier call to the same source is still running, the source
        counts as timed out rather than queueing behind it.
        """
        source = self.sources[index]
        pending = self._pending.get(index)
        if pending is not None and not pending.done():
            raise SensorTimeout(f"{source.name} is still busy with an earlier call")

        executor = self._executors.get(index)
        if executor is None:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"powercost-sensor-{index}")
            self._executors[index] = executor
        future = executor.submit(fn)
        self._pending[index] = future
        try:
            return future.result(timeout=self.probe_timeout)
        except FuturesTimeout:
            future.cancel()
            raise SensorTimeout(f"No answer within {self.probe_timeout:.1f}s")
        except SensorError:
            raise
        except Exception as e:
            # A provider bug must not take down the sampling loop
            logger.exception("Unexpected error from power source")
            raise SensorError(str(e)) from e

    def _try(self, index: int) -> bool:
        source = self.sources[index]
        try:
            self._call(index, source.probe)
        except SensorError as e:
            self._note_error(source, e)
            logger.debug("Probe of %s failed: %s", source.name, e)
            return False
        return True

    def _note_error(self, source: PowerSource, error: SensorError) -> None:
        self._last_error = error
        if isinstance(error, PermissionDenied) and source.permission_hint:
            self._hint = source.permission_hint

    def _activate(self, index: int) -> None:
        previous = self._active_index
        self._active_index = index
        self._failures = 0
        self._invalids = 0
        self._last_reprobe = self._clock()
        self.generation += 1
        source = self.sources[index]
        if previous is None:
            logger.info("Using %s (tier %d) for power monitoring", source.name, source.tier)
        elif index > previous:
            logger.warning(
                "Falling back from %s to %s (tier %d)",
                self.sources[previous].name,
                source.name,
                source.tier,
            )
        else:
            logger.info("Promoted back to %s (tier %d)", source.name, source.tier)
            self._hint = None
        if source.is_estimated and index == len(self.sources) - 1:
            logger.warning("No hardware power sensor available, readings are estimated")

    def _demote(self) -> None:
        assert self._active_index is not None
        for index in range(self._active_index + 1, len(self.sources)):
            if self._try(index):
                self._activate(index)
                return
        # Nothing below answers either; keep the current source and start counting again
        logger.warning("No fallback source answered, staying on %s", self.active.name)
        self._failures = 0
        self._invalids = 0

    # --- public API ------------------------------------------------------

    @property
    def active(self) -> PowerSource:
        if self._active_index is None:
            raise SensorUnavailable("No source selected yet")
        return self.sources[self._active_index]

    def select(self) -> PowerSource:
        """Probe tiers in order and activate the first that answers."""
        with self._lock:
            for index in range(len(self.sources)):
                if self._try(index):
                    self._best_index = index
                    self._activate(index)
                    return self.sources[index]
        raise SensorUnavailable("No power source available on this machine")

    def read(self) -> RawCounterSample:
        """Sample the active source. Failures are counted, then re-raised."""
        with self._lock:
            if self._active_index is None:
                raise SensorUnavailable("No source selected yet")
            source = self.sources[self._active_index]
            try:
                sample = self._call(self._active_index, source.sample)
            except SensorError as e:
                self._note_error(source, e)
                self._failures += 1
                logger.debug(
                    "Read from %s failed (%d/%d): %s",
                    source.name,
                    self._failures,
                    self.failure_threshold,
                    e,
                )
                if self._failures >= self.failure_threshold:
                    self._demote()
                raise
            self._failures = 0
            return sample

    def report_invalid(self, error: SensorError) -> None:
        """Count an implausible sample from the active source."""
        with self._lock:
            if self._active_index is None:
                return
            self._invalids += 1
            self._last_error = error
            if self._invalids >= self.invalid_threshold:
                logger.warning(
                    "%s produced %d invalid samples in a row",
                    self.active.name,
                    self._invalids,
                )
                self._demote()

    def report_valid(self) -> None:
        with self._lock:
            self._invalids = 0

    def maybe_promote(self) -> bool:
        """Re-probe higher tiers if the re-probe interval has elapsed."""
        with self._lock:
            if self._active_index is None or self._active_index == 0:
                return False
            now = self._clock()
            if now - self._last_reprobe < self.reprobe_interval:
                return False
            self._last_reprobe = now
            for index in range(self._active_index):
                if self._try(index):
                    self._activate(index)
                    return True
            return False

    def probe_all(self) -> list[tuple[PowerSource, SensorError | None]]:
        """Probe every source without changing the selection (for diagnostics)."""
        results = []
        for index, source in enumerate(self.sources):
            try:
                self._call(index, source.probe)
            except SensorError as e:
                results.append((source, e))
            else:
                results.append((source, None))
        return results

    def status(self) -> SourceStatus | None:
        with self._lock:
            if self._active_index is None:
                return None
            source = self.sources[self._active_index]
            degraded = (
                self._best_index is not None and self._active_index > self._best_index
            ) or self._active_index == len(self.sources) - 1
            return SourceStatus(
                source_id=source.source_id,
                name=source.name,
                tier=source.tier,
                is_estimated=source.is_estimated,
                degraded=degraded,
                consecutive_failures=self._failures,
                last_error=str(self._last_error) if self._last_error else None,
                hint=self._hint,
            )

    def close(self) -> None:
        for executor in self._executors.values():
            executor.shutdown(wait=False, cancel_futures=True)
        self._executors.clear()
        for source in self.sources:
            try:
                source.close()
            except SensorError as e:
                logger.debug("Closing %s failed: %s", source.name, e)
