"""Idle power (baseline) detection from recent readings."""

import math
import threading
from collections import deque
from datetime import datetime
from typing import Iterable

from ..models import BaselineDetection

MIN_SAMPLES = 10
BASELINE_PERCENTILE = 5
DEFAULT_WINDOW = 300
# Sample count at which the count factor reaches 0.5
CONFIDENCE_HALF_COUNT = 60


def detect_baseline(
    values: Iterable[float],
    percentile: float = BASELINE_PERCENTILE,
    min_samples: int = MIN_SAMPLES,
) -> BaselineDetection | None:
    """Estimate idle draw as a low percentile of the power series.

    Returns None when there are fewer than ``min_samples`` values. Confidence
    grows with the sample count and shrinks as the median drifts away from
    the low percentile (a busy machine gives a less trustworthy baseline).
    """
    sorted_values = sorted(values)
    n = len(sorted_values)
    if n < min_samples:
        return None

    index = min(math.floor(n * percentile / 100), n - 1)
    p_low = sorted_values[index]
    median = sorted_values[n // 2]

    if median > 0:
        spread_factor = 1 - min(1.0, (median - p_low) / median)
    else:
        spread_factor = 1.0
    confidence = n / (n + CONFIDENCE_HALF_COUNT) * spread_factor

    return BaselineDetection(
        detected_watts=p_low,
        confidence=min(max(confidence, 0.0), 1.0),
        sample_count=n,
    )


class BaselineDetector:
    """Sliding window of recent power values plus an optional manual override."""

    def __init__(self, window: int = DEFAULT_WINDOW, manual_watts: float | None = None) -> None:
        self._lock = threading.Lock()
        self._samples: deque[float] = deque(maxlen=window)
        self._manual_watts = manual_watts
        self._last_detection: BaselineDetection | None = None

    def add_sample(self, watts: float) -> None:
        with self._lock:
            self._samples.append(watts)

    def resize(self, window: int) -> None:
        with self._lock:
            if window != self._samples.maxlen:
                self._samples = deque(self._samples, maxlen=window)

    @property
    def sample_count(self) -> int:
        with self._lock:
            return len(self._samples)

    @property
    def manual_watts(self) -> float | None:
        return self._manual_watts

    def set_manual(self, watts: float) -> None:
        if watts < 0:
            raise ValueError("Baseline watts must be >= 0")
        self._manual_watts = watts

    def clear_manual(self) -> None:
        self._manual_watts = None

    def detect(self) -> BaselineDetection | None:
        """Run detection on the current window and remember the result."""
        with self._lock:
            values = list(self._samples)
        detection = detect_baseline(values)
        if detection is not None:
            self._last_detection = detection
        return detection

    @property
    def last_detection(self) -> BaselineDetection | None:
        return self._last_detection

    def get_baseline(self) -> float | None:
        """Manual override if set, else a fresh detection, else None."""
        if self._manual_watts is not None:
            return self._manual_watts
        detection = self.detect()
        return detection.detected_watts if detection else None

    def surplus_watts(self, current_watts: float) -> float:
        """Draw above the baseline, never negative (0 when no baseline is known)."""
        baseline = self.get_baseline()
        if baseline is None:
            return 0.0
        return max(0.0, current_watts - baseline)


def detect_from_history(persistence, start: datetime, end: datetime) -> BaselineDetection | None:
    """Run detection over persisted readings between ``start`` and ``end``."""
    readings = persistence.query_readings(start, end)
    return detect_baseline(r.power_watts for r in readings)
