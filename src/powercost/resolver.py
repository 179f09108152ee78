"""Turn raw counter samples into watts.

Energy counters are differenced over time; instantaneous power samples are
passed through. Anything implausible raises InvalidSample so that the
selector can count it, rather than being clamped into a believable number.
"""

from .collectors.base import SensorError
from .models import CounterKind, RawCounterSample

MIN_DELTA_SECONDS = 0.05
MAX_PLAUSIBLE_WATTS = 5000.0


class InvalidSample(SensorError):
    """A sample pair that cannot produce a trustworthy power value."""

    reason = "invalid_sample"


def needs_previous(sample: RawCounterSample) -> bool:
    """Energy counters need a prior sample before they yield power."""
    return sample.kind is CounterKind.ENERGY


def counter_delta(prev: RawCounterSample, curr: RawCounterSample) -> float:
    """Counter increase between two samples, correcting a single wraparound."""
    delta = curr.value - prev.value
    if delta >= 0:
        return delta
    if curr.max_range is None:
        raise InvalidSample(
            f"Counter went backwards ({prev.value} -> {curr.value}) with unknown range"
        )
    if prev.value > curr.max_range:
        raise InvalidSample(f"Counter value {prev.value} exceeds its range {curr.max_range}")
    return (curr.max_range - prev.value) + curr.value


def resolve_power(
    prev: RawCounterSample | None,
    curr: RawCounterSample,
    max_watts: float = MAX_PLAUSIBLE_WATTS,
    min_delta_seconds: float = MIN_DELTA_SECONDS,
) -> float:
    """Power in watts from a sample pair (or a single instantaneous sample).

    Raises InvalidSample for near-zero time deltas, backwards counters with
    no known range, and results outside [0, max_watts].
    """
    if curr.kind is CounterKind.POWER:
        watts = max(curr.value, 0.0)
    else:
        if prev is None:
            raise InvalidSample("Energy counter needs a previous sample")
        delta_time = curr.timestamp - prev.timestamp
        if delta_time < min_delta_seconds:
            raise InvalidSample(f"Time delta {delta_time:.4f}s is too small")
        watts = counter_delta(prev, curr) * curr.joules_per_unit / delta_time

    if watts < 0 or watts > max_watts:
        raise InvalidSample(f"Implausible power {watts:.1f} W")
    return watts
