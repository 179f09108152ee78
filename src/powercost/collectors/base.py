"""Common contract for power source providers.

Every provider yields a RawCounterSample per call or raises one of the
SensorError subclasses below. Providers hold no accrual state.
"""

import errno
from abc import ABC, abstractmethod
from pathlib import Path

from ..models import RawCounterSample, SourceId

TOP_TIER = 1


class SensorError(Exception):
    """Base exception for source provider errors."""

    reason = "error"


class SensorUnavailable(SensorError):
    """The sensor is not present on this machine."""

    reason = "unavailable"


class PermissionDenied(SensorError):
    """The sensor is present but cannot be read by this user."""

    reason = "permission_denied"


class SensorParseError(SensorError):
    """The sensor returned something that is not a number."""

    reason = "parse_error"


class SensorTimeout(SensorError):
    """The sensor did not answer within the read timeout."""

    reason = "timeout"


def read_sysfs_number(path: Path) -> int:
    """Read an integer attribute from sysfs, mapping OS errors to SensorError."""
    try:
        raw = path.read_text().strip()
    except FileNotFoundError:
        raise SensorUnavailable(f"{path} does not exist")
    except PermissionError:
        raise PermissionDenied(f"Cannot read {path}")
    except OSError as e:
        # Some drivers return ENODATA/EIO while the device sleeps
        if e.errno in (errno.ENODATA, errno.EIO, errno.EAGAIN):
            raise SensorUnavailable(f"{path} has no data: {e}")
        raise SensorUnavailable(f"Failed to read {path}: {e}")

    try:
        return int(raw)
    except ValueError:
        raise SensorParseError(f"Unexpected value {raw!r} in {path}")


class PowerSource(ABC):
    """A single power acquisition technique."""

    source_id: SourceId
    tier: int
    name: str
    permission_hint: str | None = None

    @property
    def is_estimated(self) -> bool:
        return self.tier > TOP_TIER

    def probe(self) -> None:
        """Check that a sample can be taken. Raises SensorError otherwise."""
        self.sample()

    @abstractmethod
    def sample(self) -> RawCounterSample:
        """Return a RawCounterSample."""

    def close(self) -> None:
        """Release any handles held by the provider."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} tier={self.tier} {self.name!r}>"
