"""RAPL (Running Average Power Limit) energy counters via the powercap sysfs interface.

Reads the cumulative ``energy_uj`` counter of the first CPU package under
/sys/class/powercap. The counter wraps at ``max_energy_range_uj``; wrap
handling happens in the resolver, this module only reports the range.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from ..models import CounterKind, RawCounterSample, SourceId
from .base import PermissionDenied, PowerSource, SensorUnavailable, read_sysfs_number

logger = logging.getLogger(__name__)

DEFAULT_POWERCAP_ROOT = Path("/sys/class/powercap")
DOMAIN_PREFIXES = ("intel-rapl:", "amd-rapl:")

PERMISSION_HINT = (
    "RAPL counters are root-only on recent kernels. Grant read access with "
    "'sudo chmod -R a+r /sys/class/powercap/' or install a udev rule such as "
    'SUBSYSTEM=="powercap", ACTION=="add", RUN+="/bin/chmod -R a+r /sys/class/powercap/"'
)


@dataclass(frozen=True)
class RaplDomain:
    """A RAPL energy domain (package) or subdomain (core, uncore, dram)."""

    name: str
    energy_path: Path
    max_range: int | None


def _read_name(directory: Path) -> str:
    try:
        return (directory / "name").read_text().strip()
    except OSError:
        return directory.name


def _read_max_range(directory: Path) -> int | None:
    try:
        return int((directory / "max_energy_range_uj").read_text().strip())
    except (OSError, ValueError):
        return None


def discover_domains(root: Path = DEFAULT_POWERCAP_ROOT) -> list[RaplDomain]:
    """Find top-level RAPL package domains, sorted by directory name."""
    if not root.is_dir():
        return []

    domains = []
    for entry in sorted(root.iterdir()):
        # Top-level packages look like intel-rapl:0; subdomains are intel-rapl:0:1
        if not entry.name.startswith(DOMAIN_PREFIXES) or entry.name.count(":") != 1:
            continue
        if not (entry / "energy_uj").exists():
            continue
        domains.append(
            RaplDomain(
                name=_read_name(entry),
                energy_path=entry / "energy_uj",
                max_range=_read_max_range(entry),
            )
        )
    return domains


def discover_subdomains(package_dir: Path) -> list[RaplDomain]:
    """Find the core/uncore/dram subdomains of a package."""
    subdomains = []
    for entry in sorted(package_dir.iterdir()):
        if not entry.is_dir() or not entry.name.startswith(DOMAIN_PREFIXES):
            continue
        if not (entry / "energy_uj").exists():
            continue
        subdomains.append(
            RaplDomain(
                name=_read_name(entry),
                energy_path=entry / "energy_uj",
                max_range=_read_max_range(entry),
            )
        )
    return subdomains


class RaplSource(PowerSource):
    """CPU package energy from RAPL. Tier 1: a direct hardware counter."""

    source_id = SourceId.RAPL
    tier = 1
    name = "RAPL energy counter"
    permission_hint = PERMISSION_HINT

    def __init__(self, root: Path = DEFAULT_POWERCAP_ROOT) -> None:
        self.root = Path(root)
        self._domain: RaplDomain | None = None

    @property
    def domain(self) -> RaplDomain:
        if self._domain is None:
            domains = discover_domains(self.root)
            if not domains:
                raise SensorUnavailable(f"No RAPL package domain under {self.root}")
            self._domain = domains[0]
            logger.info(
                "RAPL domain %s at %s (max=%s uJ)",
                self._domain.name,
                self._domain.energy_path,
                self._domain.max_range,
            )
        return self._domain

    @property
    def package_dir(self) -> Path:
        return self.domain.energy_path.parent

    def sample(self) -> RawCounterSample:
        domain = self.domain
        try:
            value = read_sysfs_number(domain.energy_path)
        except PermissionDenied as e:
            raise PermissionDenied(f"{e}. {PERMISSION_HINT}")
        return RawCounterSample(
            value=value,
            timestamp=time.monotonic(),
            kind=CounterKind.ENERGY,
            max_range=domain.max_range,
            joules_per_unit=1e-6,
        )


def read_domain(domain: RaplDomain) -> RawCounterSample:
    """Take a raw sample from any RAPL domain."""
    return RawCounterSample(
        value=read_sysfs_number(domain.energy_path),
        timestamp=time.monotonic(),
        kind=CounterKind.ENERGY,
        max_range=domain.max_range,
        joules_per_unit=1e-6,
    )
