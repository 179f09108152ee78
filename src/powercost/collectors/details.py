"""Slow-cadence detail: processes, RAPL components, temperatures, fans, GPU.

Each part is collected independently; a part that fails is left empty and
the rest of the snapshot is still returned.
"""

import logging
from datetime import datetime
from pathlib import Path

import psutil

from ..models import DetailSnapshot, GpuMetrics, ProcessSample, RawCounterSample
from ..resolver import resolve_power
from .base import SensorError, SensorUnavailable
from .gpu import DEFAULT_DRM_ROOT, AmdGpu, NvmlGpu
from .rapl import DEFAULT_POWERCAP_ROOT, RaplDomain, discover_domains, discover_subdomains, read_domain

logger = logging.getLogger(__name__)

PROCESS_ATTRS = ["pid", "name", "cpu_percent", "memory_info", "memory_percent"]


class DetailCollector:
    """Builds a DetailSnapshot on each call to ``collect``."""

    def __init__(
        self,
        powercap_root: Path = DEFAULT_POWERCAP_ROOT,
        process_limit: int = 10,
        pinned_processes: tuple[str, ...] | list[str] = (),
        gpu: NvmlGpu | AmdGpu | None = None,
        enable_gpu: bool = True,
        drm_root: Path = DEFAULT_DRM_ROOT,
    ) -> None:
        self.powercap_root = Path(powercap_root)
        self.process_limit = process_limit
        self.pinned_processes = {name.lower() for name in pinned_processes}
        if gpu is not None:
            self._gpus = [gpu]
        else:
            # NVML first, then the amdgpu sysfs files
            self._gpus = [NvmlGpu(), AmdGpu(drm_root)] if enable_gpu else []
        self._domains: list[RaplDomain] | None = None
        self._previous: dict[Path, RawCounterSample] = {}

    def _rapl_domains(self) -> list[RaplDomain]:
        if self._domains is None:
            domains = []
            for package in discover_domains(self.powercap_root):
                domains.append(package)
                domains.extend(discover_subdomains(package.energy_path.parent))
            self._domains = domains
        return self._domains

    def component_breakdown(self) -> dict[str, float]:
        """Watts per RAPL domain name (package, core, uncore, dram), summed across sockets."""
        breakdown: dict[str, float] = {}
        for domain in self._rapl_domains():
            try:
                sample = read_domain(domain)
            except SensorError as e:
                logger.debug("Skipping RAPL domain %s: %s", domain.name, e)
                continue
            prev = self._previous.get(domain.energy_path)
            self._previous[domain.energy_path] = sample
            if prev is None:
                continue
            try:
                watts = resolve_power(prev, sample)
            except SensorError as e:
                logger.debug("Discarding %s sample: %s", domain.name, e)
                continue
            key = domain.name.split("-")[0] if domain.name.startswith("package") else domain.name
            breakdown[key] = breakdown.get(key, 0.0) + watts
        return breakdown

    def top_processes(self) -> list[ProcessSample]:
        """Top processes by CPU, with pinned names always included."""
        samples = []
        for proc in psutil.process_iter(PROCESS_ATTRS):
            info = proc.info
            name = info.get("name") or ""
            memory_info = info.get("memory_info")
            samples.append(
                ProcessSample(
                    pid=info["pid"],
                    name=name,
                    cpu_percent=info.get("cpu_percent") or 0.0,
                    memory_bytes=memory_info.rss if memory_info else 0,
                    memory_percent=info.get("memory_percent") or 0.0,
                    is_pinned=name.lower() in self.pinned_processes,
                )
            )

        samples.sort(key=lambda p: p.cpu_percent, reverse=True)
        top = samples[: self.process_limit]
        top_pids = {p.pid for p in top}
        pinned = [p for p in samples if p.is_pinned and p.pid not in top_pids]
        return top + pinned

    def temperatures(self) -> dict[str, float]:
        if not hasattr(psutil, "sensors_temperatures"):
            return {}
        readings = {}
        for chip, entries in psutil.sensors_temperatures().items():
            for index, entry in enumerate(entries):
                label = entry.label or f"temp{index + 1}"
                readings[f"{chip}/{label}"] = float(entry.current)
        return readings

    def fans(self) -> dict[str, int]:
        if not hasattr(psutil, "sensors_fans"):
            return {}
        speeds = {}
        for chip, entries in psutil.sensors_fans().items():
            for index, entry in enumerate(entries):
                label = entry.label or f"fan{index + 1}"
                speeds[f"{chip}/{label}"] = int(entry.current)
        return speeds

    def gpu_metrics(self) -> GpuMetrics | None:
        """Metrics from the first GPU backend that answers; failing backends are dropped."""
        while self._gpus:
            try:
                return self._gpus[0].metrics()
            except SensorUnavailable as e:
                logger.info("GPU detail backend disabled: %s", e)
                self._gpus.pop(0).close()
        return None

    def collect(self, now: datetime | None = None) -> DetailSnapshot:
        parts = {}
        for key, fn, default in (
            ("component_breakdown", self.component_breakdown, {}),
            ("processes", self.top_processes, []),
            ("temperatures", self.temperatures, {}),
            ("fans", self.fans, {}),
            ("gpu", self.gpu_metrics, None),
        ):
            try:
                parts[key] = fn()
            except (SensorError, OSError, psutil.Error) as e:
                logger.debug("Detail %s failed: %s", key, e)
                parts[key] = default

        try:
            cpu_percent = psutil.cpu_percent(interval=None)
            memory_percent = psutil.virtual_memory().percent
        except (OSError, psutil.Error) as e:
            logger.debug("CPU/memory usage failed: %s", e)
            cpu_percent = memory_percent = None

        return DetailSnapshot(
            timestamp=now or datetime.now(),
            cpu_percent=cpu_percent,
            memory_percent=memory_percent,
            **parts,
        )

    def close(self) -> None:
        for gpu in self._gpus:
            gpu.close()
