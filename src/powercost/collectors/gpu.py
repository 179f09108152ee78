"""GPU readings (NVML, amdgpu sysfs) and the combined CPU estimate + GPU source.

All pynvml imports are deferred so this module is safe to import on
machines without an NVIDIA driver.
"""

import logging
import threading
import time
from pathlib import Path

from ..models import CounterKind, GpuMetrics, RawCounterSample, SourceId
from .base import PowerSource, SensorError, SensorUnavailable, read_sysfs_number
from .estimator import PLATFORM_OVERHEAD_WATTS, EstimatorSource

logger = logging.getLogger(__name__)


class NvmlGpu:
    """Lazily initialised handle on the first NVML device."""

    def __init__(self, device_index: int = 0) -> None:
        self.device_index = device_index
        self._pynvml = None
        self._handle = None
        self._name = "NVIDIA GPU"
        self._lock = threading.Lock()

    def _ensure(self):
        if self._handle is not None:
            return self._pynvml, self._handle
        try:
            import pynvml
        except ImportError:
            raise SensorUnavailable("pynvml is not installed")

        try:
            pynvml.nvmlInit()
            count = pynvml.nvmlDeviceGetCount()
            if count <= self.device_index:
                pynvml.nvmlShutdown()
                raise SensorUnavailable("NVML reports no GPU device")
            handle = pynvml.nvmlDeviceGetHandleByIndex(self.device_index)
            name = pynvml.nvmlDeviceGetName(handle)
        except pynvml.NVMLError as e:
            raise SensorUnavailable(f"NVML init failed: {e}")

        self._pynvml = pynvml
        self._handle = handle
        self._name = name.decode() if isinstance(name, bytes) else str(name)
        logger.info("NVML initialized: %s (device %d of %d)", self._name, self.device_index, count)
        return pynvml, handle

    @property
    def name(self) -> str:
        return self._name

    def power_watts(self) -> float:
        """Board power draw in watts."""
        with self._lock:
            pynvml, handle = self._ensure()
            try:
                return pynvml.nvmlDeviceGetPowerUsage(handle) / 1000
            except pynvml.NVMLError as e:
                raise SensorUnavailable(f"NVML power query failed: {e}")

    def metrics(self) -> GpuMetrics:
        """Full metrics; individual fields are None when a query is unsupported."""
        with self._lock:
            pynvml, handle = self._ensure()

            def query(fn, *args):
                try:
                    return fn(handle, *args)
                except pynvml.NVMLError:
                    return None

            power_mw = query(pynvml.nvmlDeviceGetPowerUsage)
            utilization = query(pynvml.nvmlDeviceGetUtilizationRates)
            temperature = query(pynvml.nvmlDeviceGetTemperature, pynvml.NVML_TEMPERATURE_GPU)
            memory = query(pynvml.nvmlDeviceGetMemoryInfo)

        return GpuMetrics(
            name=self._name,
            power_watts=power_mw / 1000 if power_mw is not None else None,
            usage_percent=float(utilization.gpu) if utilization is not None else None,
            temperature_celsius=float(temperature) if temperature is not None else None,
            vram_used_mb=memory.used // (1024 * 1024) if memory is not None else None,
            vram_total_mb=memory.total // (1024 * 1024) if memory is not None else None,
        )

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                try:
                    self._pynvml.nvmlShutdown()
                except self._pynvml.NVMLError as e:
                    logger.debug("NVML shutdown failed: %s", e)
                self._handle = None


DEFAULT_DRM_ROOT = Path("/sys/class/drm")
MIB = 1024 * 1024


def _read_optional(path: Path) -> int | None:
    try:
        return read_sysfs_number(path)
    except SensorError:
        return None


def find_gpu_hwmon(device: Path) -> Path | None:
    """The hwmon directory under a DRM device that carries temperature or power."""
    hwmon = device / "hwmon"
    if not hwmon.is_dir():
        return None
    for path in sorted(hwmon.iterdir()):
        if any((path / name).exists() for name in ("temp1_input", "power1_average", "power1_input")):
            return path
    return None


class AmdGpu:
    """Metrics for the first amdgpu card found under ``/sys/class/drm``.

    Only cards exposing ``gpu_busy_percent`` count; connector entries such as
    ``card0-DP-1`` are skipped.
    """

    def __init__(self, drm_root: Path = DEFAULT_DRM_ROOT) -> None:
        self.drm_root = Path(drm_root)
        self._device: Path | None = None

    def _find_device(self) -> Path:
        if self._device is not None:
            return self._device
        if self.drm_root.is_dir():
            for card in sorted(self.drm_root.iterdir()):
                if not card.name.startswith("card") or "-" in card.name:
                    continue
                device = card / "device"
                if (device / "gpu_busy_percent").exists():
                    self._device = device
                    logger.info("amdgpu found at %s", device)
                    return device
        raise SensorUnavailable(f"No amdgpu device under {self.drm_root}")

    def _name(self, device: Path) -> str:
        for attr in ("product_name", "device"):
            try:
                name = (device / attr).read_text().strip()
            except OSError:
                continue
            if name:
                return name
        return "AMD GPU"

    def metrics(self) -> GpuMetrics:
        """Full metrics; fields the driver does not expose are None."""
        device = self._find_device()
        hwmon = find_gpu_hwmon(device)

        power_uw = temp_mc = None
        if hwmon is not None:
            power_uw = _read_optional(hwmon / "power1_average")
            if power_uw is None:
                power_uw = _read_optional(hwmon / "power1_input")
            temp_mc = _read_optional(hwmon / "temp1_input")
        busy = _read_optional(device / "gpu_busy_percent")
        vram_used = _read_optional(device / "mem_info_vram_used")
        vram_total = _read_optional(device / "mem_info_vram_total")

        return GpuMetrics(
            name=self._name(device),
            power_watts=power_uw / 1_000_000 if power_uw is not None else None,
            usage_percent=float(busy) if busy is not None else None,
            temperature_celsius=temp_mc / 1000 if temp_mc is not None else None,
            vram_used_mb=vram_used // MIB if vram_used is not None else None,
            vram_total_mb=vram_total // MIB if vram_total is not None else None,
            source="amdgpu-sysfs",
        )

    def close(self) -> None:
        self._device = None


class GpuSource(PowerSource):
    """Platform CPU estimate plus the discrete GPU's own power reading. Tier 2.

    Only usable when the GPU query succeeds; otherwise the selector moves on.
    """

    source_id = SourceId.GPU
    tier = 2
    name = "CPU estimate + NVIDIA GPU"

    def __init__(self, gpu: NvmlGpu | None = None, estimator: EstimatorSource | None = None) -> None:
        self.gpu = gpu or NvmlGpu()
        self._estimator = estimator

    @property
    def estimator(self) -> EstimatorSource:
        if self._estimator is None:
            self._estimator = EstimatorSource()
        return self._estimator

    def sample(self) -> RawCounterSample:
        gpu_watts = self.gpu.power_watts()
        return RawCounterSample(
            value=gpu_watts + self.estimator.cpu_watts() + PLATFORM_OVERHEAD_WATTS,
            timestamp=time.monotonic(),
            kind=CounterKind.POWER,
        )

    def close(self) -> None:
        self.gpu.close()
