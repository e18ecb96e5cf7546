"""Accelerator memory queries backed by NVML."""

from __future__ import annotations

from dataclasses import dataclass
import threading
from typing import Any

from loguru import logger
import pynvml

_nvml_lock = threading.Lock()
_nvml_ready = False


@dataclass(frozen=True, slots=True)
class MemoryUsage:
    """Total and free accelerator memory, in bytes."""

    total: int
    free: int

    @property
    def used(self) -> int:
        return self.total - self.free


@dataclass(frozen=True, slots=True)
class GpuDevice:
    """Snapshot of one NVML device."""

    index: int
    name: str
    total: int
    free: int

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "name": self.name, "total": self.total, "free": self.free}


def _ensure_nvml() -> None:
    global _nvml_ready
    with _nvml_lock:
        if not _nvml_ready:
            pynvml.nvmlInit()
            _nvml_ready = True


def list_gpu_devices() -> list[GpuDevice]:
    """Return every visible NVIDIA device with its memory state.

    Raises
    ------
    pynvml.NVMLError
        If the driver is missing or a device query fails.
    """
    _ensure_nvml()
    devices: list[GpuDevice] = []
    for index in range(pynvml.nvmlDeviceGetCount()):
        handle = pynvml.nvmlDeviceGetHandleByIndex(index)
        name = pynvml.nvmlDeviceGetName(handle)
        if isinstance(name, bytes):
            name = name.decode("utf-8")
        memory = pynvml.nvmlDeviceGetMemoryInfo(handle)
        devices.append(GpuDevice(index=index, name=name, total=int(memory.total), free=int(memory.free)))
    return devices


def query_gpu_memory() -> MemoryUsage | None:
    """Sum memory across devices, or ``None`` when it cannot be measured."""
    try:
        devices = list_gpu_devices()
    except pynvml.NVMLError as e:
        logger.warning(f"Unable to query GPU memory. {type(e).__name__}: {e}")
        return None
    if not devices:
        return None
    return MemoryUsage(
        total=sum(device.total for device in devices),
        free=sum(device.free for device in devices),
    )
