"""Device discovery and selection.

Hardware access goes through the [`DeviceProbe`][locoformer.device.DeviceProbe] protocol so the
engine can be exercised with fake GPUs; [`TorchDeviceProbe`][locoformer.device.TorchDeviceProbe]
is the real implementation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Protocol, assert_never

import torch

from . import types as t
from .errors import DeviceError

logger = logging.getLogger(__name__)


class DeviceType(Enum):
    CPU = "cpu"
    CUDA = "cuda"
    MPS = "mps"


class ExecutionMode(Enum):
    CPU_ONLY = "cpu_only"
    GPU_ALLOWED = "gpu_allowed"


@dataclass(frozen=True)
class DeviceInfo:
    type: DeviceType
    name: str
    index: int | None = None
    memory_gb: float | None = None
    available: bool = True

    @property
    def torch_device(self) -> torch.device:
        if self.index is None:
            return torch.device(self.type.value)
        return torch.device(self.type.value, self.index)

    def __str__(self) -> str:
        return str(self.torch_device)


@dataclass(frozen=True)
class GPUCapability:
    estimated_performance: Literal["high", "medium", "low"]
    supports_realtime: bool
    recommended_batch_size: int


CPU_DEVICE = DeviceInfo(type=DeviceType.CPU, name="cpu")


class DeviceProbe(Protocol):
    def probe(self) -> list[DeviceInfo]:
        """All devices, CPU included."""
        ...

    def acquire(self, info: DeviceInfo) -> torch.device:
        """:raises DeviceError: if the device cannot be used."""
        ...


class TorchDeviceProbe:
    """Discovers devices through torch."""

    def probe(self) -> list[DeviceInfo]:
        devices = [CPU_DEVICE]
        if torch.cuda.is_available():
            for i in range(torch.cuda.device_count()):
                props = torch.cuda.get_device_properties(i)
                devices.append(
                    DeviceInfo(
                        type=DeviceType.CUDA,
                        name=props.name,
                        index=i,
                        memory_gb=round(props.total_memory / (1024**3), 2),
                    )
                )
        if torch.backends.mps.is_available():
            devices.append(DeviceInfo(type=DeviceType.MPS, name="apple mps"))
        logger.debug(f"probed devices: {[str(d) for d in devices]}")
        return devices

    def acquire(self, info: DeviceInfo) -> torch.device:
        device = info.torch_device
        if not info.available:
            raise DeviceError(f"device {device} is not available")
        try:
            # a tiny allocation surfaces driver and out-of-memory errors early
            torch.zeros(1, device=device).add_(1)
        except (RuntimeError, AssertionError) as e:
            raise DeviceError(f"failed to acquire {device}: {e}") from e
        return device


def execution_mode_for_tier(tier: t.Tier) -> ExecutionMode:
    match tier:
        case "free":
            return ExecutionMode.CPU_ONLY
        case "pro":
            return ExecutionMode.GPU_ALLOWED
        case _:
            assert_never(tier)


def select_device(devices: list[DeviceInfo], mode: ExecutionMode) -> DeviceInfo:
    """Pick the device to run on: CUDA with the most memory, then MPS, then CPU.

    :raises DeviceError: if no usable device is found (e.g. CPU missing in CPU-only mode).
    """
    available = [d for d in devices if d.available]
    cpus = [d for d in available if d.type == DeviceType.CPU]
    match mode:
        case ExecutionMode.CPU_ONLY:
            if not cpus:
                raise DeviceError("cpu-only execution requested but no cpu device was found")
            return cpus[0]
        case ExecutionMode.GPU_ALLOWED:
            if cudas := [d for d in available if d.type == DeviceType.CUDA]:
                return max(cudas, key=lambda d: d.memory_gb or 0.0)
            if mps := [d for d in available if d.type == DeviceType.MPS]:
                return mps[0]
            if cpus:
                return cpus[0]
            raise DeviceError("no usable device found")
        case _:
            assert_never(mode)


def check_gpu_capability(info: DeviceInfo) -> GPUCapability:
    """Rough performance class of a device based on its memory.

    6GB is the practical minimum for full-length chunks, 8GB+ leaves headroom for
    larger attention slices.
    """
    if info.type == DeviceType.CPU:
        return GPUCapability("low", supports_realtime=False, recommended_batch_size=1)
    memory = info.memory_gb or 0.0
    if memory >= 8:
        return GPUCapability("high", supports_realtime=True, recommended_batch_size=4)
    if memory >= 6:
        return GPUCapability("medium", supports_realtime=False, recommended_batch_size=2)
    return GPUCapability("low", supports_realtime=False, recommended_batch_size=1)
