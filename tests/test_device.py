import pytest
import torch

from locoformer.device import (
    CPU_DEVICE,
    DeviceInfo,
    DeviceType,
    ExecutionMode,
    TorchDeviceProbe,
    check_gpu_capability,
    execution_mode_for_tier,
    select_device,
)
from locoformer.errors import DeviceError

SMALL_GPU = DeviceInfo(type=DeviceType.CUDA, name="small", index=0, memory_gb=4.0)
LARGE_GPU = DeviceInfo(type=DeviceType.CUDA, name="large", index=1, memory_gb=24.0)
MPS = DeviceInfo(type=DeviceType.MPS, name="apple mps")


def test_execution_mode_for_tier() -> None:
    assert execution_mode_for_tier("free") is ExecutionMode.CPU_ONLY
    assert execution_mode_for_tier("pro") is ExecutionMode.GPU_ALLOWED


def test_select_device_cpu_only() -> None:
    devices = [LARGE_GPU, CPU_DEVICE, MPS]
    assert select_device(devices, ExecutionMode.CPU_ONLY) is CPU_DEVICE
    with pytest.raises(DeviceError):
        select_device([LARGE_GPU], ExecutionMode.CPU_ONLY)


def test_select_device_gpu_allowed() -> None:
    devices = [CPU_DEVICE, SMALL_GPU, LARGE_GPU]
    assert select_device(devices, ExecutionMode.GPU_ALLOWED) is LARGE_GPU
    assert select_device([CPU_DEVICE, MPS], ExecutionMode.GPU_ALLOWED) is MPS
    assert select_device([CPU_DEVICE], ExecutionMode.GPU_ALLOWED) is CPU_DEVICE

    unavailable = DeviceInfo(type=DeviceType.CUDA, name="busy", index=0, available=False)
    assert select_device([CPU_DEVICE, unavailable], ExecutionMode.GPU_ALLOWED) is CPU_DEVICE
    with pytest.raises(DeviceError):
        select_device([unavailable], ExecutionMode.GPU_ALLOWED)


@pytest.mark.parametrize(
    "memory_gb, performance, realtime, batch_size",
    [
        (24.0, "high", True, 4),
        (8.0, "high", True, 4),
        (6.0, "medium", False, 2),
        (4.0, "low", False, 1),
        (None, "low", False, 1),
    ],
)
def test_check_gpu_capability(
    memory_gb: float | None, performance: str, realtime: bool, batch_size: int
) -> None:
    info = DeviceInfo(type=DeviceType.CUDA, name="gpu", index=0, memory_gb=memory_gb)
    capability = check_gpu_capability(info)
    assert capability.estimated_performance == performance
    assert capability.supports_realtime == realtime
    assert capability.recommended_batch_size == batch_size


def test_check_cpu_capability() -> None:
    capability = check_gpu_capability(CPU_DEVICE)
    assert capability.estimated_performance == "low"
    assert not capability.supports_realtime


def test_device_info_torch_device() -> None:
    assert CPU_DEVICE.torch_device == torch.device("cpu")
    assert LARGE_GPU.torch_device == torch.device("cuda", 1)
    assert str(LARGE_GPU) == "cuda:1"


def test_torch_probe_cpu() -> None:
    probe = TorchDeviceProbe()
    devices = probe.probe()
    assert devices[0] == CPU_DEVICE
    assert probe.acquire(CPU_DEVICE) == torch.device("cpu")

    with pytest.raises(DeviceError):
        probe.acquire(DeviceInfo(type=DeviceType.CPU, name="cpu", available=False))
