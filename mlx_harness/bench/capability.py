# Copyright © 2023-2025 Apple Inc.

import platform
import re
from dataclasses import dataclass

from .models import Backend

# Apple GPU generations with Metal 4 tensor ops (M5 / A19 class and later).
TENSOR_MIN_GENERATION = 17

_ARCH_RE = re.compile(r"g(\d+)")


@dataclass(frozen=True)
class HardwareDescriptor:
    has_gpu: bool
    architecture: str | None = None
    device_name: str | None = None
    memory_bytes: int | None = None

    @property
    def gpu_generation(self) -> int | None:
        if not self.architecture:
            return None
        m = _ARCH_RE.search(self.architecture)
        return int(m.group(1)) if m else None

    @property
    def tensor_api(self) -> bool:
        gen = self.gpu_generation
        return self.has_gpu and gen is not None and gen >= TENSOR_MIN_GENERATION


def describe_hardware() -> HardwareDescriptor:
    """Query mlx for the local GPU. Called once at startup."""
    if platform.system() != "Darwin":
        return HardwareDescriptor(has_gpu=False, device_name=platform.machine())
    import mlx.core as mx

    if not mx.metal.is_available():
        return HardwareDescriptor(has_gpu=False, device_name=platform.machine())
    info = mx.device_info()
    return HardwareDescriptor(
        has_gpu=True,
        architecture=info.get("architecture"),
        device_name=info.get("device_name") or platform.machine(),
        memory_bytes=info.get("memory_size"),
    )


def detect_capability(hw: HardwareDescriptor) -> Backend:
    """Recommended backend for the given hardware."""
    if hw.tensor_api:
        return Backend.TENSOR
    if hw.has_gpu:
        return Backend.LEGACY
    return Backend.CPU


def is_backend_available(backend: Backend, hw: HardwareDescriptor) -> bool:
    backend = Backend.parse(backend)
    if backend is Backend.TENSOR:
        return hw.tensor_api
    if backend is Backend.LEGACY:
        return hw.has_gpu
    return True


def available_backends(hw: HardwareDescriptor) -> list[Backend]:
    return [b for b in Backend if is_backend_available(b, hw)]


def capability_info(hw: HardwareDescriptor) -> str:
    if not hw.has_gpu:
        return "Metal not available"
    tensor = "available" if hw.tensor_api else "not available"
    return (f"GPU: {hw.architecture or 'unknown'}\n"
            f"Tensor API: {tensor}\n"
            f"Device: {hw.device_name or 'unknown'}")


def capability_dict(hw: HardwareDescriptor) -> dict:
    return {
        "has_gpu": hw.has_gpu,
        "architecture": hw.architecture,
        "device_name": hw.device_name,
        "memory_bytes": hw.memory_bytes,
        "tensor_api": hw.tensor_api,
        "recommended": detect_capability(hw).value,
        "available": [b.value for b in available_backends(hw)],
    }
