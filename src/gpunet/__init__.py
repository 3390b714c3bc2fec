"""
gpunet - GPU-resident training of a small MLP using Vulkan compute.

The forward and backward passes of an input -> hidden -> output network run
as compute dispatches over device-resident buffers; the host only uploads
the current XOR sample and reads back activations and loss.

- backend: Vulkan and CPU compute devices, device acquisition
- engine: parameter store, kernels, step executor, training orchestrator
- config / records / errors: configuration, host-visible records, exceptions
"""

from gpunet.backend import VULKAN_AVAILABLE, ComputeDevice, CpuDevice, DeviceInfo, DeviceSession
from gpunet.config import NeuralNetworkConfig, TrainerSettings
from gpunet.engine import (
    KernelCache,
    KernelSet,
    ParameterStore,
    StepExecutor,
    TrainingOrchestrator,
    TrainingState,
    init_weights,
)
from gpunet.errors import (
    DeviceFault,
    DeviceUnavailable,
    GpunetError,
    InvalidConfig,
    NoAdapter,
    UnsupportedBackend,
)
from gpunet.records import (
    EpochMetrics,
    NetworkState,
    NetworkWeights,
    SampleHistory,
    StepResult,
    TrainingEvent,
    TrainingMetrics,
)

__version__ = "0.1.0"

__all__ = [
    "VULKAN_AVAILABLE",
    "ComputeDevice",
    "CpuDevice",
    "DeviceInfo",
    "DeviceSession",
    "NeuralNetworkConfig",
    "TrainerSettings",
    "KernelCache",
    "KernelSet",
    "ParameterStore",
    "StepExecutor",
    "TrainingOrchestrator",
    "TrainingState",
    "init_weights",
    "GpunetError",
    "DeviceUnavailable",
    "UnsupportedBackend",
    "NoAdapter",
    "DeviceFault",
    "InvalidConfig",
    "EpochMetrics",
    "NetworkState",
    "NetworkWeights",
    "SampleHistory",
    "StepResult",
    "TrainingEvent",
    "TrainingMetrics",
]
