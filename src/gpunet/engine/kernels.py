"""
The forward and backward kernel programs of one network configuration.

Both programs are compiled with the topology and learning rate baked in as
constants, so a :class:`KernelSet` is a pure function of the config and
the device backend. :class:`KernelCache` keys compiled sets by a stable
hash of those inputs plus the program sources.
"""

from __future__ import annotations

import logging

from ..backend.device import ComputeDevice
from ..backend.pipelines import shader_source
from ..config import NeuralNetworkConfig
from ..errors import InvalidConfig
from ..utils.stable_hash import stable_hex
from .params import BUFFER_LAYOUT, ParameterStore

logger = logging.getLogger(__name__)

FORWARD = "mlp-forward"
BACKWARD = "mlp-backward"


def kernel_constants(config: NeuralNetworkConfig) -> dict:
    """Compile-time constants baked into both programs."""
    return {
        "INPUT_SIZE": config.input_size,
        "HIDDEN_SIZE": config.hidden_size,
        "OUTPUT_SIZE": config.output_size,
        "LEARNING_RATE": config.learning_rate,
        "WORK_ITEMS": config.work_items,
        "NUM_BUFFERS": len(BUFFER_LAYOUT),
    }


def kernel_key(backend: str, config: NeuralNetworkConfig) -> str:
    """Stable cache key for the kernels of ``config`` on ``backend``."""
    constants = kernel_constants(config)
    parts = [backend]
    for name in sorted(constants):
        parts.extend((name, constants[name]))
    for program in (FORWARD, BACKWARD):
        parts.extend((program, shader_source(program)))
    return stable_hex(*parts, domain="gpunet.kernels")


class BoundKernels:
    """Kernel set attached to the buffers of one parameter store."""

    def __init__(self, kernels: KernelSet, store: ParameterStore, forward, backward):
        self.kernels = kernels
        self.store = store
        self.forward = forward
        self.backward = backward

    @property
    def work_items(self) -> int:
        return self.kernels.work_items

    def release(self) -> None:
        device = self.kernels.device
        for bound in (self.forward, self.backward):
            if bound is not None and not device.released:
                device.unbind_kernel(bound)
        self.forward = self.backward = None


class KernelSet:
    """Compiled forward and backward programs for one config."""

    def __init__(
        self, device: ComputeDevice, config: NeuralNetworkConfig, key: str, forward, backward
    ):
        self.device = device
        self.config = config
        self.key = key
        self.forward = forward
        self.backward = backward

    @property
    def work_items(self) -> int:
        return self.config.work_items

    @classmethod
    def compile(
        cls, device: ComputeDevice, config: NeuralNetworkConfig, key: str | None = None
    ) -> KernelSet:
        """
        Compile both programs for ``config``.

        Raises:
            InvalidConfig: The widest layer exceeds the device's workgroup limit
            DeviceFault: Compilation failed
        """
        limit = device.max_work_items
        if config.work_items > limit:
            raise InvalidConfig(
                f"Layer width {config.work_items} exceeds the device limit of {limit} work-items"
            )
        constants = kernel_constants(config)
        forward = device.compile_kernel(FORWARD, constants)
        try:
            backward = device.compile_kernel(BACKWARD, constants)
        except Exception:
            device.destroy_kernel(forward)
            raise
        logger.info(
            "Compiled kernels for %dx%dx%d (lr=%g) on %s",
            config.input_size,
            config.hidden_size,
            config.output_size,
            config.learning_rate,
            device.backend,
        )
        return cls(device, config, key or kernel_key(device.backend, config), forward, backward)

    def bind(self, store: ParameterStore) -> BoundKernels:
        """Attach both programs to ``store``'s buffers in binding order."""
        if store.config != self.config:
            raise InvalidConfig("Parameter store and kernels were built for different configs")
        buffers = store.ordered_buffers()
        forward = self.device.bind_kernel(self.forward, buffers)
        try:
            backward = self.device.bind_kernel(self.backward, buffers)
        except Exception:
            self.device.unbind_kernel(forward)
            raise
        return BoundKernels(self, store, forward, backward)

    def destroy(self) -> None:
        if self.device.released:
            self.forward = self.backward = None
            return
        for kernel in (self.forward, self.backward):
            if kernel is not None:
                self.device.destroy_kernel(kernel)
        self.forward = self.backward = None


class KernelCache:
    """
    Compiled kernel sets of one device, keyed by config hash.

    A cache lives as long as the device it compiles for. Each
    :class:`TrainingSession` acquires its own device, so under the
    orchestrator a cache holds a single entry; kernels survive repeated
    ``start_training`` calls because the session itself is kept.
    """

    def __init__(self, device: ComputeDevice):
        self.device = device
        self._sets: dict[str, KernelSet] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self._sets)

    def __contains__(self, config: NeuralNetworkConfig):
        return kernel_key(self.device.backend, config) in self._sets

    def get(self, config: NeuralNetworkConfig) -> KernelSet:
        key = kernel_key(self.device.backend, config)
        kernels = self._sets.get(key)
        if kernels is not None:
            self.hits += 1
            logger.debug("Kernel cache hit %s", key)
            return kernels
        self.misses += 1
        kernels = KernelSet.compile(self.device, config, key)
        self._sets[key] = kernels
        return kernels

    def clear(self) -> None:
        """Destroy every cached kernel set."""
        for kernels in self._sets.values():
            kernels.destroy()
        self._sets.clear()
