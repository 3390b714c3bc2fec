"""
Device-resident network parameters.

The parameter store owns every buffer the kernels bind: weights, biases,
activations, the current sample, gradient scratch space and the scalar loss
accumulator. Buffers are sized once from the config and never resized.
"""

from __future__ import annotations

import logging

import numpy as np

from ..backend.device import ComputeDevice
from ..config import NeuralNetworkConfig
from ..errors import DeviceFault
from ..records import NetworkWeights, Snapshot

logger = logging.getLogger(__name__)

FLOAT_BYTES = np.dtype(np.float32).itemsize

# Binding order shared by both kernel programs
BUFFER_LAYOUT = (
    "input",
    "weights_hidden",
    "weights_output",
    "bias_hidden",
    "bias_output",
    "hidden_layer",
    "output_layer",
    "target",
    "hidden_gradients",
    "output_gradients",
    "loss",
)


def buffer_lengths(config: NeuralNetworkConfig) -> dict[str, int]:
    """Element count of every buffer in :data:`BUFFER_LAYOUT`."""
    n_in, n_hid, n_out = config.input_size, config.hidden_size, config.output_size
    return {
        "input": n_in,
        "weights_hidden": n_in * n_hid,
        "weights_output": n_hid * n_out,
        "bias_hidden": n_hid,
        "bias_output": n_out,
        "hidden_layer": n_hid,
        "output_layer": n_out,
        "target": n_out,
        "hidden_gradients": n_hid,
        "output_gradients": n_out,
        "loss": 1,
    }


def init_weights(
    config: NeuralNetworkConfig, rng: np.random.Generator | int | None = None
) -> NetworkWeights:
    """
    Draw initial weights and biases uniformly from [-1, 1).

    Args:
        config: Network topology
        rng: Generator or seed; None uses fresh entropy

    Returns:
        Float32 weights sized to ``config``
    """
    if not isinstance(rng, np.random.Generator):
        rng = np.random.default_rng(rng)
    lengths = buffer_lengths(config)

    def _uniform(name):
        return rng.uniform(-1.0, 1.0, lengths[name]).astype(np.float32)

    return NetworkWeights(
        weights_hidden=_uniform("weights_hidden"),
        weights_output=_uniform("weights_output"),
        bias_hidden=_uniform("bias_hidden"),
        bias_output=_uniform("bias_output"),
    )


class ParameterStore:
    """Buffers of one network on one device."""

    def __init__(self, device: ComputeDevice, config: NeuralNetworkConfig, buffers: dict):
        self.device = device
        self.config = config
        self.lengths = buffer_lengths(config)
        self._buffers = buffers
        self._destroyed = False

    @classmethod
    def create(
        cls, device: ComputeDevice, config: NeuralNetworkConfig, weights: NetworkWeights
    ) -> ParameterStore:
        """
        Allocate every buffer and upload the initial weights.

        Raises:
            DeviceFault: Allocation or upload failed; nothing is left allocated
        """
        lengths = buffer_lengths(config)
        for name, arr in weights.arrays().items():
            if arr.size != lengths[name]:
                raise DeviceFault(f"{name} has {arr.size} elements, expected {lengths[name]}")

        buffers = {}
        try:
            for name in BUFFER_LAYOUT:
                buffers[name] = device.create_buffer(name, lengths[name] * FLOAT_BYTES)
            for name, arr in weights.arrays().items():
                device.write_buffer(buffers[name], np.asarray(arr, dtype=np.float32))
        except Exception:
            for buf in buffers.values():
                device.destroy_buffer(buf)
            raise

        total = sum(lengths.values()) * FLOAT_BYTES
        logger.debug("Allocated %d buffers (%d bytes) on %s", len(buffers), total, device.backend)
        return cls(device, config, buffers)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def _check(self):
        if self._destroyed:
            raise DeviceFault("Parameter store has been destroyed")

    def buffer(self, name: str):
        self._check()
        return self._buffers[name]

    def ordered_buffers(self) -> list:
        """Buffers in kernel binding order."""
        self._check()
        return [self._buffers[name] for name in BUFFER_LAYOUT]

    def write_input(self, input_vec: np.ndarray, target_vec: np.ndarray) -> None:
        self._check()
        x = np.asarray(input_vec, dtype=np.float32).reshape(-1)
        t = np.asarray(target_vec, dtype=np.float32).reshape(-1)
        if x.size != self.config.input_size:
            raise DeviceFault(f"Input has {x.size} elements, expected {self.config.input_size}")
        if t.size != self.config.output_size:
            raise DeviceFault(f"Target has {t.size} elements, expected {self.config.output_size}")
        self.device.write_buffer(self._buffers["input"], x)
        self.device.write_buffer(self._buffers["target"], t)

    def reset_loss(self) -> None:
        self._check()
        self.device.write_buffer(self._buffers["loss"], np.zeros(1, dtype=np.float32))

    def _read(self, name: str) -> np.ndarray:
        return self.device.read_buffer(self._buffers[name], self.lengths[name])

    async def read_snapshot(self) -> Snapshot:
        """Wait for device work to finish, then download activations and loss."""
        self._check()
        await self.device.work_done()
        self._check()
        return Snapshot(
            hidden_layer=self._read("hidden_layer"),
            output_layer=self._read("output_layer"),
            loss=float(self._read("loss")[0]),
        )

    async def read_weights(self) -> NetworkWeights:
        """Wait for device work to finish, then download the live weights."""
        self._check()
        await self.device.work_done()
        self._check()
        return NetworkWeights(
            weights_hidden=self._read("weights_hidden"),
            weights_output=self._read("weights_output"),
            bias_hidden=self._read("bias_hidden"),
            bias_output=self._read("bias_output"),
        )

    def destroy(self) -> None:
        """Release every buffer. A second call does nothing."""
        if self._destroyed:
            return
        self._destroyed = True
        if self.device.released:
            self._buffers.clear()
            return
        for buf in self._buffers.values():
            self.device.destroy_buffer(buf)
        self._buffers.clear()
        logger.debug("Destroyed parameter store on %s", self.device.backend)
