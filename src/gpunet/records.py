"""
Host-visible records produced by the training engine.

These are the only values handed to presentation collaborators: the live
network snapshot, the current metrics and the append-only step and epoch
histories.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass
class NetworkWeights:
    """Flat row-major weight and bias arrays (float32).

    ``weights_hidden[i * hidden_size + j]`` connects input ``i`` to hidden
    neuron ``j``; ``weights_output`` follows the same rule one layer up.
    """

    weights_hidden: np.ndarray
    weights_output: np.ndarray
    bias_hidden: np.ndarray
    bias_output: np.ndarray

    def arrays(self) -> dict[str, np.ndarray]:
        return {
            "weights_hidden": self.weights_hidden,
            "weights_output": self.weights_output,
            "bias_hidden": self.bias_hidden,
            "bias_output": self.bias_output,
        }

    def copy(self) -> NetworkWeights:
        return NetworkWeights(**{name: arr.copy() for name, arr in self.arrays().items()})


@dataclass(frozen=True)
class NetworkState:
    """Activation snapshot plus the (by-reference) weights of the network."""

    input_layer: tuple[float, ...]
    hidden_layer: tuple[float, ...]
    output_layer: tuple[float, ...]
    weights: NetworkWeights


@dataclass(frozen=True)
class TrainingMetrics:
    loss: float = 0.0
    epoch: int = 0
    accuracy: float = 0.0


@dataclass(frozen=True)
class SampleHistory:
    """One record per executed train step."""

    epoch: int
    input: tuple[float, ...]
    target: float
    prediction: float
    loss: float


@dataclass(frozen=True)
class EpochMetrics:
    """Means over the four steps of a completed epoch."""

    epoch: int
    loss: float
    accuracy: float


@dataclass(frozen=True)
class Snapshot:
    """Raw readback of the device after a step."""

    hidden_layer: np.ndarray
    output_layer: np.ndarray
    loss: float


@dataclass(frozen=True)
class StepResult:
    loss: float
    accuracy: int
    output_layer: np.ndarray
    hidden_layer: np.ndarray


@dataclass(frozen=True)
class TrainingEvent:
    """Notification delivered to orchestrator listeners.

    ``kind`` is one of ``"step"``, ``"epoch"``, ``"stopped"`` or ``"error"``.
    """

    kind: str
    step: int
    epoch: int
    payload: Any = None
