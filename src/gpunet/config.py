"""
Configuration for the network topology and the training loop.

``NeuralNetworkConfig`` is fixed for the lifetime of one training session;
changing any field means new buffers, new kernels and new weights.
``TrainerSettings`` controls the host side (backend choice, pacing, epochs)
and can be read from ``GPUNET_*`` environment variables.
"""

from __future__ import annotations

import dataclasses
import math
import os
from dataclasses import dataclass
from typing import Any

from .errors import InvalidConfig

BACKENDS = ("vulkan", "cpu")


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfig(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise InvalidConfig(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class NeuralNetworkConfig:
    """Topology and learning rate of the input -> hidden -> output network."""

    input_size: int = 2
    hidden_size: int = 4
    output_size: int = 1
    learning_rate: float = 0.01

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise InvalidConfig unless every size is positive and the learning rate is usable."""
        _positive_int("input_size", self.input_size)
        _positive_int("hidden_size", self.hidden_size)
        _positive_int("output_size", self.output_size)
        lr = self.learning_rate
        if isinstance(lr, bool) or not isinstance(lr, (int, float)):
            raise InvalidConfig(f"learning_rate must be a number, got {lr!r}")
        if not math.isfinite(lr) or lr <= 0:
            raise InvalidConfig(f"learning_rate must be positive and finite, got {lr}")
        object.__setattr__(self, "learning_rate", float(lr))

    @property
    def work_items(self) -> int:
        """Parallel work-items per dispatch: one per neuron of the widest layer."""
        return max(self.hidden_size, self.output_size)

    def merge(self, **changes) -> NeuralNetworkConfig:
        """Return a new validated config with ``changes`` applied."""
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise InvalidConfig(f"Unknown config field(s): {', '.join(unknown)}")
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class TrainerSettings:
    """
    Host-side settings for a training session.

    Attributes:
        backend: ``"vulkan"`` for a GPU device, ``"cpu"`` for the numpy device
        max_epochs: Epoch count after which the loop stops by itself
        frame_interval: Seconds between steps; 0 yields once per step
        seed: Seed for weight initialization (None draws fresh entropy)
        fence_timeout: Seconds to wait for a dispatch before faulting
        glslc: Path to the GLSL compiler; None looks it up on PATH
    """

    backend: str = "vulkan"
    max_epochs: int = 10
    frame_interval: float = 0.0
    seed: int | None = None
    fence_timeout: float = 2.0
    glslc: str | None = None

    def __post_init__(self):
        self.backend = str(self.backend).lower()
        if self.backend not in BACKENDS:
            raise InvalidConfig(
                f"Unknown backend: {self.backend}. Must be one of {', '.join(BACKENDS)}"
            )
        if isinstance(self.max_epochs, bool) or not isinstance(self.max_epochs, int):
            raise InvalidConfig(f"max_epochs must be an integer, got {self.max_epochs!r}")
        if self.max_epochs < 0:
            raise InvalidConfig(f"max_epochs must be >= 0, got {self.max_epochs}")
        if self.frame_interval < 0:
            raise InvalidConfig(f"frame_interval must be >= 0, got {self.frame_interval}")
        if self.fence_timeout <= 0:
            raise InvalidConfig(f"fence_timeout must be positive, got {self.fence_timeout}")

    @classmethod
    def from_env(cls, **overrides) -> TrainerSettings:
        """Build settings from ``GPUNET_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        values: dict[str, Any] = {}
        env = os.environ
        if "GPUNET_BACKEND" in env:
            values["backend"] = env["GPUNET_BACKEND"]
        try:
            if "GPUNET_MAX_EPOCHS" in env:
                values["max_epochs"] = int(env["GPUNET_MAX_EPOCHS"])
            if "GPUNET_FRAME_INTERVAL" in env:
                values["frame_interval"] = float(env["GPUNET_FRAME_INTERVAL"])
            if env.get("GPUNET_SEED"):
                values["seed"] = int(env["GPUNET_SEED"])
            if "GPUNET_FENCE_TIMEOUT" in env:
                values["fence_timeout"] = float(env["GPUNET_FENCE_TIMEOUT"])
        except ValueError as exc:
            raise InvalidConfig(f"Malformed GPUNET_* environment value: {exc}") from exc
        if env.get("GPUNET_GLSLC"):
            values["glslc"] = env["GPUNET_GLSLC"]
        values.update(overrides)
        return cls(**values)
