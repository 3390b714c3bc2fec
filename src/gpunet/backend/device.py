"""
Device interface shared by the Vulkan and CPU backends.

A device owns storage buffers, turns named kernel programs plus baked
constants into executable kernels, binds them to buffers and runs one
dispatch at a time. Submission returns immediately; completion is awaited
with :meth:`ComputeDevice.work_done`, which is the only place the caller
suspends.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass(frozen=True)
class DeviceInfo:
    """Capabilities reported by an acquired device."""

    name: str
    backend: str
    vendor: str = "unknown"
    device_type: str = "unknown"
    max_work_items: int = 0
    max_storage_buffer_range: int = 0


class ComputeDevice(abc.ABC):
    """Abstract compute device."""

    backend: str = ""

    @abc.abstractmethod
    def info(self) -> DeviceInfo:
        """Describe the device and its limits."""

    @property
    def max_work_items(self) -> int:
        """Largest work-item count a single-workgroup kernel may use."""
        return self.info().max_work_items

    @abc.abstractmethod
    def create_buffer(self, label: str, nbytes: int) -> Any:
        """Allocate a zero-filled storage buffer of ``nbytes`` bytes."""

    @abc.abstractmethod
    def write_buffer(self, buffer: Any, data: np.ndarray) -> None:
        """Copy ``data`` into ``buffer`` starting at offset 0."""

    @abc.abstractmethod
    def read_buffer(self, buffer: Any, count: int, dtype=np.float32) -> np.ndarray:
        """Copy ``count`` elements out of ``buffer``."""

    @abc.abstractmethod
    def destroy_buffer(self, buffer: Any) -> None:
        """Release ``buffer``; safe to call once per buffer."""

    @abc.abstractmethod
    def compile_kernel(self, name: str, constants: dict[str, Any]) -> Any:
        """Build the kernel program ``name`` with ``constants`` baked in."""

    @abc.abstractmethod
    def bind_kernel(self, kernel: Any, buffers: list[Any]) -> Any:
        """Attach ``buffers`` (in binding order) to a compiled kernel."""

    @abc.abstractmethod
    def destroy_kernel(self, kernel: Any) -> None:
        """Release a compiled kernel."""

    @abc.abstractmethod
    def unbind_kernel(self, bound: Any) -> None:
        """Release the buffer bindings of a bound kernel."""

    @abc.abstractmethod
    def dispatch(self, bound: Any, work_items: int) -> None:
        """Submit one dispatch of ``bound`` over ``work_items`` work-items."""

    @abc.abstractmethod
    async def work_done(self) -> None:
        """Suspend until every submitted dispatch has completed."""

    @abc.abstractmethod
    def release(self) -> None:
        """Destroy the device. Idempotent."""

    @property
    @abc.abstractmethod
    def released(self) -> bool:
        """True once :meth:`release` has run."""
