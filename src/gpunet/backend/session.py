"""
Device acquisition.

One :class:`DeviceSession` hands out exactly one compute device; it is
created when a training session initializes and released on teardown or
reconfiguration.
"""

import logging

from ..config import BACKENDS, TrainerSettings
from ..errors import UnsupportedBackend
from .base import VULKAN_AVAILABLE, VULKAN_IMPORT_ERROR
from .device import ComputeDevice

logger = logging.getLogger(__name__)


class DeviceSession:
    """Owns the compute device of one training session."""

    def __init__(self, settings: TrainerSettings | None = None):
        self.settings = settings or TrainerSettings()
        self._device: ComputeDevice | None = None

    @property
    def device(self) -> ComputeDevice | None:
        return self._device

    def acquire(self) -> ComputeDevice:
        """
        Acquire the compute device, creating it on first call.

        Raises:
            UnsupportedBackend: The configured backend is not present on this host
            NoAdapter: No usable device could be obtained
        """
        if self._device is not None and not self._device.released:
            return self._device

        backend = self.settings.backend
        if backend not in BACKENDS:
            raise UnsupportedBackend(f"Unknown backend: {backend}")

        if backend == "cpu":
            from .cpu import CpuDevice

            device = CpuDevice()
        else:
            if not VULKAN_AVAILABLE:
                raise UnsupportedBackend(f"Vulkan not available: {VULKAN_IMPORT_ERROR}")
            from .core import VulkanCore

            device = VulkanCore(
                glslc=self.settings.glslc, fence_timeout=self.settings.fence_timeout
            )

        info = device.info()
        logger.info(
            "Acquired %s device %s (%s, %s), max %d work-items",
            info.backend,
            info.name,
            info.vendor,
            info.device_type,
            info.max_work_items,
        )
        self._device = device
        return device

    def release(self) -> None:
        """Destroy the device. Safe to call more than once."""
        device, self._device = self._device, None
        if device is not None and not device.released:
            device.release()
            logger.debug("Released %s device", device.backend)
