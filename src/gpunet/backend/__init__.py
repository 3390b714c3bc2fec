"""
Compute backends: the Vulkan GPU device and the numpy CPU device.
"""

from .base import VULKAN_AVAILABLE
from .cpu import CpuDevice
from .device import ComputeDevice, DeviceInfo
from .session import DeviceSession

__all__ = [
    "VULKAN_AVAILABLE",
    "ComputeDevice",
    "CpuDevice",
    "DeviceInfo",
    "DeviceSession",
]
