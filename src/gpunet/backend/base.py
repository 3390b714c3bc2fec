"""
Base constants and utilities for the Vulkan backend.
"""

import logging

_logger = logging.getLogger(__name__)

try:
    from vulkan import *

    VULKAN_AVAILABLE = True
    VULKAN_IMPORT_ERROR = None
    # After 'from vulkan import *', all Vulkan constants are in the namespace
    # and can be imported by other modules using 'from base import VK_...'
except (ImportError, OSError) as _exc:
    # OSError: bindings installed but no Vulkan loader library on the host
    VULKAN_AVAILABLE = False
    VULKAN_IMPORT_ERROR = str(_exc)
    _logger.debug("Vulkan bindings unavailable: %s", _exc)


class VulkanBuffer:
    """Host-visible storage buffer and its backing memory."""

    __slots__ = ("label", "handle", "memory", "size")

    def __init__(self, label, handle, memory, size):
        self.label = label
        self.handle = handle
        self.memory = memory
        self.size = size

    @property
    def alive(self) -> bool:
        return self.handle is not None

    def destroy(self, device):
        if self.handle:
            vkDestroyBuffer(device, self.handle, None)
            self.handle = None
        if self.memory:
            vkFreeMemory(device, self.memory, None)
            self.memory = None

    def __repr__(self):
        return f"VulkanBuffer({self.label!r}, size={self.size}, alive={self.alive})"
