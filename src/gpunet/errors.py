"""
Exception types raised by the training engine.

Device acquisition failures abort session initialization, device faults
abort the running session, and invalid configurations are rejected before
any buffer is allocated.
"""


class GpunetError(Exception):
    """Base class for all gpunet errors."""


class DeviceUnavailable(GpunetError, RuntimeError):
    """A compute device could not be acquired."""


class UnsupportedBackend(DeviceUnavailable):
    """No compute-capable backend is present on this host."""


class NoAdapter(DeviceUnavailable):
    """The backend is present but no usable device could be obtained."""


class DeviceFault(GpunetError, RuntimeError):
    """A dispatch, compile or readback failed on an acquired device."""


class InvalidConfig(GpunetError, ValueError):
    """A network or trainer configuration value is out of range."""


__all__ = [
    "GpunetError",
    "DeviceUnavailable",
    "UnsupportedBackend",
    "NoAdapter",
    "DeviceFault",
    "InvalidConfig",
]
