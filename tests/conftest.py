"""
Pytest configuration and fixtures for gpunet tests
"""

import pytest

try:
    from gpunet.backend.base import VULKAN_AVAILABLE
    from gpunet.config import NeuralNetworkConfig, TrainerSettings

    GPUNET_AVAILABLE = True
except ImportError:
    GPUNET_AVAILABLE = False
    VULKAN_AVAILABLE = False


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "gpu: marks tests that require Vulkan/GPU (deselect with '-m \"not gpu\"')"
    )


@pytest.fixture
def xor_config():
    """Default 2-4-1 network with lr 0.01"""
    return NeuralNetworkConfig()


@pytest.fixture
def cpu_settings():
    """Seeded CPU settings with no frame delay"""
    return TrainerSettings(backend="cpu", seed=1234, frame_interval=0.0)


@pytest.fixture
def cpu_device():
    """Fixture for the numpy compute device"""
    from gpunet.backend.cpu import CpuDevice

    device = CpuDevice()
    yield device
    device.release()


@pytest.fixture
def gpu_device():
    """Fixture for a Vulkan device (skips if not available)"""
    if not VULKAN_AVAILABLE:
        pytest.skip("Vulkan not available")
    from gpunet.backend.session import DeviceSession
    from gpunet.errors import DeviceUnavailable

    session = DeviceSession(TrainerSettings(backend="vulkan"))
    try:
        device = session.acquire()
    except DeviceUnavailable as e:
        pytest.skip(f"GPU backend not available: {e}")
    yield device
    session.release()
