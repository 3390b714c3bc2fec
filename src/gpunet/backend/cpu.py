"""
CPU compute device.

Runs the forward and backward kernel programs with numpy over host arrays,
with the same buffer layout, baked constants and float32 arithmetic as the
GLSL programs. Used on hosts without a Vulkan GPU and by the test suite.
"""

import asyncio
import logging

import numpy as np

from ..errors import DeviceFault
from .device import ComputeDevice, DeviceInfo

logger = logging.getLogger(__name__)

# Soft limit matching the minimum maxComputeWorkGroupInvocations Vulkan guarantees
CPU_MAX_WORK_ITEMS = 1024


class CpuBuffer:
    """Zero-filled byte buffer backed by a numpy array."""

    __slots__ = ("label", "data")

    def __init__(self, label: str, nbytes: int):
        self.label = label
        self.data = np.zeros(nbytes, dtype=np.uint8)

    @property
    def size(self) -> int:
        return 0 if self.data is None else int(self.data.nbytes)

    @property
    def alive(self) -> bool:
        return self.data is not None

    def view(self, dtype=np.float32) -> np.ndarray:
        if self.data is None:
            raise DeviceFault(f"Buffer {self.label} has been destroyed")
        return self.data.view(dtype)

    def __repr__(self):
        return f"CpuBuffer({self.label!r}, size={self.size}, alive={self.alive})"


class CpuKernel:
    __slots__ = ("name", "constants", "fn", "local_size")

    def __init__(self, name, constants, fn):
        self.name = name
        self.constants = dict(constants)
        self.fn = fn
        self.local_size = int(constants["WORK_ITEMS"])


class CpuBoundKernel:
    __slots__ = ("kernel", "buffers")

    def __init__(self, kernel, buffers):
        self.kernel = kernel
        self.buffers = buffers

    @property
    def name(self):
        return self.kernel.name


def _sigmoid(x: np.ndarray) -> np.ndarray:
    with np.errstate(over="ignore"):
        return (np.float32(1.0) / (np.float32(1.0) + np.exp(-x))).astype(np.float32)


def mlp_forward(constants: dict, buffers: list) -> None:
    """Forward pass: hidden from input, then output from hidden."""
    n_in = constants["INPUT_SIZE"]
    n_hid = constants["HIDDEN_SIZE"]
    n_out = constants["OUTPUT_SIZE"]
    views = [b.view() for b in buffers]
    x = views[0][:n_in]
    w_h = views[1][: n_in * n_hid].reshape(n_in, n_hid)
    w_o = views[2][: n_hid * n_out].reshape(n_hid, n_out)
    b_h = views[3][:n_hid]
    b_o = views[4][:n_out]

    hidden = _sigmoid(b_h + x @ w_h)
    views[5][:n_hid] = hidden
    views[6][:n_out] = _sigmoid(b_o + hidden @ w_o)


def mlp_backward(constants: dict, buffers: list) -> None:
    """Backward pass: gradients from pre-update weights, then in-place updates."""
    n_in = constants["INPUT_SIZE"]
    n_hid = constants["HIDDEN_SIZE"]
    n_out = constants["OUTPUT_SIZE"]
    lr = np.float32(constants["LEARNING_RATE"])
    views = [b.view() for b in buffers]
    x = views[0][:n_in]
    w_h = views[1][: n_in * n_hid].reshape(n_in, n_hid)
    w_o = views[2][: n_hid * n_out].reshape(n_hid, n_out)
    b_h = views[3][:n_hid]
    b_o = views[4][:n_out]
    hidden = views[5][:n_hid]
    pred = views[6][:n_out]
    target = views[7][:n_out]
    grad_h = views[8][:n_hid]
    grad_o = views[9][:n_out]
    loss = views[10][:1]

    one = np.float32(1.0)
    err = pred - target
    grad_o[:] = err * pred * (one - pred)
    loss[0] += np.float32(np.sum(err * err, dtype=np.float32))

    grad_h[:] = (w_o @ grad_o) * hidden * (one - hidden)

    w_o -= lr * np.outer(hidden, grad_o)
    b_o -= lr * grad_o
    w_h -= lr * np.outer(x, grad_h)
    b_h -= lr * grad_h


KERNEL_PROGRAMS = {
    "mlp-forward": mlp_forward,
    "mlp-backward": mlp_backward,
}


class CpuDevice(ComputeDevice):
    """Software device that completes every dispatch at submission."""

    backend = "cpu"

    def __init__(self, max_work_items: int = CPU_MAX_WORK_ITEMS):
        self._max_work_items = max_work_items
        self._buffers: list[CpuBuffer] = []
        self._released = False
        self.dispatch_log: list[tuple[str, int]] = []
        logger.info("[OK] Using CPU compute device (%d work-items)", max_work_items)

    def info(self) -> DeviceInfo:
        return DeviceInfo(
            name="numpy",
            backend=self.backend,
            vendor="host",
            device_type="cpu",
            max_work_items=self._max_work_items,
            max_storage_buffer_range=2**31 - 1,
        )

    def _check_alive(self):
        if self._released:
            raise DeviceFault("CPU device has been released")

    def create_buffer(self, label: str, nbytes: int) -> CpuBuffer:
        self._check_alive()
        buf = CpuBuffer(label, nbytes)
        self._buffers.append(buf)
        return buf

    def write_buffer(self, buffer: CpuBuffer, data: np.ndarray) -> None:
        self._check_alive()
        raw = np.ascontiguousarray(data).view(np.uint8).reshape(-1)
        if raw.nbytes > buffer.size:
            raise DeviceFault(
                f"Upload size {raw.nbytes} exceeds buffer {buffer.label} ({buffer.size} bytes)"
            )
        buffer.view(np.uint8)[: raw.nbytes] = raw

    def read_buffer(self, buffer: CpuBuffer, count: int, dtype=np.float32) -> np.ndarray:
        self._check_alive()
        nbytes = int(count * np.dtype(dtype).itemsize)
        if nbytes > buffer.size:
            raise DeviceFault(f"Readback of {nbytes} bytes exceeds buffer {buffer.label}")
        return buffer.view(np.uint8)[:nbytes].view(dtype).copy()

    def destroy_buffer(self, buffer: CpuBuffer) -> None:
        buffer.data = None
        if buffer in self._buffers:
            self._buffers.remove(buffer)

    def compile_kernel(self, name: str, constants: dict) -> CpuKernel:
        self._check_alive()
        fn = KERNEL_PROGRAMS.get(name)
        if fn is None:
            raise DeviceFault(f"Unknown kernel program: {name}")
        return CpuKernel(name, constants, fn)

    def bind_kernel(self, kernel: CpuKernel, buffers: list) -> CpuBoundKernel:
        self._check_alive()
        expected = int(kernel.constants.get("NUM_BUFFERS", len(buffers)))
        if len(buffers) != expected:
            raise DeviceFault(f"{kernel.name} expects {expected} buffers, got {len(buffers)}")
        return CpuBoundKernel(kernel, list(buffers))

    def destroy_kernel(self, kernel: CpuKernel) -> None:
        kernel.fn = None

    def unbind_kernel(self, bound: CpuBoundKernel) -> None:
        bound.buffers = []

    def dispatch(self, bound: CpuBoundKernel, work_items: int) -> None:
        self._check_alive()
        kernel = bound.kernel
        if kernel.fn is None:
            raise DeviceFault(f"Kernel {kernel.name} has been destroyed")
        if work_items > kernel.local_size:
            raise DeviceFault(
                f"{kernel.name} was built for {kernel.local_size} work-items, got {work_items}"
            )
        for buf in bound.buffers:
            if not buf.alive:
                raise DeviceFault(f"{kernel.name} bound to destroyed buffer {buf.label}")
        kernel.fn(kernel.constants, bound.buffers)
        self.dispatch_log.append((kernel.name, work_items))

    async def work_done(self) -> None:
        self._check_alive()
        await asyncio.sleep(0)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        for buf in list(self._buffers):
            self.destroy_buffer(buf)
        self._released = True
