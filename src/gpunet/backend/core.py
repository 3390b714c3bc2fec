"""
Core Vulkan initialization, buffer management, and dispatch operations.
"""

import asyncio
import ctypes
import logging
import os
import time

import numpy as np

from ..errors import DeviceFault, NoAdapter, UnsupportedBackend
from .base import VULKAN_AVAILABLE, VULKAN_IMPORT_ERROR, VulkanBuffer
from .device import ComputeDevice, DeviceInfo
from .pipelines import VulkanPipelines

if VULKAN_AVAILABLE:
    from vulkan import *

logger = logging.getLogger(__name__)

_VENDORS = {0x1002: "AMD", 0x10DE: "NVIDIA", 0x8086: "Intel", 0x13B5: "ARM", 0x5143: "Qualcomm"}

_DEVICE_TYPES = {
    0: "other",
    1: "integrated-gpu",
    2: "discrete-gpu",
    3: "virtual-gpu",
    4: "cpu",
}


def _decode(name):
    if isinstance(name, bytes):
        name = name.decode("utf-8")
    return str(name).rstrip("\x00")


class VulkanCore(ComputeDevice):
    """Core Vulkan operations: initialization, buffers, and dispatch"""

    backend = "vulkan"

    def __init__(self, glslc: str | None = None, fence_timeout: float = 2.0):
        """
        Create a Vulkan instance and logical device with one compute queue.

        Args:
            glslc: Path to the GLSL compiler (None searches PATH)
            fence_timeout: Seconds a dispatch may run before it is a fault

        Raises:
            UnsupportedBackend: Vulkan bindings or loader are missing
            NoAdapter: No suitable physical device or compute queue
        """
        if not VULKAN_AVAILABLE:
            raise UnsupportedBackend(f"Vulkan not available: {VULKAN_IMPORT_ERROR}")

        # Disable Mesa device_select layer which can force CPU llvmpipe
        os.environ.setdefault("VK_LOADER_LAYERS_DISABLE", "VK_LAYER_MESA_device_select")

        self.fence_timeout = fence_timeout
        self.device = None
        self.instance = None
        self._in_flight = False
        self._buffers: list[VulkanBuffer] = []

        try:
            self._init_vulkan()
        except (NoAdapter, UnsupportedBackend):
            self.cleanup()
            raise
        except Exception as exc:
            self.cleanup()
            raise NoAdapter(f"Failed to initialize Vulkan device: {exc}") from exc

        self.pipelines = VulkanPipelines(self, glslc=glslc)

    def _init_vulkan(self):
        """Initialize Vulkan instance, device, queue"""
        app_info = VkApplicationInfo(
            sType=VK_STRUCTURE_TYPE_APPLICATION_INFO,
            pApplicationName="gpunet",
            applicationVersion=VK_MAKE_VERSION(1, 0, 0),
            pEngineName="gpunet",
            engineVersion=VK_MAKE_VERSION(1, 0, 0),
            apiVersion=VK_MAKE_VERSION(1, 0, 0),
        )

        create_info = VkInstanceCreateInfo(
            sType=VK_STRUCTURE_TYPE_INSTANCE_CREATE_INFO, pApplicationInfo=app_info
        )

        try:
            self.instance = vkCreateInstance(create_info, None)
        except Exception as exc:
            raise UnsupportedBackend(f"vkCreateInstance failed: {exc}") from exc

        physical_devices = vkEnumeratePhysicalDevices(self.instance)
        if not physical_devices:
            raise NoAdapter("No Vulkan physical devices found")
        self.physical_device = self._select_gpu(physical_devices)

        self.device_properties = vkGetPhysicalDeviceProperties(self.physical_device)
        self.memory_properties = vkGetPhysicalDeviceMemoryProperties(self.physical_device)
        logger.info("[OK] Using GPU: %s", _decode(self.device_properties.deviceName))

        # Find compute queue family
        queue_families = vkGetPhysicalDeviceQueueFamilyProperties(self.physical_device)
        compute_queue_family = None
        for i, family in enumerate(queue_families):
            if family.queueFlags & VK_QUEUE_COMPUTE_BIT:
                compute_queue_family = i
                break

        if compute_queue_family is None:
            raise NoAdapter("No compute queue found")

        queue_create_info = VkDeviceQueueCreateInfo(
            sType=VK_STRUCTURE_TYPE_DEVICE_QUEUE_CREATE_INFO,
            queueFamilyIndex=compute_queue_family,
            queueCount=1,
            pQueuePriorities=[1.0],
        )
        device_create_info = VkDeviceCreateInfo(
            sType=VK_STRUCTURE_TYPE_DEVICE_CREATE_INFO,
            queueCreateInfoCount=1,
            pQueueCreateInfos=[queue_create_info],
            enabledExtensionCount=0,
            ppEnabledExtensionNames=[],
            pEnabledFeatures=None,
        )

        self.device = vkCreateDevice(self.physical_device, device_create_info, None)
        self.queue = vkGetDeviceQueue(self.device, compute_queue_family, 0)
        self.compute_queue_family = compute_queue_family

        pool_info = VkCommandPoolCreateInfo(
            sType=VK_STRUCTURE_TYPE_COMMAND_POOL_CREATE_INFO,
            queueFamilyIndex=compute_queue_family,
            flags=VK_COMMAND_POOL_CREATE_RESET_COMMAND_BUFFER_BIT,
        )
        self.command_pool = vkCreateCommandPool(self.device, pool_info, None)

        # One reusable command buffer: steps never overlap
        cmd_alloc_info = VkCommandBufferAllocateInfo(
            sType=VK_STRUCTURE_TYPE_COMMAND_BUFFER_ALLOCATE_INFO,
            commandPool=self.command_pool,
            level=VK_COMMAND_BUFFER_LEVEL_PRIMARY,
            commandBufferCount=1,
        )
        self._cmd_buffer = vkAllocateCommandBuffers(self.device, cmd_alloc_info)[0]

        fence_info = VkFenceCreateInfo(
            sType=VK_STRUCTURE_TYPE_FENCE_CREATE_INFO,
            flags=VK_FENCE_CREATE_SIGNALED_BIT,
        )
        self._fence = vkCreateFence(self.device, fence_info, None)

        # Two kernels per parameter store, a handful of stores per session
        pool_sizes = [
            VkDescriptorPoolSize(type=VK_DESCRIPTOR_TYPE_STORAGE_BUFFER, descriptorCount=256)
        ]
        descriptor_pool_info = VkDescriptorPoolCreateInfo(
            sType=VK_STRUCTURE_TYPE_DESCRIPTOR_POOL_CREATE_INFO,
            flags=VK_DESCRIPTOR_POOL_CREATE_FREE_DESCRIPTOR_SET_BIT,
            maxSets=16,
            poolSizeCount=len(pool_sizes),
            pPoolSizes=pool_sizes,
        )
        self.descriptor_pool = vkCreateDescriptorPool(self.device, descriptor_pool_info, None)

        logger.info("[OK] Vulkan device initialized")

    def _select_gpu(self, devices):
        """
        Select best GPU: prefer explicit env, then discrete NVIDIA/AMD, avoid CPU/llvmpipe.
        Raises NoAdapter if only CPU adapters are found (set ALLOW_CPU_VULKAN=1 to permit).
        """

        def _info(idx, dev):
            props = vkGetPhysicalDeviceProperties(dev)
            return {
                "idx": idx,
                "device": dev,
                "type": props.deviceType,
                "vendor": props.vendorID,
                "name": _decode(props.deviceName),
            }

        entries = [_info(i, d) for i, d in enumerate(devices)]
        logger.info(
            "[OK] Vulkan devices enumerated: %s",
            ", ".join(
                f"{e['idx']}:{e['name']} (type {e['type']}, vendor 0x{e['vendor']:04X})"
                for e in entries
            ),
        )

        # If env set, try that index first (even if CPU, user requested explicitly)
        env_idx = os.getenv("VK_GPU_INDEX")
        if env_idx is not None:
            try:
                idx = int(env_idx)
            except ValueError:
                logger.warning("Ignoring malformed VK_GPU_INDEX=%r", env_idx)
            else:
                if 0 <= idx < len(entries):
                    return entries[idx]["device"]
                logger.warning("VK_GPU_INDEX=%d out of range (%d devices)", idx, len(entries))

        # Filter out CPU / llvmpipe soft devices
        non_cpu = [
            e
            for e in entries
            if e["type"] != VK_PHYSICAL_DEVICE_TYPE_CPU and "llvmpipe" not in e["name"].lower()
        ]
        if not non_cpu:
            if os.getenv("ALLOW_CPU_VULKAN", "0").lower() not in ("1", "true", "yes"):
                readable = ", ".join(e["name"] for e in entries)
                raise NoAdapter(
                    f"No Vulkan GPU found (candidates: {readable}). "
                    "Set ALLOW_CPU_VULKAN=1 to allow CPU/llvmpipe devices."
                )
            return entries[0]["device"]

        # Prefer discrete GPUs
        discrete = [e for e in non_cpu if e["type"] == VK_PHYSICAL_DEVICE_TYPE_DISCRETE_GPU]
        candidates = discrete or non_cpu

        # Vendor preference: NVIDIA then AMD
        for vendor in (0x10DE, 0x1002):
            for e in candidates:
                if e["vendor"] == vendor:
                    return e["device"]
        return candidates[0]["device"]

    def info(self) -> DeviceInfo:
        props = self.device_properties
        limits = props.limits
        return DeviceInfo(
            name=_decode(props.deviceName),
            backend=self.backend,
            vendor=_VENDORS.get(props.vendorID, f"0x{props.vendorID:04X}"),
            device_type=_DEVICE_TYPES.get(props.deviceType, "other"),
            max_work_items=int(
                min(limits.maxComputeWorkGroupInvocations, limits.maxComputeWorkGroupSize[0])
            ),
            max_storage_buffer_range=int(limits.maxStorageBufferRange),
        )

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------
    def _check_alive(self):
        if self.device is None:
            raise DeviceFault("Vulkan device has been released")

    def create_buffer(self, label: str, nbytes: int) -> VulkanBuffer:
        """Create a host-visible storage buffer and zero it."""
        self._check_alive()
        try:
            handle, memory = self._create_buffer(nbytes)
        except Exception as exc:
            raise DeviceFault(f"Failed to allocate buffer {label} ({nbytes} bytes): {exc}") from exc
        buf = VulkanBuffer(label, handle, memory, nbytes)
        self._buffers.append(buf)
        self.write_buffer(buf, np.zeros(nbytes, dtype=np.uint8))
        return buf

    def _create_buffer(self, size: int):
        """Create Vulkan buffer and allocate memory."""
        buffer_info = VkBufferCreateInfo(
            sType=VK_STRUCTURE_TYPE_BUFFER_CREATE_INFO,
            size=size,
            usage=VK_BUFFER_USAGE_STORAGE_BUFFER_BIT,
            sharingMode=VK_SHARING_MODE_EXCLUSIVE,
        )

        buffer = vkCreateBuffer(self.device, buffer_info, None)

        mem_req = vkGetBufferMemoryRequirements(self.device, buffer)
        mem_type_index = self._find_memory_type(
            mem_req.memoryTypeBits,
            VK_MEMORY_PROPERTY_HOST_VISIBLE_BIT | VK_MEMORY_PROPERTY_HOST_COHERENT_BIT,
        )

        alloc_info = VkMemoryAllocateInfo(
            sType=VK_STRUCTURE_TYPE_MEMORY_ALLOCATE_INFO,
            allocationSize=mem_req.size,
            memoryTypeIndex=mem_type_index,
        )

        memory = vkAllocateMemory(self.device, alloc_info, None)
        vkBindBufferMemory(self.device, buffer, memory, 0)

        return buffer, memory

    def _find_memory_type(self, type_filter, properties):
        """Find suitable memory type"""
        mem_props = self.memory_properties
        for i in range(mem_props.memoryTypeCount):
            if (type_filter & (1 << i)) and (
                mem_props.memoryTypes[i].propertyFlags & properties
            ) == properties:
                return i
        raise DeviceFault("Failed to find host-visible coherent memory type")

    def write_buffer(self, buffer: VulkanBuffer, data: np.ndarray) -> None:
        """Upload numpy array to GPU buffer"""
        self._check_alive()
        arr = np.ascontiguousarray(data)
        upload_size = int(arr.nbytes)
        if upload_size == 0:
            return
        if upload_size > buffer.size:
            raise DeviceFault(
                f"Upload size {upload_size} exceeds buffer {buffer.label} ({buffer.size} bytes)"
            )
        try:
            data_ptr = vkMapMemory(self.device, buffer.memory, 0, upload_size, 0)
            try:
                dst = memoryview(data_ptr)
                src = memoryview(arr).cast("B")
                dst[:upload_size] = src
            finally:
                vkUnmapMemory(self.device, buffer.memory)
        except DeviceFault:
            raise
        except Exception as exc:
            raise DeviceFault(f"Upload to {buffer.label} failed: {exc}") from exc

    def read_buffer(self, buffer: VulkanBuffer, count: int, dtype=np.float32) -> np.ndarray:
        """Download GPU buffer to numpy array"""
        self._check_alive()
        element_size = np.dtype(dtype).itemsize
        requested_bytes = int(count * element_size)
        if requested_bytes <= 0:
            return np.empty(0, dtype=dtype)
        if requested_bytes > buffer.size:
            raise DeviceFault(f"Readback of {requested_bytes} bytes exceeds buffer {buffer.label}")

        try:
            data_ptr = vkMapMemory(self.device, buffer.memory, 0, requested_bytes, 0)
            try:
                try:
                    memview = memoryview(data_ptr)
                    available = len(memview)
                except Exception:
                    memview = None
                    available = 0

                if memview is not None and available >= requested_bytes:
                    return np.frombuffer(memview[:requested_bytes], dtype=dtype, count=count).copy()

                # Fallback path for bindings where mapped pointers expose an
                # undersized or non-buffer-compatible memoryview.
                raw = ctypes.string_at(data_ptr, requested_bytes)
                return np.frombuffer(raw, dtype=dtype, count=count).copy()
            finally:
                vkUnmapMemory(self.device, buffer.memory)
        except Exception as exc:
            raise DeviceFault(f"Readback of {buffer.label} failed: {exc}") from exc

    def destroy_buffer(self, buffer: VulkanBuffer) -> None:
        if self.device is not None:
            buffer.destroy(self.device)
        if buffer in self._buffers:
            self._buffers.remove(buffer)

    # ------------------------------------------------------------------
    # Kernels
    # ------------------------------------------------------------------
    def compile_kernel(self, name: str, constants: dict):
        self._check_alive()
        return self.pipelines.create_pipeline(name, int(constants["NUM_BUFFERS"]), constants)

    def bind_kernel(self, kernel, buffers: list):
        self._check_alive()
        return self.pipelines.create_descriptor_set(kernel, buffers)

    def unbind_kernel(self, bound) -> None:
        self.pipelines.free_descriptor_set(bound)

    def destroy_kernel(self, kernel) -> None:
        self.pipelines.destroy_pipeline(kernel)

    def dispatch(self, bound, work_items: int) -> None:
        """Record and submit one dispatch without waiting for it."""
        self._check_alive()
        if self._in_flight:
            raise DeviceFault("Previous dispatch has not completed")
        pipeline = bound.pipeline
        if work_items > pipeline.local_size:
            raise DeviceFault(
                f"{pipeline.name} was built for {pipeline.local_size} work-items, got {work_items}"
            )
        command_buffer = self._cmd_buffer

        try:
            vkResetCommandBuffer(command_buffer, 0)
            begin_info = VkCommandBufferBeginInfo(
                sType=VK_STRUCTURE_TYPE_COMMAND_BUFFER_BEGIN_INFO,
                flags=VK_COMMAND_BUFFER_USAGE_ONE_TIME_SUBMIT_BIT,
            )
            vkBeginCommandBuffer(command_buffer, begin_info)
            vkCmdBindPipeline(command_buffer, VK_PIPELINE_BIND_POINT_COMPUTE, pipeline.pipeline)
            vkCmdBindDescriptorSets(
                command_buffer,
                VK_PIPELINE_BIND_POINT_COMPUTE,
                pipeline.layout,
                0,
                1,
                [bound.descriptor_set],
                0,
                None,
            )
            # Every work-item sits in one workgroup so the kernels can barrier()
            vkCmdDispatch(command_buffer, 1, 1, 1)
            vkEndCommandBuffer(command_buffer)

            vkResetFences(self.device, 1, [self._fence])
            submit_info = VkSubmitInfo(
                sType=VK_STRUCTURE_TYPE_SUBMIT_INFO,
                commandBufferCount=1,
                pCommandBuffers=[command_buffer],
            )
            vkQueueSubmit(self.queue, 1, [submit_info], self._fence)
        except Exception as exc:
            raise DeviceFault(f"Dispatch of {pipeline.name} failed: {exc}") from exc
        self._in_flight = True

    def _fence_signaled(self) -> bool:
        try:
            result = vkGetFenceStatus(self.device, self._fence)
        except VkNotReady:
            return False
        return result is None or result == VK_SUCCESS

    async def work_done(self) -> None:
        """Poll the dispatch fence, yielding to the event loop between polls."""
        if not self._in_flight:
            return
        deadline = time.monotonic() + self.fence_timeout
        try:
            while not self._fence_signaled():
                if time.monotonic() > deadline:
                    raise DeviceFault(f"Dispatch did not complete within {self.fence_timeout}s")
                await asyncio.sleep(0)
        except DeviceFault:
            raise
        except Exception as exc:
            raise DeviceFault(f"Waiting for dispatch failed: {exc}") from exc
        self._in_flight = False

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    @property
    def released(self) -> bool:
        return self.device is None

    def release(self) -> None:
        self.cleanup()

    def cleanup(self):
        """Cleanup Vulkan resources"""
        if getattr(self, "device", None):
            device = self.device
            try:
                vkDeviceWaitIdle(device)
            except Exception as exc:
                logger.warning("vkDeviceWaitIdle failed during cleanup: %s", exc)
            if getattr(self, "pipelines", None) is not None:
                self.pipelines.cleanup()
            for buf in list(self._buffers):
                buf.destroy(device)
            self._buffers.clear()
            self.device = None  # Prevent double cleanup
            if getattr(self, "_fence", None):
                vkDestroyFence(device, self._fence, None)
                self._fence = None
            if getattr(self, "descriptor_pool", None):
                vkDestroyDescriptorPool(device, self.descriptor_pool, None)
                self.descriptor_pool = None
            if getattr(self, "command_pool", None):
                if getattr(self, "_cmd_buffer", None) is not None:
                    vkFreeCommandBuffers(device, self.command_pool, 1, [self._cmd_buffer])
                    self._cmd_buffer = None
                vkDestroyCommandPool(device, self.command_pool, None)
                self.command_pool = None
            vkDestroyDevice(device, None)
            self._in_flight = False

        if getattr(self, "instance", None):
            instance = self.instance
            self.instance = None  # Prevent double cleanup
            vkDestroyInstance(instance, None)
