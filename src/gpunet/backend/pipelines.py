"""
Compute pipeline construction for the Vulkan backend.

Kernel programs live as GLSL sources in ``gpunet/shaders``. Sizes and the
learning rate are baked in as preprocessor defines, so each configuration
gets its own SPIR-V binary, compiled with ``glslc``.
"""

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

from ..errors import DeviceFault, UnsupportedBackend
from .base import VULKAN_AVAILABLE

if VULKAN_AVAILABLE:
    from vulkan import *

logger = logging.getLogger(__name__)

SHADER_DIR = Path(__file__).parent.parent / "shaders"


def shader_path(name: str) -> Path:
    path = SHADER_DIR / f"{name}.glsl"
    if not path.exists():
        raise DeviceFault(f"Unknown kernel program: {name}")
    return path


def shader_source(name: str) -> str:
    """Return the GLSL source of kernel program ``name``."""
    return shader_path(name).read_text(encoding="utf-8")


def format_define(key: str, value) -> str:
    """Render one ``-D`` flag; floats keep a decimal point so GLSL types them as float."""
    if isinstance(value, float):
        text = repr(value)
        if "e" not in text and "." not in text and "inf" not in text:
            text += ".0"
        return f"-D{key}={text}"
    return f"-D{key}={int(value)}"


def find_glslc(explicit: str | None = None) -> str:
    glslc = explicit or shutil.which("glslc")
    if glslc is None:
        raise UnsupportedBackend(
            "glslc not found; install the Vulkan SDK or shaderc, or set GPUNET_GLSLC"
        )
    return glslc


def compile_spirv(name: str, constants: dict, glslc: str | None = None) -> bytes:
    """Compile kernel program ``name`` to SPIR-V with ``constants`` as defines."""
    compiler = find_glslc(glslc)
    src_path = shader_path(name)
    defines = [format_define(k, v) for k, v in sorted(constants.items())]

    with tempfile.TemporaryDirectory(prefix="gpunet-spv-") as tmp:
        out_path = Path(tmp) / f"{name}.spv"
        try:
            subprocess.run(
                [
                    compiler,
                    "-fshader-stage=compute",
                    "--target-env=vulkan1.0",
                    *defines,
                    str(src_path),
                    "-o",
                    str(out_path),
                ],
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            logger.warning("Failed to compile shader %s: %s", src_path.name, exc.stderr)
            raise DeviceFault(f"Shader {name} failed to compile: {exc.stderr}") from exc
        except OSError as exc:
            raise UnsupportedBackend(f"Cannot run glslc at {compiler}: {exc}") from exc
        code = out_path.read_bytes()

    logger.debug("Compiled %s (%d bytes SPIR-V) with %s", name, len(code), " ".join(defines))
    return code


class VulkanPipeline:
    """A compiled compute pipeline plus the layouts it was built with."""

    __slots__ = ("name", "local_size", "pipeline", "layout", "set_layout", "module", "num_buffers")

    def __init__(self, name, local_size, pipeline, layout, set_layout, module, num_buffers):
        self.name = name
        self.local_size = local_size
        self.pipeline = pipeline
        self.layout = layout
        self.set_layout = set_layout
        self.module = module
        self.num_buffers = num_buffers


class BoundPipeline:
    """A pipeline together with the descriptor set pointing at its buffers."""

    __slots__ = ("pipeline", "descriptor_set", "buffers")

    def __init__(self, pipeline, descriptor_set, buffers):
        self.pipeline = pipeline
        self.descriptor_set = descriptor_set
        self.buffers = buffers

    @property
    def name(self):
        return self.pipeline.name


class VulkanPipelines:
    """Creates and destroys compute pipelines and descriptor sets for a core."""

    def __init__(self, core, glslc: str | None = None):
        self.core = core
        self.glslc = glslc
        self._pipelines: list[VulkanPipeline] = []

    def create_pipeline(self, name: str, num_buffers: int, constants: dict) -> VulkanPipeline:
        """Compile ``name`` and build a pipeline with ``num_buffers`` storage bindings."""
        code = compile_spirv(name, constants, self.glslc)
        device = self.core.device
        try:
            module = vkCreateShaderModule(
                device,
                VkShaderModuleCreateInfo(
                    sType=VK_STRUCTURE_TYPE_SHADER_MODULE_CREATE_INFO,
                    codeSize=len(code),
                    pCode=code,
                ),
                None,
            )

            bindings = [
                VkDescriptorSetLayoutBinding(
                    binding=i,
                    descriptorType=VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                    descriptorCount=1,
                    stageFlags=VK_SHADER_STAGE_COMPUTE_BIT,
                )
                for i in range(num_buffers)
            ]
            set_layout = vkCreateDescriptorSetLayout(
                device,
                VkDescriptorSetLayoutCreateInfo(
                    sType=VK_STRUCTURE_TYPE_DESCRIPTOR_SET_LAYOUT_CREATE_INFO,
                    bindingCount=len(bindings),
                    pBindings=bindings,
                ),
                None,
            )

            layout = vkCreatePipelineLayout(
                device,
                VkPipelineLayoutCreateInfo(
                    sType=VK_STRUCTURE_TYPE_PIPELINE_LAYOUT_CREATE_INFO,
                    setLayoutCount=1,
                    pSetLayouts=[set_layout],
                ),
                None,
            )

            stage = VkPipelineShaderStageCreateInfo(
                sType=VK_STRUCTURE_TYPE_PIPELINE_SHADER_STAGE_CREATE_INFO,
                stage=VK_SHADER_STAGE_COMPUTE_BIT,
                module=module,
                pName="main",
            )
            pipeline = vkCreateComputePipelines(
                device,
                VK_NULL_HANDLE,
                1,
                [
                    VkComputePipelineCreateInfo(
                        sType=VK_STRUCTURE_TYPE_COMPUTE_PIPELINE_CREATE_INFO,
                        stage=stage,
                        layout=layout,
                    )
                ],
                None,
            )[0]
        except Exception as exc:
            raise DeviceFault(f"Failed to create pipeline {name}: {exc}") from exc

        entry = VulkanPipeline(
            name,
            int(constants.get("WORK_ITEMS", 1)),
            pipeline,
            layout,
            set_layout,
            module,
            num_buffers,
        )
        self._pipelines.append(entry)
        return entry

    def create_descriptor_set(self, pipeline: VulkanPipeline, buffers: list) -> BoundPipeline:
        """Allocate a descriptor set binding ``buffers`` in order."""
        if len(buffers) != pipeline.num_buffers:
            raise DeviceFault(
                f"{pipeline.name} expects {pipeline.num_buffers} buffers, got {len(buffers)}"
            )
        device = self.core.device
        try:
            descriptor_set = vkAllocateDescriptorSets(
                device,
                VkDescriptorSetAllocateInfo(
                    sType=VK_STRUCTURE_TYPE_DESCRIPTOR_SET_ALLOCATE_INFO,
                    descriptorPool=self.core.descriptor_pool,
                    descriptorSetCount=1,
                    pSetLayouts=[pipeline.set_layout],
                ),
            )[0]

            writes = [
                VkWriteDescriptorSet(
                    sType=VK_STRUCTURE_TYPE_WRITE_DESCRIPTOR_SET,
                    dstSet=descriptor_set,
                    dstBinding=i,
                    dstArrayElement=0,
                    descriptorCount=1,
                    descriptorType=VK_DESCRIPTOR_TYPE_STORAGE_BUFFER,
                    pBufferInfo=[
                        VkDescriptorBufferInfo(buffer=buf.handle, offset=0, range=buf.size)
                    ],
                )
                for i, buf in enumerate(buffers)
            ]
            vkUpdateDescriptorSets(device, len(writes), writes, 0, None)
        except Exception as exc:
            raise DeviceFault(f"Failed to bind buffers for {pipeline.name}: {exc}") from exc
        return BoundPipeline(pipeline, descriptor_set, list(buffers))

    def free_descriptor_set(self, bound: BoundPipeline):
        if bound.descriptor_set is None or self.core.device is None:
            return
        vkFreeDescriptorSets(self.core.device, self.core.descriptor_pool, 1, [bound.descriptor_set])
        bound.descriptor_set = None

    def destroy_pipeline(self, entry: VulkanPipeline):
        device = self.core.device
        if device is None or entry.pipeline is None:
            return
        vkDestroyPipeline(device, entry.pipeline, None)
        vkDestroyPipelineLayout(device, entry.layout, None)
        vkDestroyDescriptorSetLayout(device, entry.set_layout, None)
        vkDestroyShaderModule(device, entry.module, None)
        entry.pipeline = None
        if entry in self._pipelines:
            self._pipelines.remove(entry)

    def cleanup(self):
        """Destroy every pipeline still owned by this instance."""
        for entry in list(self._pipelines):
            self.destroy_pipeline(entry)
