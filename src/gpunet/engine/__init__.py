"""
Training engine: parameter store, kernels, step executor and orchestrator.
"""

from .dataset import XOR_TABLE, sample
from .executor import StepExecutor
from .kernels import BoundKernels, KernelCache, KernelSet
from .orchestrator import TrainingOrchestrator, TrainingSession, TrainingState
from .params import BUFFER_LAYOUT, ParameterStore, init_weights
from .scheduler import FrameScheduler

__all__ = [
    "BUFFER_LAYOUT",
    "BoundKernels",
    "FrameScheduler",
    "KernelCache",
    "KernelSet",
    "ParameterStore",
    "StepExecutor",
    "TrainingOrchestrator",
    "TrainingSession",
    "TrainingState",
    "XOR_TABLE",
    "init_weights",
    "sample",
]
