"""
One training step: a forward dispatch then a backward dispatch.
"""

import logging

import numpy as np

from ..errors import DeviceFault, GpunetError
from ..records import StepResult
from .kernels import BoundKernels
from .params import ParameterStore

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs single-sample train steps against bound kernels."""

    def __init__(self):
        self.steps = 0

    async def step(
        self,
        store: ParameterStore,
        kernels: BoundKernels,
        input_vec: np.ndarray,
        target_vec: np.ndarray,
    ) -> StepResult:
        """
        Train on one sample and read back the result.

        The forward dispatch is awaited before the backward dispatch is
        submitted. The loss is the summed squared error divided by
        ``output_size``; accuracy compares the rounded first output (threshold
        0.5) with the first target.

        Args:
            store: Parameter store the kernels are bound to
            kernels: Bound forward and backward kernels
            input_vec: Sample input, ``input_size`` elements
            target_vec: Sample target, ``output_size`` elements

        Returns:
            StepResult with loss, 0/1 accuracy and the fresh activations

        Raises:
            DeviceFault: Any dispatch or readback failure
        """
        if kernels.store is not store:
            raise DeviceFault("Kernels are bound to a different parameter store")
        device = store.device
        work_items = kernels.work_items
        try:
            store.reset_loss()
            store.write_input(input_vec, target_vec)

            device.dispatch(kernels.forward, work_items)
            await device.work_done()

            device.dispatch(kernels.backward, work_items)
            snapshot = await store.read_snapshot()
        except GpunetError:
            raise
        except Exception as exc:
            raise DeviceFault(f"Train step failed: {exc}") from exc

        output_layer = snapshot.output_layer
        loss = snapshot.loss / store.config.output_size
        target0 = float(np.asarray(target_vec, dtype=np.float32).reshape(-1)[0])
        predicted = 1.0 if float(output_layer[0]) >= 0.5 else 0.0
        accuracy = 1 if predicted == round(target0) else 0
        self.steps += 1
        logger.debug(
            "step %d: loss=%.6f prediction=%.4f target=%g",
            self.steps,
            loss,
            float(output_layer[0]),
            target0,
        )
        return StepResult(
            loss=float(loss),
            accuracy=accuracy,
            output_layer=output_layer,
            hidden_layer=snapshot.hidden_layer,
        )
