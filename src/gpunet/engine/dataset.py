"""
The XOR training set and per-step sample selection.
"""

import numpy as np

from ..config import NeuralNetworkConfig

# (input, target) rows, visited in this order
XOR_TABLE = (
    ((0.0, 0.0), 0.0),
    ((0.0, 1.0), 1.0),
    ((1.0, 0.0), 1.0),
    ((1.0, 1.0), 0.0),
)

STEPS_PER_EPOCH = len(XOR_TABLE)


def row_for_step(step: int) -> int:
    """Truth-table row visited by global step ``step``."""
    return step % STEPS_PER_EPOCH


def epoch_for_step(step: int) -> int:
    """1-based epoch that step ``step`` belongs to."""
    return step // STEPS_PER_EPOCH + 1


def sample(step: int, config: NeuralNetworkConfig) -> tuple[np.ndarray, np.ndarray]:
    """
    Input and target vectors for ``step``, shaped to ``config``.

    The two XOR inputs are zero-padded (or truncated) to ``input_size``; the
    target bit is repeated across every output neuron.

    Returns:
        (input_vec, target_vec) as float32 arrays
    """
    inputs, target = XOR_TABLE[row_for_step(step)]
    input_vec = np.zeros(config.input_size, dtype=np.float32)
    n = min(len(inputs), config.input_size)
    input_vec[:n] = inputs[:n]
    target_vec = np.full(config.output_size, target, dtype=np.float32)
    return input_vec, target_vec
