"""
Benchmark: one train step (forward dispatch -> backward dispatch -> readback)
per backend and network width.
"""

import asyncio
import sys

import numpy as np

sys.path.insert(0, ".")

from benchmarks.utils import format_time, open_device, print_header, print_summary_table, time_async
from gpunet.config import NeuralNetworkConfig
from gpunet.engine.dataset import sample
from gpunet.engine.executor import StepExecutor
from gpunet.engine.kernels import KernelSet
from gpunet.engine.params import ParameterStore, init_weights
from gpunet.errors import GpunetError

BACKENDS = ("vulkan", "cpu")

CONFIGS = [
    # (input, hidden, output)
    (2, 4, 1),
    (2, 64, 1),
    (16, 256, 16),
    (64, 1024, 64),
]


async def bench_config(device, cfg, steps):
    store = ParameterStore.create(device, cfg, init_weights(cfg, np.random.default_rng(0)))
    bound = KernelSet.compile(device, cfg).bind(store)
    executor = StepExecutor()
    vectors = [sample(i, cfg) for i in range(4)]

    async def run_steps():
        for i in range(steps):
            x, t = vectors[i % 4]
            await executor.step(store, bound, x, t)

    try:
        stats = await time_async(run_steps, warmup=1, repeats=3)
    finally:
        bound.release()
        store.destroy()
    return stats["mean"] / steps


def main():
    print_header("Train Step Benchmark")
    steps = 100
    results = [{"label": f"{i}-{h}-{o}"} for i, h, o in CONFIGS]

    for backend in BACKENDS:
        session, device = open_device(backend)
        if device is None:
            continue
        print(f"\n  Backend: {backend} ({device.info().name})")
        for row, (n_in, n_hid, n_out) in zip(results, CONFIGS):
            cfg = NeuralNetworkConfig(input_size=n_in, hidden_size=n_hid, output_size=n_out)
            try:
                ms = asyncio.run(bench_config(device, cfg, steps))
            except GpunetError as e:
                print(f"  {row['label']:<28} skipped: {e}")
                continue
            row[backend] = ms
            print(f"  {row['label']:<28} {format_time(ms):>10} / step")
        session.release()

    print_summary_table(results, BACKENDS)


if __name__ == "__main__":
    main()
