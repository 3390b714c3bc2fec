"""
Benchmark utilities for timing and result formatting.
"""

import time

import numpy as np


def time_async(coro_fn, *args, warmup=2, repeats=5, **kwargs):
    """Time an async function with warmup and averaging.

    Must be awaited from inside a running event loop.

    Returns:
        coroutine yielding a dict with 'mean', 'std', 'min', 'max' times in milliseconds.
    """

    async def run():
        for _ in range(warmup):
            await coro_fn(*args, **kwargs)

        times = []
        result = None
        for _ in range(repeats):
            t0 = time.perf_counter()
            result = await coro_fn(*args, **kwargs)
            t1 = time.perf_counter()
            times.append((t1 - t0) * 1000)  # ms

        return {
            "mean": np.mean(times),
            "std": np.std(times),
            "min": np.min(times),
            "max": np.max(times),
            "result": result,
        }

    return run()


def format_time(ms):
    """Format milliseconds to human-readable string."""
    if ms < 1:
        return f"{ms * 1000:.1f} us"
    if ms < 1000:
        return f"{ms:.2f} ms"
    return f"{ms / 1000:.2f} s"


def print_header(title):
    """Print a formatted section header."""
    print(f"\n{'=' * 60}")
    print(f"  {title}")
    print(f"{'=' * 60}")


def print_summary_table(results, backends):
    """Print a summary table of benchmark results.

    Args:
        results: list of dicts with key 'label' and one time (ms) per backend name
        backends: backend names, in column order
    """
    header = "".join(f" {b:>12}" for b in backends)
    print(f"\n{'Label':<30}{header}")
    print("-" * (30 + 13 * len(backends)))
    for r in results:
        cells = "".join(
            f" {format_time(r[b]):>12}" if r.get(b) is not None else f" {'N/A':>12}"
            for b in backends
        )
        print(f"  {r['label']:<28}{cells}")


def open_device(backend):
    """Acquire a device for ``backend``, or None if unavailable."""
    from gpunet.backend.session import DeviceSession
    from gpunet.config import TrainerSettings
    from gpunet.errors import DeviceUnavailable

    session = DeviceSession(TrainerSettings(backend=backend))
    try:
        return session, session.acquire()
    except DeviceUnavailable as e:
        print(f"{backend} backend unavailable: {e}")
        return session, None
