"""
Frame pacing for the training loop.
"""

import asyncio


class FrameScheduler:
    """
    Awaitable tick between train steps.

    With ``interval == 0`` each tick is a bare yield to the event loop, so
    other tasks (a UI, a stop request) get a turn after every step.
    """

    def __init__(self, interval: float = 0.0):
        self.interval = max(0.0, float(interval))
        self.frames = 0

    async def next_frame(self) -> None:
        self.frames += 1
        await asyncio.sleep(self.interval)
