import asyncio
import logging
from typing import List, Optional

from .dispatch import DispatchQueue

logger = logging.getLogger("routecast")


class FrameClock:
    """Frame boundary source shared by scene playback and capture."""

    def __init__(self):
        self.frame = 0
        self.time = 0.0
        # set while capturing so scene time tracks encoded frames, not wall time
        self.fixed_step: Optional[float] = None
        self._waiters: List[asyncio.Future] = []

    def next_frame(self) -> "asyncio.Future[float]":
        """Future resolved with the tick's delta time at the next frame."""
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        return fut

    def advance(self, dt: float) -> None:
        self.frame += 1
        self.time += dt
        waiters, self._waiters = self._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(dt)


class MainLoop:
    """Single-threaded tick loop that owns the scene, the encoder and the job slot.

    Each tick drains the dispatch queue, advances the scene, then releases the
    coroutines waiting on the frame clock so they observe the updated scene.
    """

    def __init__(self, dispatch: DispatchQueue, clock: FrameClock, scene=None, tick_rate: int = 30):
        self.dispatch = dispatch
        self.clock = clock
        self.scene = scene
        self.interval = 1.0 / max(1, tick_rate)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping: Optional[asyncio.Event] = None

    async def tick(self, dt: float) -> None:
        self.dispatch.drain()
        step = self.clock.fixed_step or dt
        if self.scene is not None:
            self.scene.update(step)
        self.clock.advance(step)
        # let frame waiters run their step before the next tick
        await asyncio.sleep(0)

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stopping = asyncio.Event()
        logger.info("Main loop running at %.1f ticks/s", 1.0 / self.interval)
        last = self._loop.time()
        while not self._stopping.is_set():
            now = self._loop.time()
            await self.tick(now - last)
            last = now
            remaining = self.interval - (self._loop.time() - now)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, remaining))
            except asyncio.TimeoutError:
                pass
        logger.info("Main loop stopped after %d frames", self.clock.frame)

    def stop(self) -> None:
        """Ask the loop to exit; safe to call from any thread."""
        if self._loop is not None and self._stopping is not None:
            self._loop.call_soon_threadsafe(self._stopping.set)
