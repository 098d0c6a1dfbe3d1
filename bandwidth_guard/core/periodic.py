"""
Periodic asyncio jobs.

Each job runs its callback on a fixed interval in a tracked background task.
Callback errors are logged and never end the loop.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run an async callback every ``interval`` seconds.

    Without ``allow_overlap`` an invocation that is still in flight when the
    next tick fires causes that tick to be skipped, so the callback never runs
    concurrently with itself. ``run_now`` shares the same in-flight guard and
    waits for it instead of skipping.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable],
        allow_overlap: bool = False,
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.allow_overlap = allow_overlap
        self.run_immediately = run_immediately
        self._guard = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        # background invocation references
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.debug("Periodic task %s started (every %.3fs)", self.name, self.interval)

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time()
        if not self.run_immediately:
            next_run += self.interval
        while True:
            delay = next_run - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            self._fire()
            next_run += self.interval
            # Fell behind (e.g. a suspended host): skip missed ticks instead of bursting
            if next_run < loop.time():
                next_run = loop.time() + self.interval

    def _fire(self) -> None:
        if not self.allow_overlap and self._guard.locked():
            logger.debug("Skipping %s tick, previous run still in flight", self.name)
            return
        task = asyncio.create_task(self._invoke())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _invoke(self) -> None:
        try:
            if self.allow_overlap:
                await self.callback()
            else:
                async with self._guard:
                    await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task %s failed", self.name)

    async def run_now(self):
        """Invoke the callback immediately and return its result.

        Errors propagate to the caller.
        """
        if self.allow_overlap:
            return await self.callback()
        async with self._guard:
            return await self.callback()

    async def stop(self, grace: float = 5.0) -> None:
        """Stop scheduling, then wait up to ``grace`` seconds for in-flight runs."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._inflight:
            pending = set(self._inflight)
            _, still_running = await asyncio.wait(pending, timeout=grace)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning(
                    "Cancelled %d in-flight %s run(s) at shutdown", len(still_running), self.name
                )
                await asyncio.gather(*still_running, return_exceptions=True)
        self._inflight = set()
        logger.debug("Periodic task %s stopped", self.name)
