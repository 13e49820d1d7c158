from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``func`` every ``interval`` seconds on the running event loop.

    Timing uses the loop's monotonic clock.  An exception in one tick is
    logged and the next tick still runs.  :meth:`stop` lets a tick that is
    already in progress finish before the task exits.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[object]]) -> None:
        self.name = name
        self.interval = interval
        self._func = func
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self.last_run: Optional[float] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info(f"{self.name}: started (every {self.interval}s)")
        while not self._stopping.is_set():
            self.last_run = loop.time()
            try:
                await self._func()
            except Exception:
                logger.exception(f"{self.name}: tick failed")
            self.runs += 1
            delay = max(0.0, self.interval - (loop.time() - self.last_run))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info(f"{self.name}: stopped")


class CooldownGuard:
    """Admit at most one call per key within ``window`` seconds."""

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window = window
        self._clock = clock
        self._last: Dict[Hashable, float] = {}

    def __len__(self) -> int:
        return len(self._last)

    def try_acquire(self, key: Hashable) -> bool:
        now = self._clock()
        self._prune(now)
        if key in self._last:
            return False
        self._last[key] = now
        return True

    def reset(self, key: Hashable) -> None:
        self._last.pop(key, None)

    def _prune(self, now: float) -> None:
        expired = [k for k, t in self._last.items() if now - t >= self.window]
        for k in expired:
            del self._last[k]
