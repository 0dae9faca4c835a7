"""
Periodic background loop
========================

Runs an async action immediately, then every ``interval_seconds`` until
stopped.  Used for the presence heartbeat (3 min), the rider's request
heartbeat (30 s) and the driver GPS sampler (30 s).

* ``start`` while running stops the previous loop first, so there is never
  more than one timer per logical loop.
* ``stop`` is synchronous: the task is cancelled before it returns.
* An exception inside one tick is logged and the loop carries on; the next
  tick supersedes the failed one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        action: Callable[[], Awaitable[None]],
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self._action = action
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._loop(self._stop_event)
        )
        logger.debug("%s started (interval=%ss)", self.name, self.interval_seconds)

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            logger.debug("%s stopped", self.name)
        self._task = None
        self._stop_event = None

    async def _loop(self, stop_event: asyncio.Event) -> None:
        """Periodic loop: run one tick then sleep."""
        while not stop_event.is_set():
            try:
                await self._action()
            except Exception:
                logger.exception("Unhandled error in %s tick", self.name)
            # Wait for the interval or until stop is signalled
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass  # next tick
