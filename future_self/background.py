"""Detached background work for fire-and-forget cache writes."""

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger


class BackgroundTasks:
    """Run coroutines without blocking the caller.

    ``submit`` returns immediately and never raises into the caller. Tasks are
    referenced until done so the event loop cannot garbage-collect them, and
    their failures are logged instead of surfacing as unretrieved exceptions.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def submit(self, coro: Coroutine[Any, Any, Any], description: str) -> None:
        """Schedule coro on the running loop."""
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError as e:
            coro.close()
            logger.warning(f"Background task '{description}' not scheduled: {e}")
            return

        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, description))

    def _finished(self, task: asyncio.Task[Any], description: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Background task '{description}' cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Background task '{description}' failed: {exc}")
        elif task.result() is False:
            logger.debug(f"Background task '{description}' reported no effect")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every submitted task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
