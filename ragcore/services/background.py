"""
Background Tasks
Fire-and-forget work (analytics, evaluation) that must never block or fail
the response path. Errors are logged, never returned.
"""
import asyncio
from typing import Awaitable, Set

import structlog

logger = structlog.get_logger()


class BackgroundTaskRunner:

    def __init__(self):
        # Strong references to pending tasks
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def fire_and_forget(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, name))
        return task

    def _on_done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task cancelled", task=name)
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed", task=name, error=str(error))

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for pending tasks, e.g. on shutdown."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Background tasks cancelled on drain", count=len(pending))
