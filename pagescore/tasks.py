"""
Detached background work that outlives the request that started it.

Tasks are referenced until they finish so they are not garbage collected
mid-flight, and drained on shutdown so pending cache writes complete.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


class TaskTracker:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task[Any]:
        """Start `coro` without awaiting it. Its failure is logged, never raised."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %r", task.get_name(), exc, exc_info=exc
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks, including ones they spawn meanwhile."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending = {task for task in self._tasks if not task.done()}
            if not pending:
                return
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning(
                    "Abandoning %d background task(s) on shutdown", len(pending)
                )
                return
            await asyncio.wait(pending, timeout=remaining)
