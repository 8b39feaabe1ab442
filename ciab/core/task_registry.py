"""Task registry for the runtime's background asyncio tasks.

Every task the runtime starts outside a command handler (the preview loop,
per-session snapshot ticks, best-effort resizes) goes through a registry so
failures are logged and shutdown can cancel everything deterministically.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Registry for tracking background asyncio tasks.

    Example:
        registry = TaskRegistry()
        registry.spawn(scheduler.run(), name="preview-scheduler")
        await registry.shutdown(timeout=5.0)
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()
        self._closed = False

    def _on_task_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def spawn(self, coro: Coroutine[object, object, T], name: Optional[str] = None) -> asyncio.Task[T]:
        """Spawn a tracked background task.

        Raises:
            RuntimeError: If the registry has already been shut down
        """
        if self._closed:
            coro.close()
            raise RuntimeError("TaskRegistry is shut down")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        logger.debug("Spawned tracked task: %s (total: %d)", task.get_name(), len(self._tasks))
        return task

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all tracked tasks and wait up to `timeout` seconds for them to finish."""
        self._closed = True
        if not self._tasks:
            return

        task_count = len(self._tasks)
        logger.info("Shutting down %d tracked tasks (timeout=%.1fs)", task_count, timeout)
        for task in self._tasks:
            if not task.done():
                task.cancel()

        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(
                "Shutdown timeout: %d/%d tasks still pending after %.1fs", len(pending), task_count, timeout
            )
            for task in pending:
                logger.warning("Pending task: %s", task.get_name())

    def task_count(self) -> int:
        return len(self._tasks)
