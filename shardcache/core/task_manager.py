"""
Background task tracking for cache processes.

Early refreshes and bus delivery loops run as background tasks; they are
tracked here so shutdown can cancel them instead of leaving pending tasks.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger


class TaskManager:
    """Tracks background tasks and cancels them on shutdown."""

    def __init__(self, name: str = "TaskManager") -> None:
        self.name = name
        self.tasks: set[asyncio.Task[Any]] = set()
        self._shutdown_requested = False

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a background task."""
        if self._shutdown_requested:
            coro.close()
            raise RuntimeError(f"[{self.name}] cannot create tasks after shutdown")

        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self._task_completed)
        logger.debug(f"[{self.name}] started task {task.get_name()}")
        return task

    def _task_completed(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            logger.debug(f"[{self.name}] task {task.get_name()} cancelled")
        elif task.exception() is not None:
            logger.error(
                f"[{self.name}] task {task.get_name()} failed: {task.exception()!r}"
            )

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait for currently tracked tasks to finish (used by tests and shutdown)."""
        pending = [task for task in self.tasks if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all tracked tasks and wait for them to unwind."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True

        pending = [task for task in self.tasks if not task.done()]
        if not pending:
            return

        logger.info(f"[{self.name}] cancelling {len(pending)} background tasks")
        for task in pending:
            task.cancel()

        _done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            logger.warning(f"[{self.name}] task did not stop: {task.get_name()}")
        self.tasks.clear()

    def __len__(self) -> int:
        return len(self.tasks)


class ManagedObject:
    """Base class for objects that own background tasks."""

    def __init__(self, name: str | None = None) -> None:
        self._task_manager = TaskManager(name or self.__class__.__name__)

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        return self._task_manager.create_task(coro, name)

    async def shutdown(self) -> None:
        await self._task_manager.shutdown()
