"""
Background task ownership for the controller's concurrent consumers.

The main event queue and the federation consumers run as asyncio tasks; this
module tracks them so a single shutdown cancels whatever is still running.
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

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        if self._shutdown_requested:
            coro.close()
            raise RuntimeError("Cannot create tasks after shutdown requested")

        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self._task_completed)
        logger.debug(f"[{self.name}] Started task {task.get_name()}")
        return task

    def _task_completed(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            logger.debug(f"[{self.name}] Task {task.get_name()} was cancelled")
        elif task.exception():
            logger.error(
                f"[{self.name}] Task {task.get_name()} failed: {task.exception()}"
            )
        else:
            logger.debug(f"[{self.name}] Task {task.get_name()} finished")

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every tracked task and wait up to ``timeout`` for them."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True

        pending = [task for task in self.tasks if not task.done()]
        if not pending:
            return

        logger.debug(f"[{self.name}] Stopping {len(pending)} background tasks")
        for task in pending:
            task.cancel()

        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            logger.warning(f"[{self.name}] Task {task.get_name()} did not stop")
        self.tasks.clear()

    def __len__(self) -> int:
        return len(self.tasks)
