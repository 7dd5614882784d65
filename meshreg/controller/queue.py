"""
Serialized event queue.

All cache mutation runs as parameterless tasks on one consumer, in
submission order. Producers may be any thread (watch callbacks arrive on the
transport's threads); the consumer is an asyncio task.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from collections.abc import Callable
from typing import TypeAlias

from loguru import logger

Task: TypeAlias = Callable[[], object]


class EventQueue:
    """Single-consumer FIFO of units of work.

    A task that raises is logged and the queue moves on. ``push`` is
    thread-safe and may be called before ``run`` starts; the work waits
    until the consumer is running.
    """

    def __init__(self, name: str = "queue") -> None:
        self.name = name
        self._tasks: deque[Task] = deque()
        self._lock = threading.Lock()
        self._closing = False
        self._running = False
        self._finished = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None
        self.processed = 0
        self.failed = 0

    def push(self, task: Task) -> None:
        with self._lock:
            if self._closing:
                logger.debug(f"[{self.name}] dropping task pushed after close")
                return
            self._tasks.append(task)
        self._notify()

    def pending(self) -> int:
        with self._lock:
            return len(self._tasks)

    def _notify(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            # loop already closed; run() has exited
            pass

    def _pop(self) -> Task | None:
        with self._lock:
            if not self._tasks:
                return None
            return self._tasks.popleft()

    def _execute(self, task: Task) -> None:
        try:
            task()
            self.processed += 1
        except Exception as e:
            self.failed += 1
            logger.opt(exception=e).error(f"[{self.name}] work item failed: {e}")

    async def run(self, stop: asyncio.Event) -> None:
        """Process tasks until ``stop`` is set or the queue is closed and drained."""
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._running = True
        self._finished.clear()
        stop_waiter = asyncio.ensure_future(stop.wait())
        try:
            while not stop.is_set():
                task = self._pop()
                if task is not None:
                    self._execute(task)
                    # let federation consumers and readers interleave
                    await asyncio.sleep(0)
                    continue
                with self._lock:
                    if self._closing:
                        break
                self._wakeup.clear()
                if self.pending():
                    continue
                wake_waiter = asyncio.ensure_future(self._wakeup.wait())
                await asyncio.wait(
                    {wake_waiter, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                wake_waiter.cancel()
        finally:
            stop_waiter.cancel()
            self._running = False
            self._loop = None
            self._wakeup = None
            self._finished.set()
            logger.debug(f"[{self.name}] queue stopped")

    async def close(self, timeout: float) -> bool:
        """Stop accepting work and wait up to ``timeout`` for the drain.

        Returns True when the consumer finished in time. Never raises.
        """
        with self._lock:
            self._closing = True
            idle = not self._running
            empty = not self._tasks
        if idle:
            return empty
        self._notify()
        return await asyncio.to_thread(self._finished.wait, timeout)
