"""Tests for background consumer task tracking."""

import asyncio

import pytest

from meshreg.core.task_manager import TaskManager


class TestTaskManager:
    @pytest.mark.asyncio
    async def test_finished_tasks_are_forgotten(self):
        tasks = TaskManager("test")
        task = tasks.create_task(asyncio.sleep(0), name="quick")
        assert len(tasks) == 1

        await task
        await asyncio.sleep(0)

        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_consumers(self):
        tasks = TaskManager("test")
        stop = asyncio.Event()
        consumer = tasks.create_task(stop.wait(), name="consumer")
        await asyncio.sleep(0)

        await tasks.shutdown(timeout=1.0)

        assert consumer.cancelled()
        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_failed_task_does_not_break_shutdown(self):
        async def boom():
            raise RuntimeError("consumer failed")

        tasks = TaskManager("test")
        failing = tasks.create_task(boom(), name="failing")
        await asyncio.wait([failing])

        await tasks.shutdown()

        assert isinstance(failing.exception(), RuntimeError)

    @pytest.mark.asyncio
    async def test_no_tasks_after_shutdown(self):
        tasks = TaskManager("test")
        await tasks.shutdown()

        coro = asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            tasks.create_task(coro)
