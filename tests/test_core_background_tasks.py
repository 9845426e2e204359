# tests/test_core_background_tasks.py

import asyncio
import pytest

from pixelforge.core.tasks import BackgroundTaskManager

pytestmark = pytest.mark.asyncio


class TestBackgroundTaskManager:
    """串行任务队列的单元测试。"""

    async def test_submit_and_execute_task(self):
        task_completed_event = asyncio.Event()
        result_capture = []

        async def mock_task(a: int, b: int):
            result_capture.append(a + b)
            task_completed_event.set()

        task_manager = BackgroundTaskManager()
        task_manager.start()

        task_manager.submit_task(mock_task, 5, 10)

        await asyncio.wait_for(task_completed_event.wait(), timeout=1.0)
        assert result_capture == [15]

        await task_manager.stop()
        assert not task_manager.is_running

    async def test_single_worker_preserves_order(self):
        order = []

        async def record(n: int, delay: float):
            await asyncio.sleep(delay)
            order.append(n)

        task_manager = BackgroundTaskManager(max_workers=1)
        task_manager.start()
        task_manager.submit_task(record, 1, 0.03)
        task_manager.submit_task(record, 2, 0.0)
        task_manager.submit_task(record, 3, 0.01)

        await task_manager.join()
        assert order == [1, 2, 3]
        await task_manager.stop()

    async def test_failing_task_does_not_kill_worker(self, caplog):
        results = []

        async def explode():
            raise RuntimeError("boom")

        async def ok():
            results.append("ok")

        task_manager = BackgroundTaskManager(name="watch")
        task_manager.start()
        task_manager.submit_task(explode)
        task_manager.submit_task(ok)

        await task_manager.stop(drain=True)

        assert results == ["ok"]
        assert "explode" in caplog.text

    async def test_submit_before_start_is_rejected(self, caplog):
        async def never():
            raise AssertionError("should not run")

        task_manager = BackgroundTaskManager(name="idle")
        task_manager.submit_task(never)

        assert "not running" in caplog.text
