# pixelforge/core/tasks.py

import asyncio
import logging
from typing import Any, Callable, Coroutine, List

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """
    异步任务队列。默认只有一个工作者，提交的任务严格按提交顺序逐个执行，
    这样文件监听触发的重建永远不会并发地写同一个输出目录。
    """
    def __init__(self, max_workers: int = 1, name: str = "tasks"):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._max_workers = max_workers
        self._name = name
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self):
        if self._is_running:
            logger.warning(f"Task manager '{self._name}' is already running.")
            return

        logger.debug(f"Starting {self._max_workers} worker(s) for '{self._name}'")
        for i in range(self._max_workers):
            worker_task = asyncio.create_task(self._worker(f"{self._name}-{i}"))
            self._workers.append(worker_task)
        self._is_running = True

    async def stop(self, drain: bool = True):
        if not self._is_running:
            return
        if drain:
            await self._queue.join()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._is_running = False
        logger.debug(f"Task manager '{self._name}' stopped.")

    async def join(self):
        """等待当前队列中所有任务执行完毕。"""
        await self._queue.join()

    def submit_task(self, coro_func: Callable[..., Coroutine], *args: Any, **kwargs: Any):
        if not self._is_running:
            logger.error(f"Cannot submit '{coro_func.__name__}': task manager '{self._name}' is not running.")
            return
        self._queue.put_nowait((coro_func, args, kwargs))

    async def _worker(self, name: str):
        while True:
            try:
                coro_func, args, kwargs = await self._queue.get()
                try:
                    await coro_func(*args, **kwargs)
                except Exception:
                    logger.exception(f"Worker '{name}' failed while running '{coro_func.__name__}'.")
                finally:
                    self._queue.task_done()
            except asyncio.CancelledError:
                break
