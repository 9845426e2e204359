# pixelforge/editor/server.py

import asyncio
import inspect
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

from pixelforge.config import WORKING_SET_FLUSH_INTERVAL, WORKING_SET_TTL_SECONDS
from pixelforge.core.contracts import EditorMutation, MutationType

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _Entry(Generic[V]):
    __slots__ = ("value", "last_access", "dirty")

    def __init__(self, value: V, now: float):
        self.value = value
        self.last_access = now
        self.dirty = False


class WorkingSetCache(Generic[K, V]):
    """
    编辑器进程里的工作集缓存（例如正在编辑的地图）。
    未命中时通过 loader 加载；被修改的条目由周期性 flush() 写回，
    写回后超过 TTL 未被访问的条目会被逐出。
    """
    def __init__(
        self,
        loader: Callable[[K], Awaitable[Optional[V]]],
        saver: Callable[[K, V], Awaitable[None]],
        ttl: float = WORKING_SET_TTL_SECONDS,
        flush_interval: float = WORKING_SET_FLUSH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._saver = saver
        self._ttl = ttl
        self._flush_interval = flush_interval
        self._clock = clock
        self._entries: Dict[K, _Entry[V]] = {}
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    def __contains__(self, key: K) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def is_dirty(self, key: K) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.dirty

    async def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            value = await self._loader(key)
            if value is None:
                return None
            entry = _Entry(value, self._clock())
            self._entries[key] = entry
        entry.last_access = self._clock()
        return entry.value

    def mark_dirty(self, key: K) -> None:
        entry = self._entries.get(key)
        if entry is None:
            raise KeyError(key)
        entry.dirty = True
        entry.last_access = self._clock()

    async def flush(self) -> Tuple[int, int]:
        """写回所有脏条目，然后逐出闲置超过 TTL 的条目。返回 (写回数, 逐出数)。"""
        async with self._lock:
            written = 0
            for key, entry in list(self._entries.items()):
                if not entry.dirty:
                    continue
                entry.dirty = False
                try:
                    await self._saver(key, entry.value)
                    written += 1
                except Exception:
                    entry.dirty = True
                    logger.exception(f"Failed to write back working set entry '{key}'")

            now = self._clock()
            expired = [
                key for key, entry in self._entries.items()
                if not entry.dirty and now - entry.last_access > self._ttl
            ]
            for key in expired:
                del self._entries[key]
            if written or expired:
                logger.debug(f"Working set flush: wrote {written}, evicted {len(expired)}")
            return written, len(expired)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

    async def stop(self) -> None:
        """停止周期写回，并做最后一次 flush。"""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self.flush()


class EditorServer:
    """
    运行在编辑器子进程中的服务端基类。游戏通过 `create_editor(connection)`
    返回它的子类，并重写 handle_action 来处理自己的 Action。

    - INIT 记录 outputRoot
    - RESTART 写回工作集后以退出码 0 结束
    - REQUEST 中的每个 action 交给 handle_action，结果以 RESPONSE 回复
    """
    def __init__(self, connection: Any, working_sets: Optional[List[WorkingSetCache]] = None):
        self.connection = connection
        self.output_root: Optional[Path] = None
        self.working_sets: List[WorkingSetCache] = list(working_sets or [])
        self._done = asyncio.Event()
        self._exit_code = 0

    async def handle_action(self, action: EditorMutation) -> Any:
        logger.warning(f"Unhandled editor action '{action.type}'")
        return None

    async def emit(self, event: EditorMutation) -> None:
        await self.connection.send(event)

    async def on_message(self, mutation: EditorMutation) -> None:
        if mutation.type == MutationType.INIT:
            self.output_root = Path(getattr(mutation, "outputRoot"))
            logger.info(f"Editor initialized with output root {self.output_root}")
        elif mutation.type == MutationType.RESTART:
            await self.shutdown(0)
        elif mutation.type == MutationType.REQUEST:
            await self._answer(mutation)
        else:
            await self._call(mutation)

    async def _call(self, action: EditorMutation) -> Any:
        result = self.handle_action(action)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _answer(self, request: EditorMutation) -> None:
        request_id = getattr(request, "requestId", None)
        responses = []
        try:
            for raw in getattr(request, "actions", None) or []:
                responses.append(await self._call(EditorMutation.model_validate(raw)))
            response: Any = responses[0] if len(responses) == 1 else responses
        except Exception as e:
            logger.exception(f"Request {request_id} failed")
            response = {"error": str(e)}
        await self.connection.send(
            EditorMutation(type=MutationType.RESPONSE, requestId=request_id, response=response)
        )

    async def shutdown(self, code: int = 0) -> None:
        for cache in self.working_sets:
            await cache.stop()
        self._exit_code = code
        self._done.set()

    async def serve(self) -> int:
        """连接宿主并运行，直到收到 RESTART。返回进程退出码。"""
        self.connection.listen(self.on_message)
        for cache in self.working_sets:
            cache.start()
        self.connection.start()
        logger.info("Editor server running")
        try:
            await self._done.wait()
        finally:
            await self.connection.close()
        return self._exit_code
