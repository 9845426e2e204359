# pixelforge/editor/channel.py

import asyncio
import inspect
import json
import logging
from enum import Enum, auto
from typing import Any, Awaitable, Callable, List, Optional, Union

import websockets
from pydantic import ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_fixed
from websockets.exceptions import ConnectionClosed, WebSocketException

from pixelforge.config import RECONNECT_INTERVAL
from pixelforge.core.contracts import EditorMutation, MutationType
from .buffer import RequestBuffer

logger = logging.getLogger(__name__)

Listener = Callable[[EditorMutation], Union[None, Awaitable[None]]]


class ChannelState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    OPEN = auto()


def encode(mutation: EditorMutation) -> str:
    return mutation.model_dump_json()


def decode(raw: Union[str, bytes]) -> Optional[EditorMutation]:
    """无法解析或缺少 type 的消息返回 None。"""
    try:
        data = json.loads(raw)
        return EditorMutation.model_validate(data)
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.warning(f"Dropping malformed editor message: {e}")
        return None


class EditorChannel:
    """
    可自动重连的双工消息通道。

    Disconnected -> Connecting -> Open -> Disconnected -> [固定间隔] -> Connecting ...

    断开期间 send() 的消息进入 RequestBuffer，重新打开后按 FIFO 顺序先于任何新消息发出。
    Open -> Disconnected 时，监听者会收到一个合成的 EDITOR_DISCONNECTED 事件。
    """
    def __init__(
        self,
        url: str,
        hello: Optional[EditorMutation] = None,
        reconnect_interval: float = RECONNECT_INTERVAL,
        name: str = "editor",
    ):
        self.url = url
        self.name = name
        self._hello = hello
        self._reconnect_interval = reconnect_interval
        self._listeners: List[Listener] = []
        self._buffer = RequestBuffer()
        self._state = ChannelState.DISCONNECTED
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._opened = asyncio.Event()
        self._closing = False
        self.connections = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def listen(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unlisten(self, listener: Listener) -> None:
        self._listeners = [l for l in self._listeners if l is not listener]

    def start(self) -> None:
        if self._task is None:
            self._closing = False
            self._task = asyncio.create_task(self._run())

    async def wait_open(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._opened.wait(), timeout=timeout)

    async def send(self, mutation: Union[EditorMutation, dict]) -> None:
        if isinstance(mutation, dict):
            mutation = EditorMutation.model_validate(mutation)

        if self._state is ChannelState.OPEN and self._ws is not None:
            try:
                await self._ws.send(encode(mutation))
                return
            except ConnectionClosed:
                pass
        logger.debug(f"[{self.name}] Not connected, queueing {mutation.type}")
        self._buffer.push(mutation)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._state = ChannelState.DISCONNECTED
        self._opened.clear()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.debug(
            f"[{self.name}] Connection attempt {retry_state.attempt_number} to {self.url} failed "
            f"({retry_state.outcome.exception()}), retrying in {self._reconnect_interval}s"
        )

    async def _connect(self):
        async for attempt in AsyncRetrying(
            wait=wait_fixed(self._reconnect_interval),
            retry=retry_if_exception_type((OSError, WebSocketException, asyncio.TimeoutError)),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                self._state = ChannelState.CONNECTING
                return await websockets.connect(self.url)

    async def _run(self) -> None:
        while not self._closing:
            ws = await self._connect()
            try:
                await self._session(ws)
            finally:
                was_open = self._state is ChannelState.OPEN or self._opened.is_set()
                self._ws = None
                self._state = ChannelState.DISCONNECTED
                self._opened.clear()
            if was_open and not self._closing:
                logger.warning(f"[{self.name}] Disconnected from {self.url}, reconnecting...")
                await self._notify(EditorMutation(type=MutationType.EDITOR_DISCONNECTED))
            if not self._closing:
                await asyncio.sleep(self._reconnect_interval)

    async def _flush(self, ws) -> None:
        """在状态切到 OPEN 之前清空缓冲区，期间新 send 的消息同样进入缓冲区并在此一并发出。"""
        while self._buffer:
            pending = self._buffer.drain()
            logger.info(f"[{self.name}] Connected, sending {len(pending)} queued request(s)...")
            for i, mutation in enumerate(pending):
                try:
                    await ws.send(encode(mutation))
                except ConnectionClosed:
                    self._buffer.push_front(pending[i:])
                    raise

    async def _session(self, ws) -> None:
        self._ws = ws
        self.connections += 1
        try:
            if self._hello is not None:
                await ws.send(encode(self._hello))
            await self._flush(ws)
            self._state = ChannelState.OPEN
            self._opened.set()

            async for raw in ws:
                mutation = decode(raw)
                if mutation is not None:
                    await self._notify(mutation)
        except ConnectionClosed:
            pass
        finally:
            try:
                await ws.close()
            except Exception:
                logger.debug(f"[{self.name}] Error while closing socket", exc_info=True)

    async def _notify(self, mutation: EditorMutation) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(mutation)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"[{self.name}] Listener failed while handling {mutation.type}")
