# pixelforge/editor/hub.py

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pixelforge.core.contracts import EditorMutation, EventSink, MutationType
from .buffer import RequestBuffer
from .channel import decode, encode

logger = logging.getLogger(__name__)

EditorListener = Callable[[EditorMutation], Union[bool, Awaitable[bool]]]


class BroadcastHub(EventSink):
    """
    编辑器侧 WebSocket 的路由中心。

    - 第一个发送 EDITOR_CONNECTED 的 socket 成为“编辑器”，后来者会替换它，旧连接被关闭。
    - 来自编辑器的消息作为 Event 广播给其他所有 socket，绝不回送给编辑器自己。
    - 来自其他 socket 的消息作为 Action 转发给编辑器；没有编辑器时进入缓冲区。
    """
    def __init__(self, output_root: Union[str, Path]):
        self.output_root = Path(output_root)
        self.active_connections: List[WebSocket] = []
        self.editor: Optional[WebSocket] = None
        self._buffer = RequestBuffer()
        self._editor_listeners: List[EditorListener] = []
        self._editor_attached = asyncio.Event()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def queued(self) -> List[EditorMutation]:
        return list(self._buffer)

    @property
    def has_editor(self) -> bool:
        return self.editor is not None

    def on_editor_message(self, listener: EditorListener) -> None:
        """注册编辑器消息的监听者。监听者返回 True 表示消息已被消费，不再广播。"""
        self._editor_listeners.append(listener)

    async def wait_for_editor(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._editor_attached.wait(), timeout=timeout)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    async def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        if websocket is self.editor:
            logger.warning("Editor disconnected.")
            self.editor = None
            self._editor_attached.clear()
            await self.broadcast(EditorMutation(type=MutationType.EDITOR_DISCONNECTED))

    async def handle_message(self, websocket: WebSocket, raw: str):
        if websocket not in self.active_connections:
            # 已被替换下线的编辑器
            return
        mutation = decode(raw)
        if mutation is None:
            return

        if mutation.type == MutationType.EDITOR_CONNECTED:
            await self._attach_editor(websocket)
            await self.broadcast(mutation, exclude=websocket)
        elif websocket is self.editor:
            if await self._consume(mutation):
                return
            await self.broadcast(mutation, exclude=websocket)
        else:
            await self.send_to_editor(mutation)

    async def _consume(self, mutation: EditorMutation) -> bool:
        consumed = False
        for listener in list(self._editor_listeners):
            try:
                result = listener(mutation)
                if inspect.isawaitable(result):
                    result = await result
                consumed = consumed or bool(result)
            except Exception:
                logger.exception(f"Editor listener failed while handling {mutation.type}")
        return consumed

    async def _attach_editor(self, websocket: WebSocket):
        previous = self.editor
        if previous is not None and previous is not websocket:
            logger.info("A new editor connected, replacing the previous one.")
            if previous in self.active_connections:
                self.active_connections.remove(previous)
            try:
                await previous.close()
            except Exception as e:
                logger.debug(f"Previous editor socket was already closed: {e}")
        self.editor = websocket
        self._editor_attached.set()

        pending = self._buffer.drain()
        logger.info(f"Editor connected, sending INIT and {len(pending)} queued request(s).")
        sent = 0
        try:
            await websocket.send_text(encode(
                EditorMutation(type=MutationType.INIT, outputRoot=str(self.output_root))
            ))
            for mutation in pending:
                await websocket.send_text(encode(mutation))
                sent += 1
        except Exception:
            # 连接在发送途中断开，未送达的部分放回缓冲区
            self._buffer.push_front(pending[sent:])
            raise

    async def send_to_editor(self, mutation: EditorMutation):
        if self.editor is not None:
            try:
                await self.editor.send_text(encode(mutation))
                return
            except Exception as e:
                logger.warning(f"Failed to forward {mutation.type} to editor: {e}")
        logger.debug(f"No editor attached, queueing {mutation.type}")
        self._buffer.push(mutation)

    async def send_control(self, mutation: EditorMutation) -> bool:
        """发送控制消息（如 RESTART）。控制消息从不缓冲，没有编辑器时返回 False。"""
        if self.editor is None:
            return False
        try:
            await self.editor.send_text(encode(mutation))
            return True
        except Exception as e:
            logger.warning(f"Failed to send {mutation.type} to editor: {e}")
            return False

    def discard_buffered(self, predicate: Callable[[EditorMutation], bool]) -> int:
        items = self._buffer.drain()
        kept = [m for m in items if not predicate(m)]
        removed = len(items) - len(kept)
        for m in kept:
            self._buffer.push(m)
        return removed

    async def broadcast(self, event: EditorMutation, exclude: Optional[WebSocket] = None):
        targets = [
            c for c in self.active_connections
            if c is not exclude and c is not self.editor
        ]
        if not targets:
            return
        logger.debug(f"Sending {event.type} event to {len(targets)} client(s).")
        message = encode(event)
        results = await asyncio.gather(*(c.send_text(message) for c in targets), return_exceptions=True)
        for conn, result in zip(targets, results):
            if isinstance(result, Exception) and conn in self.active_connections:
                logger.debug(f"Dropping client after failed send: {result}")
                self.active_connections.remove(conn)

    async def emit(self, event: EditorMutation) -> None:
        await self.broadcast(event)

    def router(self, path: str = "/ws") -> APIRouter:
        ws_router = APIRouter()

        @ws_router.websocket(path)
        async def websocket_endpoint(websocket: WebSocket):
            await self.connect(websocket)
            try:
                while True:
                    data = await websocket.receive_text()
                    await self.handle_message(websocket, data)
            except WebSocketDisconnect:
                pass
            finally:
                await self.disconnect(websocket)

        return ws_router
