# pixelforge/editor/rpc.py

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Body, HTTPException

from pixelforge.config import REQUEST_TIMEOUT_SECONDS
from pixelforge.core.contracts import EditorMutation, MutationType
from pixelforge.core.errors import EditorUnavailableError

logger = logging.getLogger(__name__)

SendFunc = Callable[[EditorMutation], Awaitable[Any]]


class PendingRequests:
    """
    基于关联 ID 的请求/响应。每个请求带一个 requestId 发给编辑器，
    编辑器以 RESPONSE{requestId, response} 应答。编辑器进程退出时，
    所有在途请求以可重试的 EditorUnavailableError 失败。
    """
    def __init__(self, send: SendFunc, timeout: float = REQUEST_TIMEOUT_SECONDS):
        self._send = send
        self._timeout = timeout
        self._pending: Dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    async def submit(self, actions: List[Dict[str, Any]], timeout: Optional[float] = None) -> Any:
        request_id = str(uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(EditorMutation(type=MutationType.REQUEST, requestId=request_id, actions=actions))
            return await asyncio.wait_for(future, timeout=timeout or self._timeout)
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, mutation: EditorMutation) -> bool:
        """作为编辑器消息监听者使用。返回 True 表示该消息是 RPC 响应，已被消费。"""
        if mutation.type != MutationType.RESPONSE:
            return False
        request_id = getattr(mutation, "requestId", None)
        future = self._pending.get(request_id)
        if future is None:
            logger.debug(f"Ignoring response for unknown request '{request_id}'")
            return True
        if not future.done():
            future.set_result(getattr(mutation, "response", None))
        return True

    def fail_all(self, exc: Exception) -> int:
        failed = 0
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(exc)
                failed += 1
        self._pending.clear()
        if failed:
            logger.warning(f"Failed {failed} in-flight editor request(s): {exc}")
        return failed


def create_edit_router(requests: PendingRequests) -> APIRouter:
    router = APIRouter(tags=["Editor"])

    @router.post("/edit")
    async def edit(actions: List[Dict[str, Any]] = Body(...)):
        try:
            return await requests.submit(actions)
        except EditorUnavailableError as e:
            raise HTTPException(status_code=500, detail=str(e))
        except asyncio.TimeoutError:
            raise HTTPException(status_code=504, detail="Editor request timed out")

    return router
