# pixelforge/editor/supervisor.py

import asyncio
import inspect
import logging
import os
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from pixelforge.config import CRASH_LOOP_SECONDS, RECONNECT_INTERVAL, RESTART_GRACE_SECONDS
from pixelforge.core.contracts import EditorMutation, MutationType

logger = logging.getLogger(__name__)

SpawnFunc = Callable[..., Awaitable[Any]]
ExitCallback = Callable[[Optional[int]], Any]
ControlSender = Callable[[EditorMutation], Awaitable[bool]]


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    RESTARTING = "restarting"


class SupervisedProcess(BaseModel):
    handle: Any
    restart_on_exit: bool = True
    last_start_time: float
    generation: int
    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.handle, "pid", None)


async def default_spawn(*command: str, env: Optional[Dict[str, str]] = None, cwd: Optional[str] = None):
    return await asyncio.create_subprocess_exec(*command, env=env, cwd=cwd)


class ProcessSupervisor:
    """
    让一个子进程始终在线。进程因任何原因退出都会被重新拉起，
    直到 stop() 被调用。请求重启时先礼貌地发送 RESTART，
    宽限期内进程没有自行退出再强制终止。

    崩溃后立即重启；只有进程启动后不到 `min_uptime` 秒就退出（崩溃循环）时，
    才先等待 `crash_backoff` 秒。
    """
    def __init__(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        on_exit: Optional[ExitCallback] = None,
        send_control: Optional[ControlSender] = None,
        spawn: Optional[SpawnFunc] = None,
        restart_grace: float = RESTART_GRACE_SECONDS,
        crash_backoff: float = RECONNECT_INTERVAL,
        min_uptime: float = CRASH_LOOP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "editor",
    ):
        self.command = list(command)
        self.env = env
        self.cwd = cwd
        self.name = name
        self._on_exit = on_exit
        self._send_control = send_control
        self._spawn = spawn or default_spawn
        self._restart_grace = restart_grace
        self._crash_backoff = crash_backoff
        self._min_uptime = min_uptime
        self._clock = clock

        self.state = SupervisorState.STOPPED
        self.process: Optional[SupervisedProcess] = None
        self._generation = 0
        self._stopping = False
        self._monitor: Optional[asyncio.Task] = None
        self._spawned = asyncio.Condition()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_running(self) -> bool:
        return self.state is not SupervisorState.STOPPED

    async def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        await self._spawn_process()

    async def _spawn_process(self) -> None:
        env = dict(os.environ)
        if self.env:
            env.update(self.env)
        handle = await self._spawn(*self.command, env=env, cwd=self.cwd)

        self._generation += 1
        self.process = SupervisedProcess(
            handle=handle,
            last_start_time=self._clock(),
            generation=self._generation,
        )
        self.state = SupervisorState.RUNNING
        logger.info(f"[{self.name}] Started process (pid={self.process.pid}, generation={self._generation})")
        self._monitor = asyncio.create_task(self._watch(self.process))

        async with self._spawned:
            self._spawned.notify_all()

    async def _watch(self, process: SupervisedProcess) -> None:
        code = await process.handle.wait()

        if self._stopping or not process.restart_on_exit:
            logger.info(f"[{self.name}] Process exited with code {code}")
            return

        if self.state is SupervisorState.RESTARTING:
            logger.info(f"[{self.name}] Process exited for restart (code {code})")
        else:
            logger.warning(f"[{self.name}] Process exited unexpectedly with code {code}, restarting...")

        await self._notify_exit(code)

        if self.state is not SupervisorState.RESTARTING and self._crash_backoff > 0:
            uptime = self._clock() - process.last_start_time
            if uptime < self._min_uptime:
                logger.warning(f"[{self.name}] Process died after {uptime:.1f}s, waiting {self._crash_backoff}s before respawn")
                await asyncio.sleep(self._crash_backoff)
        if self._stopping:
            return

        try:
            await self._spawn_process()
        except Exception:
            logger.exception(f"[{self.name}] Failed to respawn process")
            self.state = SupervisorState.STOPPED

    async def _notify_exit(self, code: Optional[int]) -> None:
        if self._on_exit is None:
            return
        try:
            result = self._on_exit(code)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"[{self.name}] Exit handler failed")

    async def wait_for_generation(self, generation: int, timeout: Optional[float] = None) -> None:
        async with self._spawned:
            await asyncio.wait_for(
                self._spawned.wait_for(lambda: self._generation >= generation),
                timeout=timeout,
            )

    async def request_restart(self) -> None:
        """先发送 RESTART 让进程自行落盘退出，超过宽限期再强制终止。"""
        if self.process is None or self._stopping:
            return
        if self.state is SupervisorState.RESTARTING:
            logger.debug(f"[{self.name}] Restart already in progress")
            return

        current = self.process
        self.state = SupervisorState.RESTARTING
        logger.info(f"[{self.name}] Source changed, restarting...")

        asked = False
        if self._send_control is not None:
            asked = await self._send_control(EditorMutation(type=MutationType.RESTART))

        if asked:
            try:
                await self.wait_for_generation(current.generation + 1, timeout=self._restart_grace)
                return
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] Process did not exit within {self._restart_grace}s, terminating")

        self._terminate(current)

    def _terminate(self, process: SupervisedProcess) -> None:
        if getattr(process.handle, "returncode", None) is not None:
            return
        try:
            process.handle.terminate()
        except ProcessLookupError:
            pass

    async def stop(self, timeout: float = 5.0) -> None:
        self._stopping = True
        process = self.process
        if process is not None:
            process.restart_on_exit = False
            self._terminate(process)
            try:
                await asyncio.wait_for(process.handle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] Process didn't stop gracefully, killing...")
                try:
                    process.handle.kill()
                except ProcessLookupError:
                    pass
                await process.handle.wait()
        if self._monitor is not None:
            await asyncio.gather(self._monitor, return_exceptions=True)
            self._monitor = None
        self.process = None
        self.state = SupervisorState.STOPPED
