# tests/conftest.py

import asyncio
import pytest
from typing import List, Optional


class FakeProcess:
    """模拟 asyncio.subprocess.Process：wait() 阻塞到 crash()/exit() 被调用。"""
    _next_pid = 1000

    def __init__(self, command, env=None, cwd=None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.command = list(command)
        self.env = env or {}
        self.cwd = cwd
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def exit(self, code: int = 0):
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def crash(self, code: int = 1):
        self.exit(code)

    def terminate(self):
        self.terminated = True
        self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    def __init__(self):
        self.processes: List[FakeProcess] = []

    async def __call__(self, *command, env=None, cwd=None) -> FakeProcess:
        process = FakeProcess(command, env=env, cwd=cwd)
        self.processes.append(process)
        return process

    @property
    def current(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()
