# tests/test_supervisor.py

import asyncio
import pytest

from pixelforge.config import ENV_EDITOR_PORT, ENV_MODE, Settings
from pixelforge.core.contracts import BuildPaths, EditorMutation, MutationType
from pixelforge.core.errors import EditorUnavailableError
from pixelforge.editor.host import EditorServerHost
from pixelforge.editor.supervisor import ProcessSupervisor, SupervisorState

pytestmark = pytest.mark.asyncio


async def wait_until(predicate, timeout: float = 2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout=timeout)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestProcessSupervisor:

    async def test_crash_is_respawned_and_reported(self, spawner):
        exits = []
        supervisor = ProcessSupervisor(
            ["python", "-m", "worker"], env={"A": "1"}, cwd="/game",
            on_exit=exits.append, spawn=spawner, crash_backoff=0,
        )
        await supervisor.start()
        first = spawner.current
        assert first.env["A"] == "1"
        assert first.cwd == "/game"

        first.crash(3)
        await supervisor.wait_for_generation(2, timeout=1)

        assert exits == [3]
        assert len(spawner.processes) == 2
        assert supervisor.state is SupervisorState.RUNNING
        assert supervisor.process.pid == spawner.current.pid
        await supervisor.stop()

    async def test_crash_after_steady_run_respawns_without_waiting(self, spawner):
        clock = FakeClock()
        supervisor = ProcessSupervisor(["worker"], spawn=spawner, clock=clock)
        await supervisor.start()

        clock.now = 60.0
        spawner.current.crash(1)
        # 默认的崩溃退避（1s）不适用于已经稳定运行过的进程
        await supervisor.wait_for_generation(2, timeout=0.5)
        assert len(spawner.processes) == 2
        await supervisor.stop()

    async def test_crash_loop_waits_before_respawn(self, spawner):
        clock = FakeClock()
        supervisor = ProcessSupervisor(["worker"], spawn=spawner, clock=clock, crash_backoff=0.2)
        await supervisor.start()

        spawner.current.crash(1)
        await asyncio.sleep(0.05)
        assert len(spawner.processes) == 1

        await supervisor.wait_for_generation(2, timeout=1)
        await supervisor.stop()

    async def test_async_exit_handler_is_awaited(self, spawner):
        seen = asyncio.Event()

        async def on_exit(code):
            seen.set()

        supervisor = ProcessSupervisor(["worker"], on_exit=on_exit, spawn=spawner, crash_backoff=0)
        await supervisor.start()
        spawner.current.crash()
        await asyncio.wait_for(seen.wait(), timeout=1)
        await supervisor.stop()

    async def test_graceful_restart_lets_process_exit_itself(self, spawner):
        controls = []

        async def send_control(mutation: EditorMutation) -> bool:
            controls.append(mutation.type)
            spawner.current.exit(0)
            return True

        supervisor = ProcessSupervisor(["worker"], send_control=send_control, spawn=spawner, crash_backoff=5)
        await supervisor.start()
        first = spawner.current

        await supervisor.request_restart()

        assert controls == [MutationType.RESTART]
        assert not first.terminated
        assert supervisor.generation == 2
        assert supervisor.state is SupervisorState.RUNNING
        await supervisor.stop()

    async def test_restart_without_editor_connection_terminates(self, spawner):
        async def send_control(mutation: EditorMutation) -> bool:
            return False

        supervisor = ProcessSupervisor(["worker"], send_control=send_control, spawn=spawner, crash_backoff=5)
        await supervisor.start()
        first = spawner.current

        await supervisor.request_restart()
        await supervisor.wait_for_generation(2, timeout=1)

        assert first.terminated
        await supervisor.stop()

    async def test_restart_grace_period_expires(self, spawner):
        async def send_control(mutation: EditorMutation) -> bool:
            return True

        supervisor = ProcessSupervisor(
            ["worker"], send_control=send_control, spawn=spawner, restart_grace=0.05, crash_backoff=5,
        )
        await supervisor.start()
        first = spawner.current

        await supervisor.request_restart()
        await supervisor.wait_for_generation(2, timeout=1)

        assert first.terminated
        await supervisor.stop()

    async def test_stop_does_not_respawn(self, spawner):
        exits = []
        supervisor = ProcessSupervisor(["worker"], on_exit=exits.append, spawn=spawner, crash_backoff=0)
        await supervisor.start()

        await supervisor.stop()

        assert spawner.current.terminated
        assert len(spawner.processes) == 1
        assert exits == []
        assert supervisor.state is SupervisorState.STOPPED
        await supervisor.request_restart()
        assert len(spawner.processes) == 1


@pytest.fixture
def host_factory(tmp_path, spawner):
    game = tmp_path / "game"
    (game / "editor" / "server").mkdir(parents=True)
    paths = BuildPaths.from_game_root(game, tmp_path / "out")
    settings = Settings(reconnect_interval=0, restart_grace_seconds=0.05, request_timeout_seconds=5)

    def _factory(**kwargs) -> EditorServerHost:
        return EditorServerHost(paths, port=8123, settings=settings, spawn=spawner, **kwargs)

    return _factory


async def next_request(host: EditorServerHost) -> EditorMutation:
    await wait_until(lambda: any(m.type == MutationType.REQUEST for m in host.hub.queued))
    return [m for m in host.hub.queued if m.type == MutationType.REQUEST][-1]


class TestEditorServerHost:

    async def test_worker_command_and_environment(self, host_factory, spawner):
        host = host_factory()
        await host.start()
        process = spawner.current

        assert process.command[1:3] == ["-m", "pixelforge.editor.worker"]
        assert process.command[-1] == str(host.paths.editor_server_root)
        assert process.env[ENV_EDITOR_PORT] == "8123"
        assert process.env[ENV_MODE] == "development"
        assert process.cwd == str(host.paths.game_root)
        await host.stop()

    async def test_no_editor_directory_means_no_process(self, tmp_path, spawner):
        paths = BuildPaths.from_game_root(tmp_path / "bare", tmp_path / "out")
        host = EditorServerHost(paths, port=8000, settings=Settings(), spawn=spawner)
        await host.start()
        assert spawner.processes == []
        await host.stop()

    async def test_crash_fails_in_flight_requests_then_recovers(self, host_factory, spawner):
        host = host_factory()
        await host.start()

        in_flight = asyncio.create_task(host.requests.submit([{"type": "PAINT", "x": 1}]))
        await next_request(host)

        spawner.current.crash(1)
        with pytest.raises(EditorUnavailableError) as exc_info:
            await asyncio.wait_for(in_flight, timeout=1)
        assert exc_info.value.retryable
        assert host.hub.buffered == 0

        await host.supervisor.wait_for_generation(2, timeout=1)

        retry = asyncio.create_task(host.requests.submit([{"type": "PAINT", "x": 1}]))
        request = await next_request(host)
        host.requests.resolve(EditorMutation(
            type=MutationType.RESPONSE, requestId=request.requestId, response={"painted": True},
        ))
        assert await asyncio.wait_for(retry, timeout=1) == {"painted": True}
        await host.stop()

    async def test_source_change_requests_restart(self, host_factory, spawner, recording_subscribe):
        class SubscribeOnly:
            subscribe = recording_subscribe

        host = host_factory(watcher=SubscribeOnly())
        await host.start()
        root = host.paths.editor_server_root
        assert recording_subscribe.ignores[root] == ["client/**", "__pycache__/**"]

        await recording_subscribe.callbacks[root]([])
        await host.supervisor.wait_for_generation(2, timeout=1)

        assert spawner.processes[0].terminated
        await host.stop()
        assert recording_subscribe.closed == [root]

    async def test_emit_broadcasts(self, host_factory):
        host = host_factory()
        sent = []

        async def broadcast(event, exclude=None):
            sent.append(event.type)

        host.hub.broadcast = broadcast
        await host.emit(EditorMutation(type=MutationType.RELOAD_MAP))
        assert sent == [MutationType.RELOAD_MAP]
