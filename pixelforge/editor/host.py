# pixelforge/editor/host.py

import logging
import sys
from typing import List, Optional

from fastapi import APIRouter

from pixelforge.config import DEVELOPMENT, ENV_EDITOR_PORT, ENV_MODE, PRODUCTION, Settings
from pixelforge.core.contracts import BuildPaths, EditorMutation, EventSink, MutationType, Subscription, WatchEvent
from pixelforge.core.errors import EditorUnavailableError
from pixelforge.core.watcher import FileWatcher
from .hub import BroadcastHub
from .rpc import PendingRequests, create_edit_router
from .supervisor import ProcessSupervisor, SpawnFunc

logger = logging.getLogger(__name__)

WORKER_MODULE = "pixelforge.editor.worker"
SOURCE_IGNORE = ["client/**", "__pycache__/**"]


class EditorServerHost(EventSink):
    """
    `run` 模式下的编辑器宿主：WebSocket 中心 + 受监管的编辑器进程 + RPC，
    并监听编辑器服务端源码，变化时重启编辑器进程。
    同时作为 DevState 的事件出口，插件通过 ctx.emit 推送的 RELOAD_* 事件从这里广播。
    """
    def __init__(
        self,
        paths: BuildPaths,
        port: int,
        settings: Optional[Settings] = None,
        watcher: Optional[FileWatcher] = None,
        spawn: Optional[SpawnFunc] = None,
        production: bool = False,
    ):
        self.paths = paths
        self.port = port
        self.settings = settings or Settings.from_env()
        self._watcher = watcher
        self._subscription: Optional[Subscription] = None

        self.hub = BroadcastHub(paths.output_root)
        self.requests = PendingRequests(self.hub.send_to_editor, timeout=self.settings.request_timeout_seconds)
        self.hub.on_editor_message(self.requests.resolve)

        env = {
            ENV_EDITOR_PORT: str(port),
            ENV_MODE: PRODUCTION if production else DEVELOPMENT,
        }
        env.update(self.settings.extra_env)
        self.supervisor = ProcessSupervisor(
            command=[sys.executable, "-m", WORKER_MODULE, str(paths.editor_server_root)],
            env=env,
            cwd=str(paths.game_root),
            on_exit=self._on_editor_exit,
            send_control=self.hub.send_control,
            spawn=spawn,
            restart_grace=self.settings.restart_grace_seconds,
            crash_backoff=self.settings.reconnect_interval,
        )

    @property
    def has_editor_source(self) -> bool:
        return self.paths.editor_server_root.is_dir()

    def routers(self) -> List[APIRouter]:
        return [self.hub.router(), create_edit_router(self.requests)]

    async def emit(self, event: EditorMutation) -> None:
        await self.hub.broadcast(event)

    async def start(self) -> None:
        if not self.has_editor_source:
            logger.info(f"No editor server at {self.paths.editor_server_root}, running without an editor.")
            return

        await self.supervisor.start()
        if self._watcher is not None:
            self._subscription = await self._watcher.subscribe(
                self.paths.editor_server_root,
                self._on_source_change,
                ignore=SOURCE_IGNORE,
            )

    async def _on_source_change(self, events: List[WatchEvent]) -> None:
        logger.debug(f"Editor source changed: {[str(e.path) for e in events]}")
        await self.supervisor.request_restart()

    def _on_editor_exit(self, code: Optional[int]) -> None:
        error = EditorUnavailableError()
        self.requests.fail_all(error)
        dropped = self.hub.discard_buffered(lambda m: m.type == MutationType.REQUEST)
        if dropped:
            logger.debug(f"Dropped {dropped} queued request(s) of the exited editor.")

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        await self.supervisor.stop()
        self.requests.fail_all(EditorUnavailableError("Editor stopped"))
