# pixelforge/editor/worker.py
"""
编辑器子进程入口：

    python -m pixelforge.editor.worker <editor_server_root>

连接宿主的 /ws，声明自己是编辑器，然后运行游戏提供的 EditorServer。
"""

import asyncio
import importlib.util
import inspect
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import List, Optional

from pixelforge.config import Settings
from pixelforge.core.contracts import EditorMutation, MutationType
from .channel import EditorChannel
from .server import EditorServer

logger = logging.getLogger(__name__)

EDITOR_MODULE_NAME = "pixelforge_game_editor"
FACTORY_NAME = "create_editor"


def load_editor_module(root: Path) -> Optional[ModuleType]:
    entry = Path(root) / "__init__.py"
    if not entry.is_file():
        return None
    spec = importlib.util.spec_from_file_location(
        EDITOR_MODULE_NAME, entry, submodule_search_locations=[str(root)]
    )
    module = importlib.util.module_from_spec(spec)
    sys.modules[EDITOR_MODULE_NAME] = module
    spec.loader.exec_module(module)
    return module


async def create_server(root: Path, connection: EditorChannel) -> EditorServer:
    module = load_editor_module(root)
    factory = getattr(module, FACTORY_NAME, None) if module else None
    if factory is None:
        logger.warning(f"No {FACTORY_NAME}() found in {root}, running a bare editor server.")
        return EditorServer(connection)

    server = factory(connection)
    if inspect.isawaitable(server):
        server = await server
    return server


async def main(root: Path, settings: Optional[Settings] = None) -> int:
    settings = settings or Settings.from_env()
    connection = EditorChannel(
        f"ws://127.0.0.1:{settings.editor_port}/ws",
        hello=EditorMutation(type=MutationType.EDITOR_CONNECTED),
        reconnect_interval=settings.reconnect_interval,
        name="editor-server",
    )
    server = await create_server(root, connection)
    return await server.serve()


def run(argv: Optional[List[str]] = None) -> None:
    from plugins.core_logging import configure_logging

    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print("usage: python -m pixelforge.editor.worker <editor_server_root>", file=sys.stderr)
        sys.exit(2)

    configure_logging()
    sys.exit(asyncio.run(main(Path(argv[0]).resolve())))


if __name__ == "__main__":
    run()
