# pixelforge/app.py
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from pixelforge.editor.host import EditorServerHost

logger = logging.getLogger(__name__)

StartupFunc = Callable[[], Awaitable[None]]


def create_app(
    host: Optional[EditorServerHost] = None,
    serve_root: Optional[Path] = None,
    on_startup: Optional[StartupFunc] = None,
) -> FastAPI:
    """
    应用工厂函数。
    - host: run 模式下的编辑器宿主，提供 /ws 与 POST /edit
    - serve_root: 以静态文件形式提供构建产物
    - on_startup: 服务就绪后在后台执行的任务（例如带 watch 的构建）
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- 启动阶段 ---
        app.state.host = host
        if host is not None:
            await host.start()

        startup_task: Optional[asyncio.Task] = None
        if on_startup is not None:
            startup_task = asyncio.create_task(on_startup())
        app.state.startup_task = startup_task

        logger.info("--- pixelforge server ready ---")
        yield
        # --- 关闭阶段 ---
        logger.info("--- pixelforge server shutting down ---")
        if startup_task is not None and not startup_task.done():
            startup_task.cancel()
            await asyncio.gather(startup_task, return_exceptions=True)
        if host is not None:
            await host.stop()

    app = FastAPI(title="pixelforge", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if host is not None:
        for router in host.routers():
            app.include_router(router)
            logger.debug(f"Added router: tags={router.tags}")

    if serve_root is not None:
        # 静态挂载放在最后，避免遮住 /ws 与 /edit
        app.mount("/", StaticFiles(directory=str(serve_root), html=True, check_dir=False), name="output")

    return app
