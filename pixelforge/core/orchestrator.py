# pixelforge/core/orchestrator.py

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from pixelforge.core.contracts import BuildContext, Subscribe
from pixelforge.core.errors import PluginLifecycleError
from pixelforge.core.hashing import BuildInfo
from pixelforge.core.registry import LoadedPlugin
from pixelforge.core.utils import remove_path

logger = logging.getLogger(__name__)


class BuildResult(BaseModel):
    success: bool
    error_count: int
    ran: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    watching: List[str] = Field(default_factory=list)
    forced_clean: bool = False


class BuildOrchestrator:
    """
    按依赖顺序驱动每个插件的生命周期：
    Start -> (clean)? -> (init -> build)? -> (watch)? -> Done

    插件之间严格串行执行。单个插件的失败只会被记录和计数，不会阻塞后续插件。
    """
    def __init__(
        self,
        ctx: BuildContext,
        plugins: List[LoadedPlugin],
        subscribe: Optional[Subscribe] = None,
    ):
        self._ctx = ctx
        self._plugins = plugins
        self._subscribe = subscribe

    @property
    def context(self) -> BuildContext:
        return self._ctx

    async def run(self) -> BuildResult:
        ctx = self._ctx
        result = BuildResult(success=False, error_count=0)

        if ctx.build and not ctx.clean and BuildInfo.needs_clean(ctx.paths.game_root, ctx.production):
            mode = "production" if ctx.production else "development"
            ctx.logger.warn(f"Build mode changed to {mode} since the last run, forcing a clean build.")
            ctx.clean = True
            result.forced_clean = True

        if ctx.watch and self._subscribe is None:
            logger.warning("Watch mode requested without a file watcher, plugins will not be watched.")

        for loaded in self._plugins:
            await self._run_plugin(loaded, result)

        if ctx.clean and not ctx.build:
            if await remove_path(ctx.paths.output_root):
                ctx.logger.log(f"Removed {ctx.paths.output_root}")

        if ctx.build:
            BuildInfo(production=ctx.production).save(ctx.paths.game_root)

        result.error_count = ctx.logger.error_count
        result.success = result.error_count == 0
        return result

    async def _run_plugin(self, loaded: LoadedPlugin, result: BuildResult) -> None:
        ctx = self._ctx
        name = loaded.name
        plugin = loaded.plugin
        pctx = ctx.scoped(name)

        if ctx.clean:
            try:
                await plugin.clean(pctx)
            except Exception as e:
                # 清理是尽力而为的，失败不计入错误
                pctx.logger.warn(f"Clean failed: {e}")

        if not ctx.build:
            return

        try:
            applicable = await plugin.init(pctx)
        except Exception as e:
            pctx.logger.exception(str(PluginLifecycleError(name, "init", e)), e)
            result.failed.append(name)
            return

        if not applicable:
            logger.debug(f"Plugin '{name}' is not applicable, skipping build and watch.")
            result.skipped.append(name)
            return

        result.ran.append(name)
        try:
            await plugin.build(pctx, not ctx.clean)
        except Exception as e:
            pctx.logger.exception(str(PluginLifecycleError(name, "build", e)), e)
            result.failed.append(name)

        if ctx.watch and self._subscribe is not None:
            try:
                await plugin.watch(pctx, self._subscribe)
                result.watching.append(name)
            except Exception as e:
                pctx.logger.exception(str(PluginLifecycleError(name, "watch", e)), e)
