# plugins/static/plugin.py

import asyncio
import shutil
from pathlib import Path
from typing import Dict, List

from pixelforge.core.contracts import BuildContext, BuildPlugin, MutationType, Subscribe, WatchEvent
from pixelforge.core.hashing import ContentCache, versioned_url
from pixelforge.core.utils import ensure_path, remove_path


class StaticPlugin(BuildPlugin):
    """
    `assets/static` 原样发布到 `output/static`。
    开发模式下用符号链接（更快，修改即时可见），生产模式下复制。
    监听时按内容摘要去重：只改了 mtime 的保存不会触发 RELOAD_STATIC。
    """
    depends: List[str] = []

    def __init__(self):
        self.hashes = ContentCache()

    @staticmethod
    def _source(ctx: BuildContext) -> Path:
        return ctx.paths.asset_root / "static"

    @staticmethod
    def _target(ctx: BuildContext) -> Path:
        return ctx.paths.output_root / "static"

    async def init(self, ctx: BuildContext) -> bool:
        if not self._source(ctx).is_dir():
            return False
        ensure_path(ctx.paths.output_root)
        return True

    async def clean(self, ctx: BuildContext) -> None:
        await remove_path(self._target(ctx))

    async def build(self, ctx: BuildContext, incremental: bool) -> None:
        source, target = self._source(ctx), self._target(ctx)
        if target.is_symlink() or (target.exists() and not ctx.production):
            await remove_path(target)

        if ctx.production:
            ctx.log("Copying static resources...")
            await asyncio.to_thread(shutil.copytree, source, target, dirs_exist_ok=True)
        else:
            ctx.log("Symlinking static resources...")
            target.symlink_to(source, target_is_directory=True)

    async def watch(self, ctx: BuildContext, subscribe: Subscribe) -> None:
        async def on_change(events: List[WatchEvent]):
            await self.process_events(ctx, events)

        await subscribe(self._source(ctx), on_change)

    async def process_events(self, ctx: BuildContext, events: List[WatchEvent]) -> None:
        source, target = self._source(ctx), self._target(ctx)
        resources: Dict[str, str] = {}
        for e in events:
            try:
                relative = e.path.relative_to(source)
            except ValueError:
                continue
            url_path = "/" + relative.as_posix()

            if e.type == "delete":
                self.hashes.invalidate(e.path)
                if ctx.production:
                    await remove_path(target / relative)
                continue

            if not e.path.is_file():
                continue
            if not await self.hashes.changed(e.path):
                ctx.logger.debug(f"{url_path} is unchanged, skipping.")
                continue
            if ctx.production:
                (target / relative).parent.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(shutil.copy2, e.path, target / relative)
            resources[url_path] = versioned_url(f"/static{url_path}", await self.hashes.get(e.path))

        if resources:
            await ctx.emit({"type": MutationType.RELOAD_STATIC, "resources": resources})
