# plugins/sprite/plugin.py

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

from pixelforge.core.contracts import BuildContext, BuildPlugin, MutationType, Subscribe, WatchEvent
from pixelforge.core.hashing import file_hash, is_stale, versioned_url
from pixelforge.core.utils import ensure_path, remove_path, write_json
from pixelforge.core.watcher import coalesce_units
from .packer import is_sprite_source, pack_sheet


class SpritePaths:
    def __init__(self, ctx: BuildContext):
        self.sprites = ctx.paths.asset_root / "sprites"
        self.output = ctx.paths.output_root / "sprites"
        self.manifests = ctx.paths.client_root / "sprites"

    def sheet_image(self, sheet: str) -> Path:
        return self.output / f"{sheet}.png"

    def sheet_manifest(self, sheet: str) -> Path:
        return self.manifests / f"{sheet}.json"


class SpritePlugin(BuildPlugin):
    """`assets/sprites/<sheet>/` 下的每个目录打包成一张精灵表。"""
    depends: List[str] = []

    async def init(self, ctx: BuildContext) -> bool:
        paths = SpritePaths(ctx)
        if not paths.sprites.is_dir():
            return False
        ensure_path(paths.output)
        ensure_path(paths.manifests)
        return True

    async def clean(self, ctx: BuildContext) -> None:
        paths = SpritePaths(ctx)
        await remove_path(paths.output)
        await remove_path(paths.manifests)

    async def build(self, ctx: BuildContext, incremental: bool) -> None:
        paths = SpritePaths(ctx)
        for sheet_dir in sorted(paths.sprites.iterdir()):
            if not sheet_dir.is_dir():
                continue
            if incremental and not is_stale(sheet_dir, paths.sheet_image(sheet_dir.name)):
                ctx.logger.debug(f"Sprite sheet {sheet_dir.name} is up to date.")
                continue
            await self.process_sheet(ctx, sheet_dir.name)

    async def watch(self, ctx: BuildContext, subscribe: Subscribe) -> None:
        paths = SpritePaths(ctx)

        async def on_change(events: List[WatchEvent]):
            await self.process_events(ctx, events)

        await subscribe(paths.sprites, on_change)

    async def process_events(self, ctx: BuildContext, events: List[WatchEvent]) -> None:
        paths = SpritePaths(ctx)
        changed, deleted = coalesce_units(paths.sprites, events, is_sprite_source)

        for sheet in sorted(deleted):
            ctx.log(f"Removing sprite sheet {sheet}...")
            await remove_path(paths.sheet_image(sheet))
            await remove_path(paths.sheet_manifest(sheet))

        for sheet in sorted(changed):
            if not (paths.sprites / sheet).is_dir():
                continue
            manifest = await self.process_sheet(ctx, sheet)
            if manifest is not None:
                await ctx.emit({"type": MutationType.RELOAD_SPRITESHEET, "spriteSheet": manifest})

    async def process_sheet(self, ctx: BuildContext, sheet: str) -> Optional[Dict[str, Any]]:
        paths = SpritePaths(ctx)
        image_path = paths.sheet_image(sheet)
        ctx.log(f"Building sprite sheet {sheet}...")

        layout, errors = await asyncio.to_thread(pack_sheet, paths.sprites / sheet, image_path, ctx.production)
        for error in errors:
            ctx.error(str(error))
        if layout is None:
            ctx.warn(f"Sprite sheet {sheet} has no valid sprites, skipping.")
            await remove_path(image_path)
            await remove_path(paths.sheet_manifest(sheet))
            return None

        digest = await file_hash(image_path)
        manifest = {
            "name": layout.name,
            "width": layout.width,
            "height": layout.height,
            "sprites": {name: sprite.model_dump() for name, sprite in layout.sprites.items()},
            "indexes": layout.indexes,
            "url": versioned_url(f"/sprites/{sheet}.png", digest),
        }
        await write_json(paths.sheet_manifest(sheet), manifest)
        ctx.log(f"Completed {sheet}.")
        return manifest
