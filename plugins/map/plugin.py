# plugins/map/plugin.py

from pathlib import Path
from typing import List, Optional

from pixelforge.core.contracts import BuildContext, BuildPlugin, MutationType, Subscribe, WatchEvent
from pixelforge.core.errors import AssetValidationError
from pixelforge.core.hashing import file_hash, is_stale, versioned_url
from pixelforge.core.utils import ensure_path, load_json, remove_path, write_json
from pixelforge.core.watcher import coalesce_units
from .models import DATA_FILE, METADATA_FILE, MapMetadata, load_map_data, load_map_metadata, tile_at

MAP_SOURCES = {METADATA_FILE, DATA_FILE}


def is_map_source(path: Path) -> bool:
    return Path(path).name in MAP_SOURCES


class MapPaths:
    def __init__(self, ctx: BuildContext):
        self.maps = ctx.paths.asset_root / "maps"
        self.output = ctx.paths.output_root / "maps"
        self.manifests = ctx.paths.client_root / "maps"
        self.sprite_manifests = ctx.paths.client_root / "sprites"

    def map_output(self, name: str) -> Path:
        return self.output / f"{name}.json"

    def map_manifest(self, name: str) -> Path:
        return self.manifests / f"{name}.json"


class MapPlugin(BuildPlugin):
    """
    把 `assets/maps/<map>/` 编码成 `output/maps/<map>.json`。
    瓦片里的精灵名通过 sprite 插件生成的清单换算成索引，因此依赖 sprite。
    """
    depends: List[str] = ["sprite"]

    async def init(self, ctx: BuildContext) -> bool:
        paths = MapPaths(ctx)
        if not paths.maps.is_dir():
            return False
        ensure_path(paths.output)
        ensure_path(paths.manifests)
        return True

    async def clean(self, ctx: BuildContext) -> None:
        paths = MapPaths(ctx)
        await remove_path(paths.output)
        await remove_path(paths.manifests)

    def _map_names(self, paths: MapPaths) -> List[str]:
        return sorted(p.name for p in paths.maps.iterdir() if p.is_dir())

    async def build(self, ctx: BuildContext, incremental: bool) -> None:
        paths = MapPaths(ctx)
        for name in self._map_names(paths):
            if incremental and not is_stale(paths.maps / name, paths.map_output(name)):
                ctx.logger.debug(f"Map {name} is up to date.")
                continue
            await self.process_map(ctx, name)

    async def watch(self, ctx: BuildContext, subscribe: Subscribe) -> None:
        paths = MapPaths(ctx)

        async def on_sprite_change(events: List[WatchEvent]):
            await self.process_sprite_events(ctx, events)

        async def on_map_change(events: List[WatchEvent]):
            await self.process_events(ctx, events)

        ensure_path(paths.sprite_manifests)
        await subscribe(paths.sprite_manifests, on_sprite_change)
        await subscribe(paths.maps, on_map_change)

    async def process_sprite_events(self, ctx: BuildContext, events: List[WatchEvent]) -> None:
        """精灵表清单变化时，重建所有使用该精灵表的地图。"""
        paths = MapPaths(ctx)
        sheets = {e.path.stem for e in events if e.path.suffix == ".json"}
        if not sheets:
            return
        for name in self._map_names(paths):
            try:
                metadata = load_map_metadata(paths.maps, name)
            except AssetValidationError:
                continue
            if metadata.spriteSheet in sheets:
                if await self.process_map(ctx, name):
                    await ctx.emit({"type": MutationType.RELOAD_MAP, "map": name})

    async def process_events(self, ctx: BuildContext, events: List[WatchEvent]) -> None:
        paths = MapPaths(ctx)
        changed, deleted = coalesce_units(paths.maps, events, is_map_source)

        for name in sorted(deleted):
            ctx.log(f"Removing map {name}...")
            await remove_path(paths.map_output(name))
            await remove_path(paths.map_manifest(name))

        for name in sorted(changed):
            if not (paths.maps / name).is_dir():
                continue
            if await self.process_map(ctx, name):
                await ctx.emit({"type": MutationType.RELOAD_MAP, "map": name})

    async def _sprite_indexes(self, ctx: BuildContext, paths: MapPaths, metadata: MapMetadata) -> Optional[dict]:
        manifest = await load_json(paths.sprite_manifests / f"{metadata.spriteSheet}.json")
        if not manifest or "sprites" not in manifest:
            ctx.error(f"Invalid sprite sheet: {metadata.spriteSheet}")
            return None
        return {name: sprite["index"] for name, sprite in manifest["sprites"].items()}

    async def process_map(self, ctx: BuildContext, name: str) -> bool:
        paths = MapPaths(ctx)
        ctx.log(f"Building map {name}...")

        try:
            metadata = load_map_metadata(paths.maps, name)
            data = load_map_data(paths.maps, name)
        except AssetValidationError as e:
            ctx.error(f"Invalid map: {e}")
            return False

        ctx.log(f"Generating {metadata.width}x{metadata.height} map using sprite sheet {metadata.spriteSheet}...")
        indexes = await self._sprite_indexes(ctx, paths, metadata)
        if indexes is None:
            return False

        tiles: List[int] = []
        flags: List[int] = []
        for y in range(metadata.height):
            for x in range(metadata.width):
                tile = tile_at(data, x, y)
                if tile is None:
                    tiles.append(0)
                    flags.append(0)
                    continue
                index = indexes.get(tile.sprite)
                if not index:
                    ctx.error(f"Invalid sprite at ({x},{y}): {metadata.spriteSheet}:{tile.sprite}")
                    return False
                tiles.append(index)
                flags.append((1 if tile.walkable else 0) | (2 if tile.animated else 0))

        output_path = paths.map_output(name)
        await write_json(output_path, {
            **metadata.model_dump(),
            "tiles": tiles,
            "flags": flags,
        })
        digest = await file_hash(output_path)
        await write_json(paths.map_manifest(name), {
            **metadata.model_dump(),
            "url": versioned_url(f"/maps/{name}.json", digest),
        })
        ctx.log(f"Completed {name}.")
        return True
