# plugins/map/tests/test_map_plugin.py

import json
import shutil
import pytest

from pixelforge.core.contracts import MutationType, WatchEvent
from pixelforge.core.errors import AssetValidationError
from plugins.map import MapPlugin
from plugins.map.models import load_map_metadata
from plugins.sprite import SpritePlugin

pytestmark = pytest.mark.asyncio

METADATA = {"width": 2, "height": 2, "startPosition": {"x": 0, "y": 0}, "spriteSheet": "tiles"}


def write_map(game_root, name: str, metadata=None, data=None):
    map_dir = game_root / "assets" / "maps" / name
    map_dir.mkdir(parents=True, exist_ok=True)
    (map_dir / "metadata.json").write_text(json.dumps(metadata if metadata is not None else METADATA))
    if data is not None:
        (map_dir / "data.json").write_text(json.dumps(data))
    return map_dir


async def build_sprites(ctx):
    plugin = SpritePlugin()
    await plugin.init(ctx)
    await plugin.build(ctx, incremental=False)


@pytest.fixture
def tile_sheet(game_root, write_sprite):
    sheet = game_root / "assets" / "sprites" / "tiles"
    write_sprite(sheet, "grass", 8, 8)
    write_sprite(sheet, "water", 8, 8, frames=2)
    return sheet


async def test_metadata_errors_name_file_and_constraint(game_root):
    write_map(game_root, "town", {"width": 0, "height": 2, "startPosition": {"x": 0, "y": 0}, "spriteSheet": "tiles"})

    with pytest.raises(AssetValidationError) as exc_info:
        load_map_metadata(game_root / "assets" / "maps", "town")

    message = str(exc_info.value)
    assert "town/metadata.json" in message
    assert "width" in message


async def test_missing_and_malformed_metadata(game_root):
    maps = game_root / "assets" / "maps"
    (maps / "empty").mkdir(parents=True)
    with pytest.raises(AssetValidationError, match="file is missing"):
        load_map_metadata(maps, "empty")

    (maps / "broken").mkdir()
    (maps / "broken" / "metadata.json").write_text("{oops")
    with pytest.raises(AssetValidationError, match="invalid JSON"):
        load_map_metadata(maps, "broken")


async def test_build_encodes_tiles_with_sprite_indexes(make_ctx, game_root, output_root, tile_sheet):
    write_map(game_root, "town", data={
        "0": {"0": {"0": {"sprite": "grass"}}},
        "1": {"1": {"0": {"sprite": "water", "walkable": False, "animated": True}}},
    })
    ctx = make_ctx()
    await build_sprites(ctx)
    plugin = MapPlugin()

    assert await plugin.init(ctx)
    await plugin.build(ctx, incremental=False)

    encoded = json.loads((output_root / "maps" / "town.json").read_text())
    # 行优先：(0,0) (1,0) (0,1) (1,1)
    assert encoded["tiles"] == [1, 0, 0, 2]
    assert encoded["flags"] == [1, 0, 0, 2]
    assert encoded["spriteSheet"] == "tiles"
    manifest = json.loads((game_root / "client" / "maps" / "town.json").read_text())
    assert manifest["url"].startswith("/maps/town.json?v=")
    assert ctx.logger.error_count == 0


async def test_unknown_sprite_is_an_error(make_ctx, game_root, output_root, tile_sheet):
    write_map(game_root, "town", data={"1": {"0": {"0": {"sprite": "lava"}}}})
    ctx = make_ctx()
    await build_sprites(ctx)
    plugin = MapPlugin()
    await plugin.init(ctx)

    await plugin.build(ctx, incremental=False)

    assert ctx.logger.error_count == 1
    assert not (output_root / "maps" / "town.json").exists()


async def test_missing_sprite_sheet_is_an_error(make_ctx, game_root, caplog):
    write_map(game_root, "town", data={})
    ctx = make_ctx()
    plugin = MapPlugin()
    await plugin.init(ctx)

    with caplog.at_level("ERROR"):
        await plugin.build(ctx, incremental=False)

    assert ctx.logger.error_count == 1
    assert "Invalid sprite sheet: tiles" in caplog.text


async def test_map_change_emits_reload(make_ctx, game_root, sink, tile_sheet):
    map_dir = write_map(game_root, "town", data={})
    ctx = make_ctx(watch=True)
    await build_sprites(ctx)
    plugin = MapPlugin()
    await plugin.init(ctx)

    await plugin.process_events(ctx, [
        WatchEvent(type="update", path=map_dir / "metadata.json"),
        WatchEvent(type="update", path=map_dir / "data.json"),
        WatchEvent(type="update", path=map_dir / "notes.txt"),
    ])

    reloads = sink.of_type(MutationType.RELOAD_MAP)
    assert [r.map for r in reloads] == ["town"]


async def test_sprite_manifest_change_rebuilds_dependent_maps(make_ctx, game_root, sink, output_root, tile_sheet):
    write_map(game_root, "town", data={})
    write_map(game_root, "cave", {**METADATA, "spriteSheet": "rocks"}, data={})
    ctx = make_ctx(watch=True)
    await build_sprites(ctx)
    plugin = MapPlugin()
    await plugin.init(ctx)

    manifest = game_root / "client" / "sprites" / "tiles.json"
    await plugin.process_sprite_events(ctx, [WatchEvent(type="update", path=manifest)])

    assert [r.map for r in sink.of_type(MutationType.RELOAD_MAP)] == ["town"]
    assert (output_root / "maps" / "town.json").exists()
    assert not (output_root / "maps" / "cave.json").exists()


async def test_watch_subscribes_to_maps_and_sprite_manifests(make_ctx, game_root, recording_subscribe):
    write_map(game_root, "town")
    ctx = make_ctx(watch=True)
    await MapPlugin().watch(ctx, recording_subscribe)

    assert set(recording_subscribe.callbacks) == {
        ctx.paths.client_root / "sprites",
        ctx.paths.asset_root / "maps",
    }


async def test_removing_map_directory_removes_outputs(make_ctx, game_root, output_root, sink, tile_sheet):
    map_dir = write_map(game_root, "town", data={})
    ctx = make_ctx(watch=True)
    await build_sprites(ctx)
    plugin = MapPlugin()
    await plugin.init(ctx)
    await plugin.build(ctx, incremental=False)
    assert (output_root / "maps" / "town.json").exists()

    shutil.rmtree(map_dir)
    await plugin.process_events(ctx, [
        WatchEvent(type="delete", path=map_dir),
        WatchEvent(type="delete", path=map_dir / "data.json"),
        WatchEvent(type="delete", path=map_dir / "metadata.json"),
    ])

    assert not (output_root / "maps" / "town.json").exists()
    assert not (game_root / "client" / "maps" / "town.json").exists()
    assert sink.of_type(MutationType.RELOAD_MAP) == []
