# plugins/map/models.py

import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pixelforge.core.errors import AssetValidationError

METADATA_FILE = "metadata.json"
DATA_FILE = "data.json"


class Position(BaseModel):
    x: int
    y: int
    model_config = ConfigDict(extra="forbid", strict=True)


class MapMetadata(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    startPosition: Position
    spriteSheet: str = Field(min_length=1)
    model_config = ConfigDict(extra="forbid", strict=True)


class MapTile(BaseModel):
    sprite: str
    walkable: bool = True
    animated: bool = False
    triggerId: int = 0


# data.json: { x: { y: { layer: MapTile } } }
MapData = Dict[str, Dict[str, Dict[str, MapTile]]]


def _describe(error: ValidationError) -> str:
    parts: List[str] = []
    for e in error.errors():
        location = ".".join(str(p) for p in e["loc"]) or "<root>"
        parts.append(f"{location}: {e['msg']}")
    return "; ".join(parts)


def load_map_metadata(maps_root: Path, map_name: str) -> MapMetadata:
    """读取并校验 metadata.json。任何问题都以 AssetValidationError 报告，指明文件和约束。"""
    path = Path(maps_root) / map_name / METADATA_FILE
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise AssetValidationError(path, "file is missing")
    except json.JSONDecodeError as e:
        raise AssetValidationError(path, f"invalid JSON ({e.msg} at line {e.lineno})")

    try:
        return MapMetadata.model_validate(raw)
    except ValidationError as e:
        raise AssetValidationError(path, _describe(e))


def load_map_data(maps_root: Path, map_name: str) -> MapData:
    """读取 data.json；文件不存在时视为空地图。"""
    path = Path(maps_root) / map_name / DATA_FILE
    if not path.is_file():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return {
            x: {y: {z: MapTile.model_validate(tile) for z, tile in layers.items()} for y, layers in column.items()}
            for x, column in raw.items()
        }
    except (json.JSONDecodeError, ValidationError, AttributeError) as e:
        raise AssetValidationError(path, f"invalid tile data ({e})")


def tile_at(data: MapData, x: int, y: int) -> Optional[MapTile]:
    layers = data.get(str(x), {}).get(str(y), {})
    return layers.get("0")
