# plugins/sprite/packer.py

import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field

from pixelforge.core.errors import AssetValidationError

SPRITE_REGEX = re.compile(r"^([a-zA-Z_][a-zA-Z0-9_]*)-([0-9]+)x([0-9]+)\.png$")
SPRITE_EXTENSIONS = {".png"}


def is_sprite_source(path: Path) -> bool:
    return Path(path).suffix.lower() in SPRITE_EXTENSIONS


class SpriteFrame(BaseModel):
    top: int
    left: int
    bottom: int
    right: int


class SpriteConfig(BaseModel):
    index: int
    width: int
    height: int
    frames: List[SpriteFrame] = Field(default_factory=list)


class SheetLayout(BaseModel):
    """一张精灵表的排布结果：每个精灵占一行，帧沿水平方向排列。"""
    name: str
    width: int = 0
    height: int = 0
    sprites: Dict[str, SpriteConfig] = Field(default_factory=dict)

    @property
    def indexes(self) -> List[str]:
        # 索引 0 保留给“无精灵”
        return [""] + list(self.sprites.keys())


def _read_sprite(path: Path, frame_width: int, frame_height: int) -> Image.Image:
    try:
        with Image.open(path) as img:
            img.load()
            image = img.convert("RGBA")
    except (OSError, UnidentifiedImageError):
        raise AssetValidationError(path, "not a readable PNG image")

    width, height = image.size
    if width % frame_width != 0:
        raise AssetValidationError(path, f"sprite width {width} must be a multiple of {frame_width}")
    if height != frame_height:
        raise AssetValidationError(path, f"sprite height {height} must be equal to {frame_height}")
    return image


def pack_sheet(
    sheet_dir: Path,
    output_file: Path,
    production: bool = False,
) -> Tuple[Optional[SheetLayout], List[AssetValidationError]]:
    """
    把一个目录下的 `<name>-<W>x<H>.png` 打包成一张 PNG。
    不合规的精灵会被跳过并作为错误返回；一个合规精灵都没有时不写文件，返回 None。
    按文件名排序，重复构建产出相同的字节。
    """
    sheet_dir = Path(sheet_dir)
    layout = SheetLayout(name=sheet_dir.name)
    errors: List[AssetValidationError] = []
    images: List[Tuple[int, Image.Image]] = []

    for path in sorted(sheet_dir.iterdir()):
        if not path.is_file() or not is_sprite_source(path):
            continue
        match = SPRITE_REGEX.match(path.name)
        if not match:
            errors.append(AssetValidationError(path, "file name must look like <name>-<W>x<H>.png"))
            continue

        name = match.group(1)
        frame_width, frame_height = int(match.group(2)), int(match.group(3))
        if frame_width == 0 or frame_height == 0:
            errors.append(AssetValidationError(path, "frame size must be non-zero"))
            continue
        try:
            image = _read_sprite(path, frame_width, frame_height)
        except AssetValidationError as e:
            errors.append(e)
            continue

        top = layout.height
        layout.sprites[name] = SpriteConfig(
            index=len(layout.sprites) + 1,
            width=frame_width,
            height=frame_height,
            frames=[
                SpriteFrame(top=top, left=i * frame_width, bottom=top + frame_height, right=(i + 1) * frame_width)
                for i in range(image.width // frame_width)
            ],
        )
        images.append((top, image))
        layout.width = max(layout.width, image.width)
        layout.height += image.height

    if not layout.sprites:
        return None, errors

    sheet = Image.new("RGBA", (layout.width, layout.height), (0, 0, 0, 0))
    for top, image in images:
        sheet.paste(image, (0, top))
    output_file.parent.mkdir(parents=True, exist_ok=True)
    sheet.save(output_file, format="PNG", compress_level=9 if production else 6)
    return layout, errors
