# pixelforge/core/utils.py

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Optional, Union

import aiofiles

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_path(path: PathLike) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


async def load_json(path: PathLike) -> Optional[Any]:
    """读取 JSON 文件；文件不存在或内容损坏时返回 None。"""
    try:
        async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
            content = await f.read()
        return json.loads(content)
    except (FileNotFoundError, json.JSONDecodeError):
        return None


async def write_text(path: PathLike, content: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(p, mode="w", encoding="utf-8") as f:
        await f.write(content)


async def write_json(path: PathLike, data: Any) -> None:
    await write_text(path, json.dumps(data, indent=2, sort_keys=True))


def _remove_sync(p: Path) -> None:
    if p.is_symlink() or p.is_file():
        p.unlink()
    elif p.is_dir():
        shutil.rmtree(p)


async def remove_path(path: PathLike) -> bool:
    """删除文件、目录或符号链接（不跟随链接）。不存在时返回 False。"""
    p = Path(path)
    if not p.exists() and not p.is_symlink():
        return False
    try:
        await asyncio.to_thread(_remove_sync, p)
    except FileNotFoundError:
        return False
    return True
