# pixelforge/core/hashing.py

import hashlib
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import aiofiles
from pydantic import BaseModel, ValidationError

from pixelforge.config import BUILD_INFO_FILE

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
ABSENT = ""

PathLike = Union[str, Path]


async def file_hash(path: PathLike) -> str:
    """
    流式计算文件内容的 SHA-256。
    文件不存在时返回空字符串，调用方可以统一把“无法哈希”当作“不存在”。
    """
    digest = hashlib.sha256()
    try:
        async with aiofiles.open(path, mode="rb") as f:
            while True:
                chunk = await f.read(CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
    except FileNotFoundError:
        return ABSENT
    return digest.hexdigest()


def versioned_url(url_path: str, digest: str) -> str:
    return f"{url_path}?v={digest}"


def is_stale(src: PathLike, dest: PathLike) -> bool:
    """
    启动时的增量判断：产物不存在，或源（目录取其中最新的文件）比产物新，就需要重建。
    这是基于 mtime 的近似判断，缓存破坏用的是内容哈希。
    """
    dest_path = Path(dest)
    if not dest_path.exists():
        return True
    return newest_mtime(src) > dest_path.stat().st_mtime


def newest_mtime(path: PathLike) -> float:
    """目录取其自身与所有子项中最新的 mtime。"""
    p = Path(path)
    latest = p.stat().st_mtime
    if p.is_dir():
        for child in p.rglob("*"):
            try:
                latest = max(latest, child.stat().st_mtime)
            except FileNotFoundError:
                continue
    return latest


class ContentCache:
    """单次运行内的 path -> digest 映射，不跨运行持久化。"""
    def __init__(self):
        self._entries: Dict[str, str] = {}

    def __contains__(self, path: PathLike) -> bool:
        return str(path) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, path: PathLike) -> str:
        key = str(path)
        if key not in self._entries:
            self._entries[key] = await file_hash(path)
        return self._entries[key]

    async def refresh(self, path: PathLike) -> str:
        self._entries[str(path)] = await file_hash(path)
        return self._entries[str(path)]

    async def changed(self, path: PathLike) -> bool:
        """重新哈希并与缓存比较。首次见到的路径总是视为已变化。"""
        key = str(path)
        previous = self._entries.get(key)
        current = await self.refresh(path)
        return previous is None or previous != current

    def invalidate(self, path: PathLike) -> None:
        self._entries.pop(str(path), None)

    def clear(self) -> None:
        self._entries.clear()


class BuildInfo(BaseModel):
    """记录上次运行使用的 production 标志。标志变化时必须全量清理。"""
    production: bool

    @staticmethod
    def path_for(game_root: PathLike) -> Path:
        return Path(game_root) / BUILD_INFO_FILE

    @classmethod
    def load(cls, game_root: PathLike) -> Optional["BuildInfo"]:
        path = cls.path_for(game_root)
        if not path.is_file():
            return None
        try:
            return cls.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable build info marker {path}: {e}")
            return None

    def save(self, game_root: PathLike) -> None:
        path = self.path_for(game_root)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def needs_clean(cls, game_root: PathLike, production: bool) -> bool:
        previous = cls.load(game_root)
        return previous is not None and previous.production != production
