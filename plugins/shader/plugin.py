# plugins/shader/plugin.py

import re
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles

from pixelforge.core.contracts import BuildContext, BuildPlugin, MutationType, Subscribe, WatchEvent
from pixelforge.core.hashing import is_stale
from pixelforge.core.utils import ensure_path, remove_path, write_json, write_text

SHADER_EXTENSIONS = {".glsl", ".vert", ".frag"}

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"//[^\n]*")
_UNIFORM = re.compile(r"^\s*uniform\s+(\w+)\s+(\w+)\s*;", re.MULTILINE)
_DEFINE = re.compile(r"^\s*#define\s+(\w+)\s+(-?[0-9.]+)\s*$", re.MULTILINE)


def is_shader(path: Path) -> bool:
    return Path(path).suffix in SHADER_EXTENSIONS


def minify(src: str) -> str:
    """去掉注释和空行，保留预处理指令所在的行结构。"""
    src = _BLOCK_COMMENT.sub("", src)
    src = _LINE_COMMENT.sub("", src)
    lines = [line.rstrip() for line in src.splitlines()]
    return "\n".join(line for line in lines if line.strip()) + "\n"


def reflect(src: str) -> Dict[str, Dict[str, object]]:
    return {
        "uniforms": {name: type_ for type_, name in _UNIFORM.findall(src)},
        "constants": {name: float(value) for name, value in _DEFINE.findall(src)},
    }


class ShaderPaths:
    def __init__(self, ctx: BuildContext):
        self.shaders = ctx.paths.asset_root / "shaders"
        self.output = ctx.paths.output_root / "shaders"
        self.manifests = ctx.paths.client_root / "shaders"


class ShaderPlugin(BuildPlugin):
    depends: List[str] = []

    async def init(self, ctx: BuildContext) -> bool:
        paths = ShaderPaths(ctx)
        if not paths.shaders.is_dir():
            return False
        ensure_path(paths.output)
        ensure_path(paths.manifests)
        return True

    async def clean(self, ctx: BuildContext) -> None:
        paths = ShaderPaths(ctx)
        await remove_path(paths.output)
        await remove_path(paths.manifests)

    async def build(self, ctx: BuildContext, incremental: bool) -> None:
        paths = ShaderPaths(ctx)
        for src in sorted(paths.shaders.iterdir()):
            if not src.is_file() or not is_shader(src):
                continue
            if incremental and not is_stale(src, paths.output / src.name):
                continue
            await self.process_shader(ctx, src.name)

    async def watch(self, ctx: BuildContext, subscribe: Subscribe) -> None:
        paths = ShaderPaths(ctx)

        async def on_change(events: List[WatchEvent]):
            await self.process_events(ctx, events)

        await subscribe(paths.shaders, on_change)

    async def process_events(self, ctx: BuildContext, events: List[WatchEvent]) -> None:
        paths = ShaderPaths(ctx)
        # 同一批中同一个着色器只处理最后一次事件
        latest: Dict[str, WatchEvent] = {}
        for e in events:
            if is_shader(e.path):
                latest[e.path.name] = e

        for shader, e in latest.items():
            if e.type == "delete":
                ctx.log(f"Removing shader {shader}...")
                await remove_path(paths.output / shader)
                await remove_path(paths.manifests / f"{shader}.json")
                continue
            src = await self.process_shader(ctx, shader)
            if src is not None:
                await ctx.emit({"type": MutationType.RELOAD_SHADER, "shader": shader, "src": src})

    async def process_shader(self, ctx: BuildContext, shader: str) -> Optional[str]:
        paths = ShaderPaths(ctx)
        ctx.log(f"Building {'minified ' if ctx.production else ''}shader {shader}...")
        try:
            async with aiofiles.open(paths.shaders / shader, mode="r", encoding="utf-8") as f:
                src = await f.read()
        except FileNotFoundError:
            ctx.warn(f"Shader {shader} disappeared before it could be built.")
            return None

        if ctx.production:
            src = minify(src)
        await write_text(paths.output / shader, src)
        await write_json(paths.manifests / f"{shader}.json", reflect(src))
        return src
