# conftest.py

import pytest
from pathlib import Path
from typing import Any, Callable, Dict, List

from PIL import Image

from pixelforge.core.contracts import (
    BuildContext,
    BuildPaths,
    DevState,
    EditorMutation,
    EventSink,
    Subscription,
    WatchCallback,
)
from pixelforge.core.logger import BuildLogger


class RecordingSink(EventSink):
    """收集 ctx.emit 推送的事件。"""
    def __init__(self):
        self.events: List[EditorMutation] = []

    async def emit(self, event: EditorMutation) -> None:
        self.events.append(event)

    def of_type(self, type_: str) -> List[EditorMutation]:
        return [e for e in self.events if e.type == type_]


class _RecordedSubscription(Subscription):
    def __init__(self, owner: "RecordingSubscribe", path: Path):
        self._owner = owner
        self.path = path

    async def close(self) -> None:
        self._owner.closed.append(self.path)


class RecordingSubscribe:
    """替代 FileWatcher.subscribe：只记录订阅，回调由测试手动触发。"""
    def __init__(self):
        self.callbacks: Dict[Path, WatchCallback] = {}
        self.ignores: Dict[Path, Any] = {}
        self.closed: List[Path] = []

    async def __call__(self, path, callback: WatchCallback, ignore=None) -> Subscription:
        path = Path(path)
        self.callbacks[path] = callback
        self.ignores[path] = ignore
        return _RecordedSubscription(self, path)


# --- 1. 游戏目录与构建上下文 ---

@pytest.fixture
def game_root(tmp_path: Path) -> Path:
    root = tmp_path / "game"
    (root / "assets").mkdir(parents=True)
    (root / "client").mkdir()
    return root


@pytest.fixture
def output_root(tmp_path: Path) -> Path:
    return tmp_path / "out"


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def recording_subscribe() -> RecordingSubscribe:
    return RecordingSubscribe()


@pytest.fixture
def make_ctx(game_root: Path, output_root: Path, sink: RecordingSink) -> Callable[..., BuildContext]:
    """
    构建上下文工厂。默认是开发模式的普通构建，并带一个 DevState，
    插件 emit 的事件都会进入 `sink`。
    """
    def _make_ctx(dev: bool = True, **overrides) -> BuildContext:
        fields = dict(
            production=False,
            clean=False,
            build=True,
            watch=False,
            paths=BuildPaths.from_game_root(game_root, output_root),
            logger=BuildLogger(),
            dev_state=DevState(port=8000, sink=sink) if dev else None,
        )
        fields.update(overrides)
        return BuildContext(**fields)

    return _make_ctx


# --- 2. 资源工厂 ---

@pytest.fixture
def write_sprite() -> Callable[..., Path]:
    """写一张 `name-WxH.png`，frames 帧水平排列。"""
    def _write_sprite(sheet_dir: Path, name: str, width: int, height: int, frames: int = 1,
                      color=(255, 0, 0, 255), actual_size=None) -> Path:
        sheet_dir.mkdir(parents=True, exist_ok=True)
        path = sheet_dir / f"{name}-{width}x{height}.png"
        size = actual_size or (width * frames, height)
        Image.new("RGBA", size, color).save(path, format="PNG")
        return path

    return _write_sprite
