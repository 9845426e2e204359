# pixelforge/core/contracts.py

from __future__ import annotations
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# --- 1. 文件监听契约 ---

WatchEventType = Literal["create", "update", "delete"]

class WatchEvent(BaseModel):
    type: WatchEventType
    path: Path
    model_config = ConfigDict(frozen=True)

WatchCallback = Callable[[List[WatchEvent]], Awaitable[None]]

class Subscription(ABC):
    @abstractmethod
    async def close(self) -> None: raise NotImplementedError

# subscribe(path, callback, ignore=None) -> Subscription
Subscribe = Callable[..., Awaitable[Subscription]]


# --- 2. 编辑器消息 ---

class MutationType:
    """保留的消息类型。插件可以定义自己的类型，只要满足 {type: str, ...}。"""
    EDITOR_CONNECTED = "EDITOR_CONNECTED"
    EDITOR_DISCONNECTED = "EDITOR_DISCONNECTED"
    INIT = "INIT"
    RESTART = "RESTART"
    REQUEST = "REQUEST"
    RESPONSE = "RESPONSE"
    RELOAD_STATIC = "RELOAD_STATIC"
    RELOAD_MAP = "RELOAD_MAP"
    RELOAD_SHADER = "RELOAD_SHADER"
    RELOAD_SPRITESHEET = "RELOAD_SPRITESHEET"


class EditorMutation(BaseModel):
    """Actions 与 Events 共用的信封，只靠 `type` 字段区分。"""
    type: str
    model_config = ConfigDict(extra="allow")

    @property
    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"type"})


class EventSink(ABC):
    @abstractmethod
    async def emit(self, event: EditorMutation) -> None: raise NotImplementedError


class DevState(BaseModel):
    """开发模式下由编排器持有的状态。生产构建从不创建它。"""
    port: int
    sink: EventSink
    model_config = ConfigDict(arbitrary_types_allowed=True)


# --- 3. 构建上下文 ---

class BuildPaths(BaseModel):
    game_root: Path
    asset_root: Path
    client_root: Path
    build_root: Path
    output_root: Path
    editor_client_root: Path
    editor_server_root: Path

    @classmethod
    def from_game_root(
        cls,
        game_root: Union[str, Path],
        output_root: Union[str, Path],
        asset_root: Optional[Union[str, Path]] = None,
        client_root: Optional[Union[str, Path]] = None,
        build_root: Optional[Union[str, Path]] = None,
    ) -> "BuildPaths":
        game = Path(game_root).resolve()
        return cls(
            game_root=game,
            asset_root=Path(asset_root).resolve() if asset_root else game / "assets",
            client_root=Path(client_root).resolve() if client_root else game / "client",
            build_root=Path(build_root).resolve() if build_root else game / "build",
            output_root=Path(output_root).resolve(),
            editor_client_root=game / "editor" / "client",
            editor_server_root=game / "editor" / "server",
        )


class WatchOptions(BaseModel):
    port: int


class BuildContext(BaseModel):
    production: bool = False
    clean: bool = False
    build: bool = True
    watch: Union[bool, WatchOptions] = False
    paths: BuildPaths
    logger: Any
    dev_state: Optional[DevState] = None
    model_config = ConfigDict(arbitrary_types_allowed=True)

    def log(self, message: str) -> None:
        self.logger.log(message)

    def warn(self, message: str) -> None:
        self.logger.warn(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    async def emit(self, event: Union[EditorMutation, Dict[str, Any]]) -> None:
        if self.dev_state is None:
            return
        if isinstance(event, dict):
            event = EditorMutation.model_validate(event)
        await self.dev_state.sink.emit(event)

    def scoped(self, scope: str) -> "BuildContext":
        """返回一个日志带作用域的浅拷贝，其余字段与原上下文共享。"""
        return self.model_copy(update={"logger": self.logger.scoped(scope)})


# --- 4. 插件契约 ---

class PluginDescriptor(BaseModel):
    name: str
    dependencies: List[str] = Field(default_factory=list)
    source: str = "builtin"
    model_config = ConfigDict(frozen=True)


class BuildPlugin(ABC):
    depends: List[str] = []

    @abstractmethod
    async def init(self, ctx: BuildContext) -> bool:
        """返回 False 表示插件不适用，build 和 watch 都会被跳过。"""
        raise NotImplementedError

    async def clean(self, ctx: BuildContext) -> None:
        return None

    @abstractmethod
    async def build(self, ctx: BuildContext, incremental: bool) -> None:
        raise NotImplementedError

    async def watch(self, ctx: BuildContext, subscribe: Subscribe) -> None:
        return None


PluginFactory = Callable[[], BuildPlugin]
