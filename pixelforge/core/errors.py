# pixelforge/core/errors.py

from pathlib import Path
from typing import List, Optional, Union


class PixelforgeError(Exception):
    """所有 pixelforge 错误的基类。"""
    pass


class PluginLoadError(PixelforgeError):
    def __init__(self, plugin_name: str, message: str):
        self.plugin_name = plugin_name
        super().__init__(f"Failed to load plugin '{plugin_name}': {message}")


class PluginLifecycleError(PixelforgeError):
    """插件在某个生命周期阶段中抛出的异常，由编排器在本地恢复。"""
    def __init__(self, plugin_name: str, phase: str, cause: Optional[BaseException] = None):
        self.plugin_name = plugin_name
        self.phase = phase
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Plugin '{plugin_name}' failed during {phase}{detail}")


class CircularDependencyError(PixelforgeError):
    def __init__(self, plugin_name: str, cycle: Optional[List[str]] = None):
        self.plugin_name = plugin_name
        self.cycle = cycle or [plugin_name]
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class AssetValidationError(PixelforgeError):
    """资源元数据不合法。消息里必须包含出错的文件和被违反的约束。"""
    def __init__(self, file: Union[str, Path], constraint: str):
        self.file = str(file)
        self.constraint = constraint
        super().__init__(f"{self.file}: {constraint}")


class WatcherError(PixelforgeError):
    def __init__(self, path: Union[str, Path], cause: Optional[BaseException] = None):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Watch callback for '{self.path}' failed: {cause}")


class EditorUnavailableError(PixelforgeError):
    """编辑器进程不存在或已崩溃。调用方可以重试。"""
    retryable = True

    def __init__(self, message: str = "Editor not ready"):
        super().__init__(message)
