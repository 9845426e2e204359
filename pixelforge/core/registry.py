# pixelforge/core/registry.py

import json
import logging
import importlib
import importlib.util
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from pixelforge.core.contracts import BuildPlugin, PluginDescriptor, PluginFactory
from pixelforge.core.errors import PluginLoadError
from pixelforge.core.graph import DependencyGraph

logger = logging.getLogger(__name__)

MANIFEST_FILE = "plugin.json"


class PluginManifest(BaseModel):
    name: str
    depends: List[str] = Field(default_factory=list)
    entry: str


class LoadedPlugin(BaseModel):
    descriptor: PluginDescriptor
    plugin: BuildPlugin
    model_config = {"arbitrary_types_allowed": True}

    @property
    def name(self) -> str:
        return self.descriptor.name


class PluginRegistry:
    """
    插件注册表：内置插件是一张 名称 -> 工厂 的静态表，
    自定义插件从目录中按 plugin.json 清单发现，入口在启动时解析一次。
    """
    def __init__(self):
        self._factories: Dict[str, PluginFactory] = {}
        self._descriptors: List[PluginDescriptor] = []

    @property
    def descriptors(self) -> List[PluginDescriptor]:
        return list(self._descriptors)

    def register(
        self,
        name: str,
        factory: PluginFactory,
        dependencies: Optional[Iterable[str]] = None,
        source: str = "builtin",
    ) -> None:
        if name in self._factories:
            logger.warning(f"Overwriting build plugin registration for '{name}'")
            self._descriptors = [d for d in self._descriptors if d.name != name]
        if dependencies is None:
            dependencies = getattr(factory, "depends", [])
        self._factories[name] = factory
        self._descriptors.append(
            PluginDescriptor(name=name, dependencies=list(dependencies), source=source)
        )

    def register_builtins(self, table: Dict[str, PluginFactory]) -> None:
        for name, factory in table.items():
            self.register(name, factory)

    def discover(self, root: Path) -> List[PluginDescriptor]:
        """扫描一个自定义插件目录。没有清单的目录直接跳过，损坏的清单记录后跳过。"""
        discovered: List[PluginDescriptor] = []
        root = Path(root)
        if not root.is_dir():
            logger.debug(f"Custom plugin root '{root}' does not exist, skipping.")
            return discovered

        for plugin_path in sorted(root.iterdir()):
            if not plugin_path.is_dir() or plugin_path.name.startswith(("__", ".")):
                continue
            manifest_path = plugin_path / MANIFEST_FILE
            if not manifest_path.is_file():
                continue

            try:
                manifest = PluginManifest.model_validate(
                    json.loads(manifest_path.read_text(encoding="utf-8"))
                )
            except (json.JSONDecodeError, ValidationError) as e:
                logger.error(f"Skipping plugin at '{plugin_path}': invalid {MANIFEST_FILE}: {e}")
                continue

            factory = self._resolve_entry(plugin_path, manifest)
            self.register(manifest.name, factory, manifest.depends, source=str(plugin_path))
            discovered.append(self._descriptors[-1])
            logger.debug(f"Discovered custom build plugin '{manifest.name}' in {plugin_path}")

        return discovered

    def _resolve_entry(self, plugin_path: Path, manifest: PluginManifest) -> PluginFactory:
        module_name, _, attr = manifest.entry.partition(":")
        if not module_name or not attr:
            raise PluginLoadError(manifest.name, f"entry '{manifest.entry}' must look like 'module:Class'")

        module_file = plugin_path / f"{module_name.replace('.', '/')}.py"
        if not module_file.is_file():
            module_file = plugin_path / module_name.replace(".", "/") / "__init__.py"
        if not module_file.is_file():
            raise PluginLoadError(manifest.name, f"module '{module_name}' not found in {plugin_path}")

        qualified = f"pixelforge_custom_plugins.{manifest.name}.{module_name}"
        try:
            spec = importlib.util.spec_from_file_location(qualified, module_file)
            module = importlib.util.module_from_spec(spec)
            sys.modules[qualified] = module
            spec.loader.exec_module(module)
        except Exception as e:
            raise PluginLoadError(manifest.name, str(e)) from e

        factory = getattr(module, attr, None)
        if factory is None:
            raise PluginLoadError(manifest.name, f"'{attr}' not found in {module_file}")
        return factory

    def load(self, plugin_filter: Optional[Iterable[str]] = None, build_logger=None) -> List[LoadedPlugin]:
        """按过滤条件实例化插件，并按依赖顺序返回。"""
        allow = set(plugin_filter) if plugin_filter else None
        selected = [d for d in self._descriptors if allow is None or d.name in allow]

        if allow:
            missing = allow - {d.name for d in selected}
            for name in sorted(missing):
                logger.warning(f"Build plugin '{name}' was requested but is not registered.")

        ordered = DependencyGraph(selected).sort_or_fallback(build_logger)

        loaded: List[LoadedPlugin] = []
        for descriptor in ordered:
            try:
                plugin = self._factories[descriptor.name]()
            except Exception as e:
                raise PluginLoadError(descriptor.name, str(e)) from e
            loaded.append(LoadedPlugin(descriptor=descriptor, plugin=plugin))
        return loaded


def create_registry(custom_root: Optional[Path] = None) -> PluginRegistry:
    """内置插件在前，自定义插件在后。"""
    from plugins import BUILTIN_PLUGINS

    registry = PluginRegistry()
    registry.register_builtins(BUILTIN_PLUGINS)
    if custom_root is not None:
        registry.discover(custom_root)
    return registry
