# plugins/__init__.py
"""
内置构建插件表。顺序即发现顺序，依赖排序时用于打破平局。
core_logging 是平台插件，不在此表中。
"""
from typing import Dict

from pixelforge.core.contracts import PluginFactory

from .sprite import SpritePlugin
from .map import MapPlugin
from .shader import ShaderPlugin
from .static import StaticPlugin

BUILTIN_PLUGINS: Dict[str, PluginFactory] = {
    "sprite": SpritePlugin,
    "map": MapPlugin,
    "shader": ShaderPlugin,
    "static": StaticPlugin,
}
