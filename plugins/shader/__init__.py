# plugins/shader/__init__.py
from .plugin import ShaderPlugin, minify

__all__ = ["ShaderPlugin", "minify"]
