# plugins/static/__init__.py
from .plugin import StaticPlugin

__all__ = ["StaticPlugin"]
