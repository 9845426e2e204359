# plugins/sprite/__init__.py
from .plugin import SpritePlugin

__all__ = ["SpritePlugin"]
