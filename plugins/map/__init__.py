# plugins/map/__init__.py
from .plugin import MapPlugin

__all__ = ["MapPlugin"]
