"""Terminal user interface."""

from .level_screen import LevelScreen

__all__ = ["LevelScreen"]
