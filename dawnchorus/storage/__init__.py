"""Clip export storage."""

from .clip_exporter import ClipExporter, save_clip

__all__ = ["ClipExporter", "save_clip"]
