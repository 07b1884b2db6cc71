"""Unit tests for the terminal level screen."""

import io

import pytest
from unittest.mock import Mock
from rich.console import Console

from dawnchorus.audio.levels import LevelMonitor
from dawnchorus.models.sources import Source, SourceKind
from dawnchorus.ui.level_screen import BAR_WIDTH, LevelScreen, level_bar


def render_text(screen):
    console = Console(file=io.StringIO(), width=120, force_terminal=False)
    console.print(screen.render())
    return console.file.getvalue()


@pytest.mark.unit
class TestLevelScreen:
    """Test cases for LevelScreen rendering."""

    def test_level_bar(self):
        assert level_bar(0, False).count("█") == 0
        assert level_bar(50, False).count("█") == BAR_WIDTH // 2
        assert level_bar(100, True).startswith("[red]")

    def test_render_sources(self, sample_audio_chunk):
        monitor = LevelMonitor()
        cam = Source("rtsp://admin:pw@10.0.0.5/live", SourceKind.STREAM)
        mic = Source("mic", SourceKind.DEVICE, display_name="Garden mic")
        monitor.register(cam.source_id, cam.name)
        monitor.register(mic.source_id, mic.name)
        monitor.observe(mic.source_id, sample_audio_chunk)

        registry = Mock()
        registry.sources.return_value = [cam, mic]
        registry.is_degraded.side_effect = lambda source_id: source_id == cam.source_id

        text = render_text(LevelScreen(monitor, registry))
        assert "rtsp://10.0.0.5" in text
        assert "pw" not in text
        assert "Garden mic" in text
        assert "degraded" in text
        assert "live" in text

    def test_render_without_sources(self):
        registry = Mock()
        registry.sources.return_value = []
        text = render_text(LevelScreen(LevelMonitor(), registry))
        assert "no sources configured" in text
