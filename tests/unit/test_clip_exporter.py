"""Unit tests for WAV clip export."""

import pytest
import wave
from pathlib import Path
from unittest.mock import Mock

from dawnchorus.audio.buffer import CaptureBufferStore
from dawnchorus.config import AudioSettings
from dawnchorus.errors import BufferRangeError, SourceNotFoundError
from dawnchorus.models.sources import Source, SourceKind
from dawnchorus.storage.clip_exporter import ClipExporter, save_clip

CAM = Source("rtsp://user:pw@10.0.0.7:554/h264", SourceKind.STREAM)


@pytest.fixture
def registry(fake_clock):
    """Registry stand-in backed by a real capture buffer store."""
    store = CaptureBufferStore(clock=fake_clock)
    store.allocate(2, 1000, 2, 1, CAM.source_id)

    registry = Mock()
    registry.audio = AudioSettings(sample_rate=1000, capture_seconds=2)
    registry.read_range.side_effect = store.read_range
    registry.get_source.return_value = CAM
    registry.store = store
    return registry


@pytest.mark.unit
class TestClipExporter:
    """Test cases for ClipExporter."""

    def test_save_clip(self, temp_data_dir):
        path = str(Path(temp_data_dir) / "clip.wav")
        save_clip(path, b"\x01\x00" * 800, 16000)

        with wave.open(path, 'rb') as wf:
            assert wf.getnchannels() == 1
            assert wf.getsampwidth() == 2
            assert wf.getframerate() == 16000
            assert wf.getnframes() == 800

    def test_creates_clip_directory(self, registry, temp_data_dir):
        clip_dir = Path(temp_data_dir) / "nested" / "clips"
        ClipExporter(registry, str(clip_dir))
        assert clip_dir.is_dir()

    def test_export_range(self, registry, temp_data_dir, fake_clock):
        """The exported WAV holds exactly the requested range."""
        start = fake_clock.now
        registry.store.write(CAM.source_id, b"\x10\x00" * 1500)

        exporter = ClipExporter(registry, temp_data_dir)
        path = exporter.export(CAM.source_id, start + 0.5, start + 1.0)

        assert path.parent == Path(temp_data_dir)
        assert path.name.startswith("rtsp_10.0.0.7_554_")
        assert "pw" not in path.name
        with wave.open(str(path), 'rb') as wf:
            assert wf.getframerate() == 1000
            assert wf.getnframes() == 500

    def test_export_overwritten_range(self, registry, temp_data_dir, fake_clock):
        start = fake_clock.now
        registry.store.write(CAM.source_id, b"\x00\x00" * 3000)

        exporter = ClipExporter(registry, temp_data_dir)
        with pytest.raises(BufferRangeError):
            exporter.export(CAM.source_id, start, start + 0.5)
        assert list(Path(temp_data_dir).glob("*.wav")) == []

    def test_export_unknown_source(self, registry, temp_data_dir):
        exporter = ClipExporter(registry, temp_data_dir)
        with pytest.raises(SourceNotFoundError):
            exporter.export("rtsp://10.0.0.9/live", 0, 1)
