"""On-demand export of buffered audio to WAV clips."""

import re
import wave
import logging
from datetime import datetime
from pathlib import Path

from ..services.stream_registry import StreamRegistry

logger = logging.getLogger(__name__)


def save_clip(filepath: str, data: bytes, sample_rate: int, channels: int = 1, sample_width: int = 2) -> None:
    """Save raw PCM to a WAV file.

    Args:
        filepath: Path to save the WAV file
        data: Interleaved little-endian PCM
        sample_rate: Audio sample rate
        channels: Number of channels
        sample_width: Bytes per sample
    """
    with wave.open(filepath, 'wb') as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(data)

    logger.info(f"Clip saved to {filepath}")


class ClipExporter:
    """Writes time ranges of a source's capture buffer to WAV files."""

    def __init__(self, registry: StreamRegistry, clip_dir: str = "./data/clips"):
        self.registry = registry
        self.clip_dir = Path(clip_dir)
        self.clip_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"ClipExporter initialized with clip_dir: {self.clip_dir}")

    def _clip_path(self, source_id: str, start_time: float) -> Path:
        name = self.registry.get_source(source_id).name
        safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("_") or "source"
        stamp = datetime.fromtimestamp(start_time).strftime("%Y%m%d_%H%M%S_%f")
        return self.clip_dir / f"{safe_name}_{stamp}.wav"

    def export(self, source_id: str, start_time: float, end_time: float) -> Path:
        """Export [start_time, end_time) of a source.

        Raises:
            SourceNotFoundError: if the source is unknown
            BufferRangeError: if the range is no longer buffered
        """
        data = self.registry.read_range(source_id, start_time, end_time)
        path = self._clip_path(source_id, start_time)
        audio = self.registry.audio
        save_clip(str(path), data, audio.sample_rate, audio.channels, audio.bytes_per_sample)
        return path
