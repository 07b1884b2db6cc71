"""Audio-related data models."""

from dataclasses import dataclass, asdict
from typing import Any, Dict


@dataclass
class AudioStats:
    """Capture statistics for one producer."""
    is_recording: bool
    duration_seconds: float
    sample_rate: int
    chunk_size: int
    total_chunks: int
    total_bytes: int = 0


@dataclass
class BufferStats:
    """Ring buffer state for one source."""
    capacity_bytes: int
    total_written: int
    available_bytes: int
    overruns: int = 0


@dataclass
class AudioLevelData:
    """Signal level of one source at one instant."""
    source: str
    level: int  # 0-100
    clipping: bool = False
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AudioDeviceInfo:
    """An input device as reported by PyAudio."""
    index: int
    name: str
    max_input_channels: int
    default_sample_rate: float
    is_default: bool = False
