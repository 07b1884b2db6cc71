"""Data models for the DawnChorus capture core."""

from .sources import Source, SourceKind, clean_rtsp_url, anonymized_name
from .audio import AudioStats, BufferStats, AudioLevelData, AudioDeviceInfo
from .events import StreamEvent, AnalysisEvent
from .analysis import Prediction

__all__ = [
    "Source",
    "SourceKind",
    "clean_rtsp_url",
    "anonymized_name",
    "AudioStats",
    "BufferStats",
    "AudioLevelData",
    "AudioDeviceInfo",
    "StreamEvent",
    "AnalysisEvent",
    "Prediction",
]
