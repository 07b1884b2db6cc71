"""Audio capture, buffering and level metering."""

from .buffer import CaptureBuffer, AnalysisBuffer, CaptureBufferStore, AnalysisBufferStore
from .levels import LevelMonitor, calculate_audio_level
from .capture import CaptureProducer, DeviceCaptureProducer, RestartThrottle, list_audio_sources
from .decoder import DecoderSupervisor, SupervisorState, build_ffmpeg_command

__all__ = [
    'CaptureBuffer',
    'AnalysisBuffer',
    'CaptureBufferStore',
    'AnalysisBufferStore',
    'LevelMonitor',
    'calculate_audio_level',
    'CaptureProducer',
    'DeviceCaptureProducer',
    'RestartThrottle',
    'list_audio_sources',
    'DecoderSupervisor',
    'SupervisorState',
    'build_ffmpeg_command',
]
