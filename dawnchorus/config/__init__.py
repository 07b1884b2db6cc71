"""YAML configuration loader for DawnChorus."""

import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, List, Optional
import logging

from ..errors import ConfigurationError
from ..models.sources import Source, SourceKind, anonymized_name

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "dawnchorus.yaml"


@dataclass
class AudioSettings:
    """PCM format and capture buffer sizing."""
    sample_rate: int = 48000
    bit_depth: int = 16
    channels: int = 1
    chunk_size: int = 4096  # Frames per device read
    capture_seconds: float = 60.0

    @property
    def bytes_per_sample(self) -> int:
        return self.bit_depth // 8

    @property
    def frame_bytes(self) -> int:
        return self.bytes_per_sample * self.channels

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.frame_bytes

    def validate(self) -> None:
        if self.bit_depth != 16:
            raise ConfigurationError(f"Only 16-bit PCM is supported, got {self.bit_depth}-bit")
        if self.sample_rate <= 0 or self.channels <= 0 or self.chunk_size <= 0:
            raise ConfigurationError(
                f"Invalid audio format: {self.sample_rate}Hz, {self.channels} channels, "
                f"chunk {self.chunk_size}")
        if self.capture_seconds <= 0:
            raise ConfigurationError(f"Capture buffer duration must be positive: {self.capture_seconds}")


@dataclass
class AnalysisSettings:
    """Classifier window sizing and worker pool."""
    window_seconds: float = 3.0
    overlap_seconds: float = 0.0
    capacity_windows: int = 3
    workers: int = 1
    queue_size: int = 16
    poll_interval: float = 0.1

    def window_bytes(self, audio: AudioSettings) -> int:
        return int(round(self.window_seconds * audio.sample_rate)) * audio.frame_bytes

    def overlap_bytes(self, audio: AudioSettings) -> int:
        return int(round(self.overlap_seconds * audio.sample_rate)) * audio.frame_bytes

    def validate(self) -> None:
        if self.window_seconds <= 0:
            raise ConfigurationError(f"Analysis window must be positive: {self.window_seconds}")
        if not 0 <= self.overlap_seconds < self.window_seconds:
            raise ConfigurationError(
                f"Overlap {self.overlap_seconds}s must be in [0, {self.window_seconds})")
        if self.capacity_windows < 1 or self.workers < 1 or self.queue_size < 1:
            raise ConfigurationError("Analysis capacity, workers and queue size must be at least 1")


@dataclass
class DecoderSettings:
    """Decoder subprocess command and restart policy."""
    ffmpeg_path: str = "ffmpeg"
    chunk_bytes: int = 8192
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    max_spawns: int = 5
    spawn_window_seconds: float = 60.0
    restart_budget: int = 10
    stable_run_seconds: float = 30.0
    terminate_timeout: float = 5.0
    drain_timeout: float = 10.0

    def validate(self) -> None:
        if self.max_spawns < 1 or self.spawn_window_seconds <= 0:
            raise ConfigurationError(
                f"Invalid spawn ceiling: {self.max_spawns} per {self.spawn_window_seconds}s")
        if self.backoff_initial < 0 or self.backoff_max < self.backoff_initial:
            raise ConfigurationError(
                f"Invalid backoff: initial {self.backoff_initial}s, max {self.backoff_max}s")
        if self.restart_budget < 0:
            raise ConfigurationError(f"Restart budget must not be negative: {self.restart_budget}")


@dataclass
class LevelSettings:
    """Level meter scaling and activity tracking."""
    inactivity_seconds: float = 15.0
    floor_db: float = -60.0
    ceiling_db: float = 0.0
    queue_size: int = 100
    anonymize: bool = False

    def validate(self) -> None:
        if self.ceiling_db <= self.floor_db:
            raise ConfigurationError(
                f"Level ceiling {self.ceiling_db} dB must be above floor {self.floor_db} dB")
        if self.inactivity_seconds <= 0 or self.queue_size < 1:
            raise ConfigurationError("Inactivity threshold and level queue size must be positive")


def _build(cls, section: Any):
    """Instantiate a settings dataclass from a config section, rejecting unknown keys."""
    if section is None:
        section = {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected a mapping for {cls.__name__}, got {type(section).__name__}")
    try:
        settings = cls(**section)
    except TypeError as e:
        raise ConfigurationError(f"Invalid {cls.__name__}: {e}") from e
    settings.validate()
    return settings


class DawnChorusConfig:
    """DawnChorus configuration loader."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to YAML config file. If None, looks for dawnchorus.yaml
                        in the current directory.
        """
        self.config_file = Path(config_path) if config_path else Path.cwd() / DEFAULT_CONFIG_NAME

        if not self.config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_file}")

        logger.info(f"Loading configuration from: {self.config_file}")
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load and parse YAML configuration file."""
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")
        except OSError as e:
            raise ValueError(f"Failed to load configuration: {e}")

        if not config:
            raise ValueError("Configuration file is empty")
        if not isinstance(config, dict):
            raise ValueError("Configuration root must be a mapping")

        # Resolve relative paths
        self._resolve_paths(config)

        logger.info("Configuration loaded successfully")
        return config

    def reload(self) -> None:
        """Re-read the configuration file, keeping the old values if it is invalid."""
        self.config = self._load_config()

    def _resolve_paths(self, config: Dict[str, Any]) -> None:
        """Resolve relative paths in configuration relative to config file location."""
        config_dir = self.config_file.parent

        if 'storage' in config and 'clip_directory' in (config['storage'] or {}):
            clip_dir = config['storage']['clip_directory']
            if not os.path.isabs(clip_dir):
                config['storage']['clip_directory'] = str(config_dir / clip_dir)

        if 'logging' in config and 'file_path' in (config['logging'] or {}):
            log_path = config['logging']['file_path']
            if not os.path.isabs(log_path):
                config['logging']['file_path'] = str(config_dir / log_path)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'audio.sample_rate').

        Args:
            key_path: Dot-separated key path
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split('.')
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation.

        Args:
            key_path: Dot-separated path to config value (e.g., 'rtsp.urls')
            value: Value to set
        """
        keys = key_path.split('.')
        config_dict = self.config

        # Navigate to the parent dictionary
        for key in keys[:-1]:
            if key not in config_dict or config_dict[key] is None:
                config_dict[key] = {}
            config_dict = config_dict[key]

        config_dict[keys[-1]] = value
        logger.debug(f"Configuration key '{key_path}' set to: {value}")

    def get_audio_settings(self) -> AudioSettings:
        section = dict(self.get('audio', {}) or {})
        section.pop('source', None)
        return _build(AudioSettings, section)

    def get_analysis_settings(self) -> AnalysisSettings:
        return _build(AnalysisSettings, self.get('analysis'))

    def get_decoder_settings(self) -> DecoderSettings:
        return _build(DecoderSettings, self.get('decoder'))

    def get_level_settings(self) -> LevelSettings:
        return _build(LevelSettings, self.get('levels'))

    def get_desired_sources(self) -> List[Source]:
        """Build the desired source list: the audio device (if set) plus every stream URL."""
        anonymize = bool(self.get('levels.anonymize', False))
        sources = []

        device = self.get('audio.source', '')
        if device:
            source = Source(str(device), SourceKind.DEVICE)
            if anonymize:
                source = Source(source.source_id, source.kind, display_name=anonymized_name(source, 1))
            sources.append(source)

        transport = self.get('rtsp.transport', 'tcp')
        urls = self.get('rtsp.urls', []) or []
        if not isinstance(urls, list):
            raise ConfigurationError("rtsp.urls must be a list")
        for i, url in enumerate(urls, start=1):
            source = Source(str(url), SourceKind.STREAM, transport=transport)
            if anonymize:
                source = Source(source.source_id, source.kind, transport=transport,
                                display_name=anonymized_name(source, i))
            sources.append(source)

        return sources

    def get_clip_directory(self) -> str:
        """Get clip export directory path."""
        clip_dir = self.get('storage.clip_directory', 'data/clips')
        return str(Path(clip_dir).absolute())
