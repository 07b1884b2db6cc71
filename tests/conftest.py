"""Pytest configuration and fixtures for DawnChorus tests."""

import io
import time
import itertools
import tempfile
import threading
import logging
from pathlib import Path
from unittest.mock import Mock, patch

import numpy as np
import pytest
import yaml


# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@pytest.fixture
def temp_data_dir():
    """Create temporary directory for test data."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def sample_audio_chunk():
    """Generate a sample audio chunk for testing."""
    # 1024 samples of a 440 Hz sine at half scale
    sample_rate = 48000
    t = np.arange(1024) / sample_rate
    wave_data = 0.5 * np.sin(2 * np.pi * 440 * t)
    return (wave_data * 32767).astype('<i2').tobytes()


@pytest.fixture
def audio_test_data():
    """Generate various audio test data patterns."""
    def generate_audio(pattern="sine", duration_seconds=1.0, sample_rate=48000, amplitude=0.5):
        """Generate 16-bit little-endian PCM.

        Args:
            pattern: Type of audio pattern ('sine', 'noise', 'silence', 'ramp')
            duration_seconds: Duration of audio
            sample_rate: Sample rate in Hz
            amplitude: Peak amplitude relative to full scale

        Returns:
            bytes: Audio data as bytes
        """
        samples = int(duration_seconds * sample_rate)

        if pattern == "sine":
            t = np.arange(samples) / sample_rate
            wave_data = amplitude * np.sin(2 * np.pi * 440 * t)
        elif pattern == "noise":
            wave_data = np.random.uniform(-amplitude, amplitude, samples)
        elif pattern == "silence":
            wave_data = np.zeros(samples)
        elif pattern == "ramp":
            # Distinct value per sample position, wraps every 65536 samples
            return (np.arange(samples) % 65536 - 32768).astype('<i2').tobytes()
        else:
            raise ValueError(f"Unknown pattern: {pattern}")

        return (wave_data * 32767).astype('<i2').tobytes()

    return generate_audio


class FakeClock:
    """Manually advanced clock for time-dependent tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


class FakeProcess:
    """Stand-in for subprocess.Popen emitting fixed stdout and exiting.

    With ``block=True`` stdout blocks after the payload until terminate()
    is called, like a live decoder.
    """

    _pids = itertools.count(1000)

    def __init__(self, payload: bytes = b"", returncode: int = 1, block: bool = False):
        self.pid = next(self._pids)
        self._payload = io.BytesIO(payload)
        self._block = block
        self._exit_event = threading.Event()
        self._returncode = returncode
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.stdout = self
        self.stderr = io.BytesIO(b"")

    def read(self, size: int = -1) -> bytes:
        data = self._payload.read(size)
        if data:
            return data
        if self._block:
            self._exit_event.wait()
        else:
            self._exit_event.set()
        return b""

    def close(self) -> None:
        pass

    def poll(self):
        if self._exit_event.is_set():
            self.returncode = self._returncode
        return self.returncode

    def wait(self, timeout=None):
        self._exit_event.wait(timeout)
        self.returncode = self._returncode
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self._returncode = -15
        self._exit_event.set()

    def kill(self) -> None:
        self.killed = True
        self._returncode = -9
        self._exit_event.set()


class FakePopen:
    """Records every spawn and hands out FakeProcess instances."""

    def __init__(self, payload: bytes = b"", block: bool = False, fail: bool = False):
        self.payload = payload
        self.block = block
        self.fail = fail
        self.processes = []
        self.spawn_times = []
        self.lock = threading.Lock()

    def __call__(self, command, **kwargs):
        with self.lock:
            self.spawn_times.append(time.monotonic())
            if self.fail:
                raise FileNotFoundError(f"No such file: {command[0]}")
            process = FakeProcess(self.payload, block=self.block)
            self.processes.append(process)
            return process


@pytest.fixture
def fake_popen():
    """Factory for FakePopen instances."""
    return FakePopen


@pytest.fixture
def mock_pyaudio():
    """Mock PyAudio for testing without actual audio hardware."""
    with patch('pyaudio.PyAudio') as mock_pyaudio_class:
        mock_pyaudio_instance = Mock()
        mock_stream = Mock()

        # Configure mock stream
        mock_stream.read.return_value = b'\x00' * 2048  # Silent audio
        mock_stream.stop_stream.return_value = None
        mock_stream.close.return_value = None

        # Configure mock PyAudio instance
        mock_pyaudio_instance.open.return_value = mock_stream
        mock_pyaudio_instance.terminate.return_value = None
        mock_pyaudio_instance.get_device_count.return_value = 2
        mock_pyaudio_instance.get_default_input_device_info.return_value = {"index": 1}
        mock_pyaudio_instance.get_device_info_by_index.side_effect = lambda i: [
            {"index": 0, "name": "HDA Intel PCH: ALC3246 Analog (hw:0,0)", "maxInputChannels": 2,
             "defaultSampleRate": 48000.0},
            {"index": 1, "name": "USB Audio Device: Mic (hw:1,0)", "maxInputChannels": 1,
             "defaultSampleRate": 48000.0},
        ][i]

        mock_pyaudio_class.return_value = mock_pyaudio_instance

        yield {
            'class': mock_pyaudio_class,
            'instance': mock_pyaudio_instance,
            'stream': mock_stream
        }


@pytest.fixture
def config_file(temp_data_dir):
    """Write a YAML config file and return a function producing its path."""
    def write_config(overrides=None):
        config = {
            "audio": {"source": "", "sample_rate": 1000, "bit_depth": 16, "channels": 1,
                      "chunk_size": 100, "capture_seconds": 2},
            "rtsp": {"transport": "tcp", "urls": []},
            "analysis": {"window_seconds": 0.5, "overlap_seconds": 0.25},
            "logging": {"level": "DEBUG", "file_path": "logs/test.log", "console_output": False},
            "storage": {"clip_directory": "clips"},
        }
        for key, value in (overrides or {}).items():
            section, _, name = key.partition(".")
            config.setdefault(section, {})[name] = value
        path = Path(temp_data_dir) / "dawnchorus.yaml"
        path.write_text(yaml.safe_dump(config), encoding="utf-8")
        return str(path)

    return write_config
