"""Capture producers: one thread per source pulling PCM into the capture sink."""

import time
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from threading import Thread, Event
from typing import Callable, Deque, List, Optional

import pyaudio

from ..errors import ConfigurationError
from ..models.audio import AudioStats, AudioDeviceInfo
from ..models.sources import Source

logger = logging.getLogger(__name__)

# Receives every PCM chunk a producer reads
Sink = Callable[[bytes], None]


def backoff_delay(attempt: int, initial: float, maximum: float) -> float:
    """Exponential backoff: initial, 2*initial, 4*initial ... capped at maximum."""
    if attempt <= 0:
        return 0.0
    return min(initial * (2 ** (attempt - 1)), maximum)


class RestartThrottle:
    """Sliding-window limit on how often a producer may (re)open its input.

    ``acquire`` blocks until fewer than ``max_events`` events fall inside the
    trailing ``window_seconds``, so the rate over any window never exceeds
    the ceiling.
    """

    def __init__(self, max_events: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        if max_events <= 0 or window_seconds <= 0:
            raise ConfigurationError(f"Invalid restart ceiling: {max_events} per {window_seconds}s")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._events and now - self._events[0] > self.window_seconds:
            self._events.popleft()

    def acquire(self, stop_event: Event) -> bool:
        """Wait for a free slot and record an event.

        Returns:
            False if stop_event was set while waiting
        """
        while not stop_event.is_set():
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._events) < self.max_events:
                    self._events.append(now)
                    return True
                wait = self._events[0] + self.window_seconds - now
            logger.debug(f"Restart ceiling reached, waiting {wait:.2f}s")
            stop_event.wait(max(wait, 0.01))
        return False

    def history(self) -> List[float]:
        with self._lock:
            return list(self._events)


class CaptureProducer(ABC):
    """A thread that reads PCM for one source and hands it to the sink.

    The ``drained`` event is the drain acknowledgment: it is set exactly
    once, when the thread has returned and will never call the sink again.
    """

    def __init__(self, source: Source, sink: Sink):
        self.source = source
        self.sink = sink
        self.stop_event = Event()
        self.drained = Event()
        self.thread: Optional[Thread] = None
        self.start_time: Optional[datetime] = None
        self.total_chunks = 0
        self.total_bytes = 0

    def start(self) -> None:
        """Start the producer thread."""
        if self.thread is not None:
            logger.warning(f"Producer for {self.source.name} already started")
            return
        self.start_time = datetime.now()
        self.thread = Thread(target=self._run, daemon=True)
        self.thread.name = f"Capture-{self.source.name}"
        self.thread.start()

    def _run(self) -> None:
        try:
            self._produce()
        except Exception as e:
            logger.error(f"Capture producer for {self.source.name} failed: {e}", exc_info=True)
        finally:
            self.drained.set()
            logger.debug(f"Capture producer for {self.source.name} drained")

    def _deliver(self, chunk: bytes) -> None:
        self.total_chunks += 1
        self.total_bytes += len(chunk)
        self.sink(chunk)

    @abstractmethod
    def _produce(self) -> None:
        """Read PCM until stop_event is set."""

    def stop(self) -> None:
        """Signal the producer to stop. Does not wait; see wait_drained."""
        self.stop_event.set()

    def cleanup(self) -> bool:
        """Stop and release the producer's input. Returns True once nothing is left running."""
        self.stop()
        return True

    def wait_drained(self, timeout: Optional[float] = None) -> bool:
        """Block until the producer acknowledged drain. A never-started producer is drained."""
        if self.thread is None:
            return True
        return self.drained.wait(timeout)

    @property
    def is_finished(self) -> bool:
        """True once the producer thread has exited."""
        return self.thread is not None and self.drained.is_set()

    def get_recording_stats(self) -> AudioStats:
        """Get current capture statistics."""
        duration = 0.0
        if self.start_time:
            duration = (datetime.now() - self.start_time).total_seconds()

        return AudioStats(
            is_recording=self.thread is not None and not self.drained.is_set(),
            duration_seconds=duration,
            sample_rate=getattr(self, "sample_rate", 0),
            chunk_size=getattr(self, "chunk_size", 0),
            total_chunks=self.total_chunks,
            total_bytes=self.total_bytes,
        )


def list_audio_sources() -> List[AudioDeviceInfo]:
    """List input-capable audio devices."""
    pa = pyaudio.PyAudio()
    try:
        try:
            default_index = pa.get_default_input_device_info().get("index")
        except (IOError, OSError):
            default_index = None

        devices = []
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            if info.get("maxInputChannels", 0) <= 0:
                continue
            # Skip the discard/null device
            if "Discard all samples" in info.get("name", ""):
                continue
            devices.append(AudioDeviceInfo(
                index=i,
                name=info.get("name", ""),
                max_input_channels=int(info.get("maxInputChannels", 0)),
                default_sample_rate=float(info.get("defaultSampleRate", 0.0)),
                is_default=(i == default_index),
            ))
        return devices
    finally:
        pa.terminate()


def find_input_device(setting: str, devices: List[AudioDeviceInfo]) -> AudioDeviceInfo:
    """Match a configured device setting against available input devices.

    A setting matches by exact index, by name substring, or as
    ``sysdefault``/``default`` for the system default input.

    Raises:
        ConfigurationError: if nothing matches
    """
    for device in devices:
        if setting in ("sysdefault", "default") and device.is_default:
            return device
        if setting.isdigit() and int(setting) == device.index:
            return device
        if setting and setting in device.name:
            return device
    raise ConfigurationError(f"No capture device found matching '{setting}'")


class DeviceCaptureProducer(CaptureProducer):
    """Continuous capture from a local input device via PyAudio.

    A failing device is reopened after a backoff delay; reopen attempts go
    through the same RestartThrottle the decoder supervisor uses.
    """

    def __init__(
        self,
        source: Source,
        sink: Sink,
        sample_rate: int = 48000,
        chunk_size: int = 4096,
        channels: int = 1,
        format: int = pyaudio.paInt16,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        throttle: Optional[RestartThrottle] = None,
    ):
        """Initialize device capture.

        Args:
            source: Device source (id is the device setting)
            sink: Receives every PCM chunk
            sample_rate: Audio sample rate
            chunk_size: Size of each audio chunk in frames
            channels: Number of audio channels
            format: Audio format (16-bit signed int)
        """
        super().__init__(source, sink)
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.channels = channels
        self.format = format
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.throttle = throttle or RestartThrottle(5, 60.0)
        self.failures = 0
        self.pyaudio_instance: Optional[pyaudio.PyAudio] = None

    def __open_audio_stream(self):
        device = find_input_device(self.source.source_id, list_audio_sources())
        self.pyaudio_instance = pyaudio.PyAudio()
        stream = self.pyaudio_instance.open(
            format=self.format,
            channels=self.channels,
            rate=self.sample_rate,
            input=True,
            input_device_index=device.index,
            frames_per_buffer=self.chunk_size,
            stream_callback=None
        )
        logger.info(f"Audio stream opened on '{device.name}': {self.sample_rate}Hz, "
                    f"{self.chunk_size} frames/chunk")
        return stream

    def __close_audio_stream(self, stream) -> None:
        if stream is not None:
            try:
                stream.stop_stream()
                stream.close()
            except OSError as e:
                logger.warning(f"Error closing audio stream: {e}")
        if self.pyaudio_instance:
            self.pyaudio_instance.terminate()
            self.pyaudio_instance = None

    def _produce(self) -> None:
        while not self.stop_event.is_set():
            if not self.throttle.acquire(self.stop_event):
                break
            stream = None
            try:
                stream = self.__open_audio_stream()
                while not self.stop_event.is_set():
                    chunk = stream.read(self.chunk_size, exception_on_overflow=False)
                    self._deliver(chunk)
                self.failures = 0
            except (IOError, OSError, ConfigurationError) as e:
                self.failures += 1
                logger.error(f"Device capture failed for {self.source.name}: {e}")
            finally:
                self.__close_audio_stream(stream)

            if self.stop_event.is_set():
                break
            delay = backoff_delay(self.failures, self.backoff_initial, self.backoff_max)
            logger.info(f"Reopening {self.source.name} in {delay:.1f}s")
            self.stop_event.wait(delay)
