"""Source registry: owns every source's buffers and producer, and reconciles them with configuration."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from ..audio.buffer import AnalysisBufferStore, CaptureBufferStore
from ..audio.capture import CaptureProducer, DeviceCaptureProducer, RestartThrottle, Sink
from ..audio.decoder import DecoderSupervisor, build_ffmpeg_command
from ..audio.levels import LevelMonitor
from ..config import AnalysisSettings, AudioSettings, DecoderSettings
from ..errors import (
    AllocationError,
    CaptureError,
    ConfigurationError,
    DecoderError,
    SourceNotFoundError,
    StreamDegradedError,
)
from ..models.events import StreamEvent
from ..models.sources import Source, SourceKind

logger = logging.getLogger(__name__)

DegradedCallback = Callable[[str, StreamDegradedError], None]
ProducerFactory = Callable[[Source, Sink, DegradedCallback], CaptureProducer]


def make_producer_factory(audio: AudioSettings, decoder: DecoderSettings) -> ProducerFactory:
    """Factory building a device producer or a decoder supervisor for a source."""

    def factory(source: Source, sink: Sink, on_degraded: DegradedCallback) -> CaptureProducer:
        throttle = RestartThrottle(decoder.max_spawns, decoder.spawn_window_seconds)
        if source.kind is SourceKind.DEVICE:
            return DeviceCaptureProducer(
                source,
                sink,
                sample_rate=audio.sample_rate,
                chunk_size=audio.chunk_size,
                channels=audio.channels,
                backoff_initial=decoder.backoff_initial,
                backoff_max=decoder.backoff_max,
                throttle=throttle,
            )
        command = build_ffmpeg_command(
            source.source_id,
            transport=source.transport,
            sample_rate=audio.sample_rate,
            channels=audio.channels,
            ffmpeg_path=decoder.ffmpeg_path,
        )
        return DecoderSupervisor(
            source,
            sink,
            command,
            chunk_bytes=decoder.chunk_bytes,
            frame_bytes=audio.frame_bytes,
            backoff_initial=decoder.backoff_initial,
            backoff_max=decoder.backoff_max,
            throttle=throttle,
            restart_budget=decoder.restart_budget,
            stable_run_seconds=decoder.stable_run_seconds,
            terminate_timeout=decoder.terminate_timeout,
            on_degraded=on_degraded,
        )

    return factory


@dataclass
class SourceHandle:
    """Registry-owned resources of one source.

    The producer is lent the sink for its thread's lifetime only; ``active``
    gates routing and ``lock`` serializes lifecycle changes of this source.
    """
    source: Source
    active: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    producer: Optional[CaptureProducer] = None
    draining: bool = False
    degraded: bool = False


@dataclass
class ReconfigureResult:
    """Outcome of one reconfigure call."""
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    restarted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: Dict[str, CaptureError] = field(default_factory=dict)


class StreamRegistry:
    """Source of truth mapping source ids to their buffers, producer and level entry."""

    def __init__(
        self,
        audio: AudioSettings,
        analysis: AnalysisSettings,
        producer_factory: ProducerFactory,
        capture_buffers: Optional[CaptureBufferStore] = None,
        analysis_buffers: Optional[AnalysisBufferStore] = None,
        level_monitor: Optional[LevelMonitor] = None,
        drain_timeout: float = 10.0,
        event_callback: Optional[Callable[[StreamEvent], None]] = None,
    ):
        """Initialize the registry.

        Args:
            audio: PCM format and capture buffer sizing
            analysis: Classifier window sizing
            producer_factory: Builds the producer for a source
            drain_timeout: How long removal waits for a producer's drain acknowledgment
            event_callback: Receives stream lifecycle events
        """
        self.audio = audio
        self.analysis = analysis
        self.producer_factory = producer_factory
        self.capture_buffers = capture_buffers or CaptureBufferStore()
        self.analysis_buffers = analysis_buffers or AnalysisBufferStore()
        self.level_monitor = level_monitor or LevelMonitor()
        self.drain_timeout = drain_timeout
        self.event_callback = event_callback

        self._handles: Dict[str, SourceHandle] = {}
        self._lock = threading.Lock()
        self._reconfigure_lock = threading.Lock()

    def _publish(self, source_id: str, event_type: str, **metadata) -> None:
        if self.event_callback is None:
            return
        try:
            self.event_callback(StreamEvent(source_id=source_id, event_type=event_type, metadata=metadata))
        except Exception as e:
            logger.error(f"Stream event listener failed: {e}", exc_info=True)

    def _make_sink(self, handle: SourceHandle) -> Sink:
        source_id = handle.source.source_id

        def sink(chunk: bytes) -> None:
            if not handle.active.is_set():
                return
            self.capture_buffers.write(source_id, chunk)
            self.analysis_buffers.write(source_id, chunk)
            self.level_monitor.observe(source_id, chunk)

        return sink

    def reconfigure(self, desired_sources: Iterable[Source]) -> ReconfigureResult:
        """Bring the active sources in line with the desired set.

        Failures are isolated per source: they are logged, reported in the
        result, and retried on the next call.
        """
        result = ReconfigureResult()

        with self._reconfigure_lock:
            wanted: Dict[str, Source] = {}
            for source in desired_sources:
                try:
                    source.validate()
                except ConfigurationError as e:
                    logger.error(f"❌ Skipping invalid source: {e}")
                    result.failed[source.source_id] = e
                    continue
                if source.source_id in wanted:
                    logger.warning(f"Duplicate source in configuration: {source.name}")
                    continue
                wanted[source.source_id] = source

            with self._lock:
                current = dict(self._handles)

            for source_id, handle in current.items():
                if source_id in wanted and handle.source == wanted[source_id] and not handle.draining:
                    continue
                if self._remove(handle):
                    if source_id not in wanted:
                        result.removed.append(source_id)
                else:
                    result.failed[source_id] = CaptureError(f"Drain not acknowledged for {handle.source.name}")

            with self._lock:
                current = dict(self._handles)

            for source_id, source in wanted.items():
                if source_id in result.failed:
                    continue
                handle = current.get(source_id)
                try:
                    if handle is None:
                        self._add(source)
                        result.added.append(source_id)
                    elif handle.producer is None or handle.producer.is_finished:
                        self._restart(handle)
                        result.restarted.append(source_id)
                    else:
                        result.unchanged.append(source_id)
                except (ConfigurationError, AllocationError, DecoderError) as e:
                    logger.error(f"❌ Failed to start {source.name}: {e}")
                    result.failed[source_id] = e

        if result.added or result.removed or result.restarted or result.failed:
            logger.info(f"Reconfigured sources: {len(result.added)} added, {len(result.removed)} removed, "
                        f"{len(result.restarted)} restarted, {len(result.failed)} failed")
        return result

    def _allocate_buffers(self, source_id: str) -> List[str]:
        """Allocate whichever buffers are missing; returns the kinds allocated by this call."""
        allocated = []
        if not self.capture_buffers.has(source_id):
            self.capture_buffers.allocate(
                self.audio.capture_seconds,
                self.audio.sample_rate,
                self.audio.bytes_per_sample,
                self.audio.channels,
                source_id,
            )
            allocated.append("capture")

        if not self.analysis_buffers.has(source_id):
            window_bytes = self.analysis.window_bytes(self.audio)
            try:
                self.analysis_buffers.allocate(
                    window_bytes,
                    self.analysis.overlap_bytes(self.audio),
                    source_id,
                    capacity_bytes=window_bytes * self.analysis.capacity_windows,
                    frame_bytes=self.audio.frame_bytes,
                )
            except AllocationError:
                self._free_buffers(source_id, allocated)
                raise
            allocated.append("analysis")
        return allocated

    def _free_buffers(self, source_id: str, kinds: Iterable[str] = ("capture", "analysis")) -> None:
        stores = {"capture": self.capture_buffers, "analysis": self.analysis_buffers}
        for kind in kinds:
            try:
                stores[kind].remove(source_id)
            except SourceNotFoundError:
                pass

    def _start_producer(self, handle: SourceHandle) -> CaptureProducer:
        try:
            producer = self.producer_factory(handle.source, self._make_sink(handle), self._on_degraded)
            producer.start()
        except (OSError, RuntimeError) as e:
            raise DecoderError(f"Failed to start producer for {handle.source.name}: {e}") from e
        return producer

    def _add(self, source: Source) -> None:
        source_id = source.source_id
        allocated = self._allocate_buffers(source_id)

        handle = SourceHandle(source=source)
        handle.active.set()
        self.level_monitor.register(source_id, source.name)
        # Visible before the producer runs so its callbacks can find the handle
        with self._lock:
            self._handles[source_id] = handle
        try:
            handle.producer = self._start_producer(handle)
        except (ConfigurationError, DecoderError):
            handle.active.clear()
            with self._lock:
                del self._handles[source_id]
            self.level_monitor.unregister(source_id)
            self._free_buffers(source_id, allocated)
            raise

        logger.info(f"⬆️ Stream {source.name} added")
        self._publish(source_id, "added", kind=source.kind.value)

    def _restart(self, handle: SourceHandle) -> None:
        with handle.lock:
            # The old producer already drained, so its sink can no longer write
            self._allocate_buffers(handle.source.source_id)
            if not self.level_monitor.is_registered(handle.source.source_id):
                self.level_monitor.register(handle.source.source_id, handle.source.name)
            handle.degraded = False
            handle.active.set()
            handle.producer = self._start_producer(handle)
        logger.info(f"🔄 Stream {handle.source.name} restarted")
        self._publish(handle.source.source_id, "restarted")

    def _remove(self, handle: SourceHandle) -> bool:
        """Stop a source's producer, wait for its drain acknowledgment, then free its buffers.

        Returns:
            False if the drain was not acknowledged; nothing is freed in that case
        """
        source_id = handle.source.source_id
        with handle.lock:
            # Routing stops before the producer is even asked to stop
            handle.active.clear()
            handle.draining = True

            producer = handle.producer
            if producer is not None:
                producer.cleanup()
                if not producer.wait_drained(self.drain_timeout):
                    logger.error(f"❌ {handle.source.name} did not acknowledge drain within "
                                 f"{self.drain_timeout}s, keeping its buffers")
                    return False

            self._free_buffers(source_id)
            self.level_monitor.unregister(source_id)
            with self._lock:
                if self._handles.get(source_id) is handle:
                    del self._handles[source_id]
            handle.draining = False
            handle.producer = None

        logger.info(f"⬇️ Stream {handle.source.name} removed")
        self._publish(source_id, "removed")
        return True

    def _on_degraded(self, source_id: str, error: StreamDegradedError) -> None:
        with self._lock:
            handle = self._handles.get(source_id)
        if handle is not None:
            handle.degraded = True
        logger.error(f"⚠️ Stream {source_id} degraded: {error}")
        self._publish(source_id, "degraded", error=str(error))

    def shutdown(self) -> None:
        """Stop every producer, then drain and free each source."""
        with self._reconfigure_lock:
            with self._lock:
                handles = list(self._handles.values())

            for handle in handles:
                handle.active.clear()
                if handle.producer is not None:
                    handle.producer.stop_event.set()

            for handle in handles:
                if not self._remove(handle):
                    logger.warning(f"Leaving buffers of {handle.source.name} allocated at shutdown")

        logger.info("StreamRegistry shut down")

    def read_range(self, source_id: str, start_time: float, end_time: float) -> bytes:
        """Clip retrieval from a source's capture buffer."""
        return self.capture_buffers.read_range(source_id, start_time, end_time)

    def available_range(self, source_id: str) -> Optional[tuple]:
        return self.capture_buffers.available_range(source_id)

    def sources(self) -> List[Source]:
        with self._lock:
            return [handle.source for handle in self._handles.values()]

    def get_source(self, source_id: str) -> Source:
        with self._lock:
            handle = self._handles.get(source_id)
        if handle is None:
            raise SourceNotFoundError(source_id)
        return handle.source

    def active_source_ids(self) -> List[str]:
        with self._lock:
            return [source_id for source_id, handle in self._handles.items() if handle.active.is_set()]

    def get_producer(self, source_id: str) -> Optional[CaptureProducer]:
        with self._lock:
            handle = self._handles.get(source_id)
        return handle.producer if handle else None

    def is_degraded(self, source_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(source_id)
        return bool(handle and handle.degraded)
