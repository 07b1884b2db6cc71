"""Per-source ring buffers for clip retention and classifier window extraction."""

import time
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import (
    AllocationError,
    BufferRangeError,
    DuplicateSourceError,
    SourceNotFoundError,
)
from ..models.audio import BufferStats

logger = logging.getLogger(__name__)


def _ring_write(ring: bytearray, offset: int, data: bytes) -> None:
    """Copy data into ring starting at absolute stream offset, wrapping around."""
    capacity = len(ring)
    view = memoryview(data)
    if len(view) > capacity:
        # Only the trailing capacity bytes survive
        offset += len(view) - capacity
        view = view[-capacity:]

    pos = offset % capacity
    first = min(len(view), capacity - pos)
    ring[pos:pos + first] = view[:first]
    if first < len(view):
        ring[:len(view) - first] = view[first:]


def _ring_read(ring: bytearray, start: int, end: int) -> bytes:
    """Copy absolute stream offsets [start, end) out of ring."""
    capacity = len(ring)
    length = end - start
    pos = start % capacity
    if pos + length <= capacity:
        return bytes(ring[pos:pos + length])
    first = capacity - pos
    return bytes(ring[pos:]) + bytes(ring[:length - first])


class CaptureBuffer:
    """Fixed-capacity circular store that keeps the most recent N seconds of PCM.

    Byte offsets map to wall-clock time through a fixed anchor taken at the
    first write, so clip requests can be expressed as (start, end) timestamps.
    """

    def __init__(self, duration_seconds: float, sample_rate: int, bytes_per_sample: int,
                 channels: int, clock: Callable[[], float] = time.time):
        """Allocate the capture ring.

        Args:
            duration_seconds: Seconds of audio to retain
            sample_rate: Audio sample rate in Hz
            bytes_per_sample: Bytes per sample (2 for 16-bit)
            channels: Number of interleaved channels
            clock: Wall-clock source, injectable for tests
        """
        if duration_seconds <= 0 or sample_rate <= 0 or bytes_per_sample <= 0 or channels <= 0:
            raise AllocationError(
                f"Invalid capture buffer sizing: {duration_seconds}s, {sample_rate}Hz, "
                f"{bytes_per_sample} bytes/sample, {channels} channels")

        self.duration_seconds = duration_seconds
        self.sample_rate = sample_rate
        self.bytes_per_sample = bytes_per_sample
        self.channels = channels
        self.frame_bytes = bytes_per_sample * channels
        self.bytes_per_second = sample_rate * self.frame_bytes
        self.capacity_bytes = int(duration_seconds * sample_rate * bytes_per_sample * channels)
        if self.capacity_bytes < self.frame_bytes:
            raise AllocationError(f"Capture buffer too small: {self.capacity_bytes} bytes")

        try:
            self._ring = bytearray(self.capacity_bytes)
        except MemoryError as e:
            raise AllocationError(f"Cannot reserve {self.capacity_bytes} bytes: {e}") from e

        self._clock = clock
        self._lock = threading.Lock()
        self._total_written = 0
        self._anchor_time: Optional[float] = None

    def write(self, data: bytes) -> None:
        """Append PCM bytes, overwriting the oldest bytes once full."""
        if not data:
            return
        with self._lock:
            if self._anchor_time is None:
                self._anchor_time = self._clock()
            _ring_write(self._ring, self._total_written, data)
            self._total_written += len(data)

    def _offset_for(self, timestamp: float) -> int:
        frames = int(round((timestamp - self._anchor_time) * self.sample_rate))
        return frames * self.frame_bytes

    def read_range(self, start_time: float, end_time: float) -> bytes:
        """Return the bytes captured between two wall-clock timestamps.

        Raises:
            BufferRangeError: if the range is empty, any byte of it was already
                overwritten, or it extends past what has been captured
        """
        if end_time <= start_time:
            raise BufferRangeError(f"Empty range: {start_time} - {end_time}")

        with self._lock:
            if self._anchor_time is None:
                raise BufferRangeError("No audio captured yet")

            start = self._offset_for(start_time)
            end = self._offset_for(end_time)
            oldest = max(0, self._total_written - self.capacity_bytes)

            if start < oldest:
                raise BufferRangeError(
                    f"Range start {start_time:.3f} already overwritten "
                    f"(oldest available {self._time_for(oldest):.3f})")
            if end > self._total_written:
                raise BufferRangeError(
                    f"Range end {end_time:.3f} not captured yet "
                    f"(newest available {self._time_for(self._total_written):.3f})")
            if end == start:
                raise BufferRangeError("Range shorter than one frame")

            return _ring_read(self._ring, start, end)

    def _time_for(self, offset: int) -> float:
        return self._anchor_time + offset / self.bytes_per_second

    def available_range(self) -> Optional[tuple]:
        """(oldest, newest) timestamps currently retrievable, or None before the first write."""
        with self._lock:
            if self._anchor_time is None:
                return None
            oldest = max(0, self._total_written - self.capacity_bytes)
            return self._time_for(oldest), self._time_for(self._total_written)

    def stats(self) -> BufferStats:
        with self._lock:
            return BufferStats(
                capacity_bytes=self.capacity_bytes,
                total_written=self._total_written,
                available_bytes=min(self._total_written, self.capacity_bytes),
            )


class AnalysisBuffer:
    """Circular store that hands out overlapping classifier windows.

    Each extracted window is exactly ``window_bytes`` long; the read cursor
    then advances by ``window_bytes - overlap_bytes`` so the trailing overlap
    is the head of the next window without copying unconsumed audio.
    """

    def __init__(self, window_bytes: int, overlap_bytes: int, capacity_bytes: Optional[int] = None,
                 frame_bytes: int = 2):
        if window_bytes <= 0 or window_bytes % frame_bytes:
            raise AllocationError(f"Window must be a positive multiple of {frame_bytes} bytes: {window_bytes}")
        if overlap_bytes < 0 or overlap_bytes >= window_bytes or overlap_bytes % frame_bytes:
            raise AllocationError(f"Invalid overlap {overlap_bytes} for window {window_bytes}")

        capacity_bytes = capacity_bytes or window_bytes * 3
        if capacity_bytes < window_bytes:
            raise AllocationError(f"Capacity {capacity_bytes} smaller than one window ({window_bytes})")

        self.window_bytes = window_bytes
        self.overlap_bytes = overlap_bytes
        self.step_bytes = window_bytes - overlap_bytes
        self.capacity_bytes = capacity_bytes

        try:
            self._ring = bytearray(capacity_bytes)
        except MemoryError as e:
            raise AllocationError(f"Cannot reserve {capacity_bytes} bytes: {e}") from e

        self._cond = threading.Condition(threading.Lock())
        self._total_written = 0
        self._read_offset = 0
        self._overruns = 0

    def _unread(self) -> int:
        return self._total_written - self._read_offset

    def write(self, data: bytes) -> None:
        """Append PCM bytes; drops the oldest unread bytes if the reader falls behind."""
        if not data:
            return
        with self._cond:
            _ring_write(self._ring, self._total_written, data)
            self._total_written += len(data)

            if self._unread() > self.capacity_bytes:
                dropped = self._unread() - self.capacity_bytes
                self._read_offset = self._total_written - self.capacity_bytes
                self._overruns += 1
                logger.debug(f"Analysis buffer overrun: dropped {dropped} unread bytes")

            if self._unread() >= self.window_bytes:
                self._cond.notify_all()

    def has_enough_data(self) -> bool:
        with self._cond:
            return self._unread() >= self.window_bytes

    def extract_window(self) -> Optional[Tuple[int, bytes]]:
        """Return (stream offset, window) and advance past everything but its overlap tail.

        Offset and window are taken under one lock; a concurrent overrun
        moves the cursor either before or after, never in between.
        """
        with self._cond:
            if self._unread() < self.window_bytes:
                return None
            start = self._read_offset
            window = _ring_read(self._ring, start, start + self.window_bytes)
            self._read_offset += self.step_bytes
            return start, window

    def wait_for_data(self, timeout: Optional[float] = None) -> bool:
        """Block until a full window is buffered.

        Returns:
            True if a window is available, False on timeout
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._unread() >= self.window_bytes, timeout)

    @property
    def read_offset(self) -> int:
        """Absolute stream offset where the next window starts."""
        with self._cond:
            return self._read_offset

    def stats(self) -> BufferStats:
        with self._cond:
            return BufferStats(
                capacity_bytes=self.capacity_bytes,
                total_written=self._total_written,
                available_bytes=self._unread(),
                overruns=self._overruns,
            )


class _BufferStore:
    """Map of source id to buffer.

    The map lock only covers lookups, inserts and deletes; every buffer
    carries its own lock, so operations on distinct sources never contend.
    """

    kind = "buffer"

    def __init__(self):
        self._buffers: Dict[str, object] = {}
        self._lock = threading.Lock()

    def _insert(self, source_id: str, factory: Callable[[], object]) -> None:
        with self._lock:
            if source_id in self._buffers:
                raise DuplicateSourceError(source_id)

        buffer = factory()

        with self._lock:
            if source_id in self._buffers:
                raise DuplicateSourceError(source_id)
            self._buffers[source_id] = buffer

    def _get(self, source_id: str):
        with self._lock:
            buffer = self._buffers.get(source_id)
        if buffer is None:
            raise SourceNotFoundError(source_id)
        return buffer

    def has(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._buffers

    def remove(self, source_id: str) -> None:
        """Free the buffer for a source. Callers must ensure its writer has stopped."""
        with self._lock:
            if self._buffers.pop(source_id, None) is None:
                raise SourceNotFoundError(source_id)
        logger.info(f"Removed {self.kind} for {source_id}")

    def source_ids(self) -> List[str]:
        with self._lock:
            return list(self._buffers)

    def stats(self, source_id: str) -> BufferStats:
        return self._get(source_id).stats()


class CaptureBufferStore(_BufferStore):
    """Capture buffers for all sources."""

    kind = "capture buffer"

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__()
        self._clock = clock

    def allocate(self, duration_seconds: float, sample_rate: int, bytes_per_sample: int,
                 channels: int, source_id: str) -> None:
        """Reserve a capture ring for a source.

        Raises:
            DuplicateSourceError: if the source already has a capture buffer
            AllocationError: if the sizing is invalid or memory is exhausted
        """
        self._insert(source_id, lambda: CaptureBuffer(
            duration_seconds, sample_rate, bytes_per_sample, channels, clock=self._clock))
        logger.info(f"Capture buffer allocated for {source_id}: {duration_seconds}s, "
                    f"{int(duration_seconds * sample_rate * bytes_per_sample * channels)} bytes")

    def write(self, source_id: str, data: bytes) -> None:
        self._get(source_id).write(data)

    def read_range(self, source_id: str, start_time: float, end_time: float) -> bytes:
        return self._get(source_id).read_range(start_time, end_time)

    def available_range(self, source_id: str) -> Optional[tuple]:
        return self._get(source_id).available_range()


class AnalysisBufferStore(_BufferStore):
    """Analysis buffers for all sources."""

    kind = "analysis buffer"

    def allocate(self, window_bytes: int, overlap_bytes: int, source_id: str,
                 capacity_bytes: Optional[int] = None, frame_bytes: int = 2) -> None:
        """Reserve an analysis ring holding at least one window.

        Raises:
            DuplicateSourceError: if the source already has an analysis buffer
            AllocationError: if the window/overlap sizing is invalid
        """
        self._insert(source_id, lambda: AnalysisBuffer(
            window_bytes, overlap_bytes, capacity_bytes=capacity_bytes, frame_bytes=frame_bytes))
        logger.info(f"Analysis buffer allocated for {source_id}: window {window_bytes} bytes, "
                    f"overlap {overlap_bytes} bytes")

    def write(self, source_id: str, data: bytes) -> None:
        self._get(source_id).write(data)

    def has_enough_data(self, source_id: str) -> bool:
        return self._get(source_id).has_enough_data()

    def extract_window(self, source_id: str) -> Optional[Tuple[int, bytes]]:
        return self._get(source_id).extract_window()

    def wait_for_data(self, source_id: str, timeout: Optional[float] = None) -> bool:
        return self._get(source_id).wait_for_data(timeout)

    def read_offset(self, source_id: str) -> int:
        return self._get(source_id).read_offset
