"""Unit tests for capture and analysis ring buffers."""

import pytest
import threading
import time

from dawnchorus.audio.buffer import (
    AnalysisBuffer,
    AnalysisBufferStore,
    CaptureBuffer,
    CaptureBufferStore,
)
from dawnchorus.errors import (
    AllocationError,
    BufferRangeError,
    DuplicateSourceError,
    SourceNotFoundError,
)


def pattern(length, start=0):
    """Bytes whose value reveals their absolute position."""
    return bytes((start + i) % 256 for i in range(length))


@pytest.mark.unit
class TestCaptureBuffer:
    """Test cases for CaptureBuffer."""

    def test_capacity_formula(self):
        """Capacity is duration x rate x bytes per sample x channels."""
        buffer = CaptureBuffer(60, 48000, 2, 1)
        assert buffer.capacity_bytes == 5_760_000

        stereo = CaptureBuffer(1.5, 1000, 2, 2)
        assert stereo.capacity_bytes == 6000

    def test_invalid_sizing_raises_allocation_error(self):
        """Zero or negative sizing is rejected."""
        with pytest.raises(AllocationError):
            CaptureBuffer(0, 48000, 2, 1)
        with pytest.raises(AllocationError):
            CaptureBuffer(1, -1, 2, 1)

    def test_read_range_within_buffer(self, fake_clock):
        """Bytes are retrieved by wall-clock range from the first write."""
        buffer = CaptureBuffer(1, 100, 2, 1, clock=fake_clock)
        buffer.write(pattern(100))

        start = fake_clock.now
        assert buffer.read_range(start, start + 0.5) == pattern(100)
        assert buffer.read_range(start + 0.1, start + 0.2) == pattern(20, start=20)

    def test_newest_wins_after_wraparound(self, fake_clock):
        """Once full, the oldest bytes are overwritten by the newest."""
        buffer = CaptureBuffer(1, 100, 2, 1, clock=fake_clock)
        start = fake_clock.now
        buffer.write(pattern(300))

        assert buffer.stats().available_bytes == 200
        assert buffer.read_range(start + 0.5, start + 1.5) == pattern(200, start=100)

        with pytest.raises(BufferRangeError):
            buffer.read_range(start, start + 0.1)

    def test_write_larger_than_capacity_keeps_tail(self, fake_clock):
        """A single oversized write keeps only its trailing capacity bytes."""
        buffer = CaptureBuffer(1, 100, 2, 1, clock=fake_clock)
        start = fake_clock.now
        buffer.write(pattern(500))

        assert buffer.read_range(start + 1.5, start + 2.5) == pattern(200, start=300)

    def test_read_range_errors(self, fake_clock):
        """Empty, future and pre-capture ranges are rejected."""
        buffer = CaptureBuffer(1, 100, 2, 1, clock=fake_clock)
        start = fake_clock.now

        with pytest.raises(BufferRangeError):
            buffer.read_range(start, start + 0.1)  # nothing written yet

        buffer.write(pattern(100))
        with pytest.raises(BufferRangeError):
            buffer.read_range(start + 0.2, start + 0.1)
        with pytest.raises(BufferRangeError):
            buffer.read_range(start + 0.4, start + 0.6)  # not captured yet
        with pytest.raises(BufferRangeError):
            buffer.read_range(start + 0.1, start + 0.101)  # shorter than one frame

    def test_available_range(self, fake_clock):
        """Available range tracks the retained window."""
        buffer = CaptureBuffer(1, 100, 2, 1, clock=fake_clock)
        assert buffer.available_range() is None

        start = fake_clock.now
        buffer.write(pattern(300))
        oldest, newest = buffer.available_range()
        assert oldest == pytest.approx(start + 0.5)
        assert newest == pytest.approx(start + 1.5)

    def test_empty_write_ignored(self, fake_clock):
        """Empty writes neither anchor the clock nor count."""
        buffer = CaptureBuffer(1, 100, 2, 1, clock=fake_clock)
        buffer.write(b"")
        assert buffer.available_range() is None
        assert buffer.stats().total_written == 0


@pytest.mark.unit
class TestAnalysisBuffer:
    """Test cases for AnalysisBuffer."""

    def test_default_capacity_is_three_windows(self):
        buffer = AnalysisBuffer(window_bytes=8, overlap_bytes=4)
        assert buffer.capacity_bytes == 24
        assert buffer.step_bytes == 4

    def test_invalid_sizing(self):
        """Overlap must be smaller than the window and frame aligned."""
        with pytest.raises(AllocationError):
            AnalysisBuffer(window_bytes=8, overlap_bytes=8)
        with pytest.raises(AllocationError):
            AnalysisBuffer(window_bytes=8, overlap_bytes=3)
        with pytest.raises(AllocationError):
            AnalysisBuffer(window_bytes=0, overlap_bytes=0)
        with pytest.raises(AllocationError):
            AnalysisBuffer(window_bytes=8, overlap_bytes=0, capacity_bytes=4)

    def test_windows_overlap_and_advance(self):
        """Each window starts window - overlap bytes after the previous one."""
        buffer = AnalysisBuffer(window_bytes=8, overlap_bytes=4)
        buffer.write(pattern(20))

        windows = []
        while buffer.has_enough_data():
            windows.append(buffer.extract_window())

        assert windows == [(s, pattern(8, start=s)) for s in (0, 4, 8, 12)]
        assert buffer.extract_window() is None
        assert buffer.read_offset == 16

    def test_no_overlap(self):
        buffer = AnalysisBuffer(window_bytes=8, overlap_bytes=0)
        buffer.write(pattern(16))
        assert buffer.extract_window() == (0, pattern(8))
        assert buffer.extract_window() == (8, pattern(8, start=8))
        assert buffer.extract_window() is None

    @pytest.mark.parametrize("window,overlap,chunk", [
        (8, 4, 6),
        (8, 2, 10),
        (12, 6, 2),
        (10, 0, 14),
    ])
    def test_continuous_feed_across_wraparound(self, window, overlap, chunk):
        """Fed in chunks while extracting, windows match the stream well past the ring's capacity."""
        buffer = AnalysisBuffer(window_bytes=window, overlap_bytes=overlap)
        step = window - overlap
        written = 0
        extracted = []

        while written < buffer.capacity_bytes * 10:
            buffer.write(pattern(chunk, start=written))
            written += chunk
            while buffer.has_enough_data():
                extracted.append(buffer.extract_window())

        assert buffer.stats().overruns == 0
        assert len(extracted) == (written - window) // step + 1
        for index, (offset, data) in enumerate(extracted):
            assert offset == index * step
            assert data == pattern(window, start=offset)
        for (_, previous), (_, current) in zip(extracted, extracted[1:]):
            assert previous[step:] == current[:overlap]

    def test_overrun_drops_oldest_unread(self):
        """A reader that falls behind loses the oldest bytes, not the newest."""
        buffer = AnalysisBuffer(window_bytes=8, overlap_bytes=4)
        buffer.write(pattern(30))

        stats = buffer.stats()
        assert stats.overruns == 1
        assert stats.available_bytes == 24
        assert buffer.extract_window() == (6, pattern(8, start=6))

    def test_offset_travels_with_window_after_overrun(self):
        """An overrun between polls moves the cursor; the returned offset still names the window returned."""
        store = AnalysisBufferStore()
        store.allocate(8, 4, "cam", capacity_bytes=16)
        store.write("cam", pattern(8))
        assert store.read_offset("cam") == 0

        store.write("cam", pattern(16, start=8))

        offset, window = store.extract_window("cam")
        assert offset == 8
        assert window == pattern(8, start=offset)

    def test_wait_for_data_times_out(self):
        buffer = AnalysisBuffer(window_bytes=8, overlap_bytes=0)
        assert buffer.wait_for_data(timeout=0.05) is False

    def test_wait_for_data_wakes_on_write(self):
        """A blocked reader wakes as soon as a full window is written."""
        buffer = AnalysisBuffer(window_bytes=8, overlap_bytes=0)

        def writer():
            time.sleep(0.05)
            buffer.write(pattern(4))
            buffer.write(pattern(4, start=4))

        thread = threading.Thread(target=writer)
        thread.start()
        assert buffer.wait_for_data(timeout=2.0) is True
        thread.join()
        assert buffer.extract_window() == (0, pattern(8))


@pytest.mark.unit
class TestBufferStores:
    """Test cases for per-source buffer stores."""

    def test_duplicate_allocation(self):
        store = CaptureBufferStore()
        store.allocate(1, 100, 2, 1, "mic")
        with pytest.raises(DuplicateSourceError) as exc_info:
            store.allocate(1, 100, 2, 1, "mic")
        assert exc_info.value.source_id == "mic"

    def test_unknown_source(self):
        store = AnalysisBufferStore()
        with pytest.raises(SourceNotFoundError):
            store.write("missing", b"\x00\x00")
        with pytest.raises(SourceNotFoundError):
            store.extract_window("missing")
        with pytest.raises(SourceNotFoundError):
            store.remove("missing")

    def test_not_found_after_remove(self):
        """Every operation on a freed source reports it as unknown."""
        store = CaptureBufferStore()
        store.allocate(1, 100, 2, 1, "mic")
        store.write("mic", pattern(10))
        store.remove("mic")

        assert not store.has("mic")
        with pytest.raises(SourceNotFoundError):
            store.write("mic", pattern(10))
        with pytest.raises(SourceNotFoundError):
            store.read_range("mic", 0, 1)

    def test_failed_allocation_leaves_no_entry(self):
        store = AnalysisBufferStore()
        with pytest.raises(AllocationError):
            store.allocate(8, 8, "cam")
        assert not store.has("cam")
        store.allocate(8, 4, "cam")
        assert store.source_ids() == ["cam"]

    def test_concurrent_writes_to_distinct_sources(self, fake_clock):
        """Writers on different sources never corrupt each other's data."""
        store = CaptureBufferStore(clock=fake_clock)
        source_ids = [f"src{i}" for i in range(4)]
        for source_id in source_ids:
            store.allocate(1, 1000, 2, 1, source_id)

        def writer(index, source_id):
            chunk = bytes([index]) * 20
            for _ in range(50):
                store.write(source_id, chunk)

        threads = [threading.Thread(target=writer, args=(i, s)) for i, s in enumerate(source_ids)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        start = fake_clock.now
        for index, source_id in enumerate(source_ids):
            assert store.stats(source_id).total_written == 1000
            assert store.read_range(source_id, start, start + 0.5) == bytes([index]) * 1000
