"""Signal level metering and activity tracking per capture source."""

import time
import queue
import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

import numpy as np

from ..models.audio import AudioLevelData

logger = logging.getLogger(__name__)

INT16_FULL_SCALE = 32768.0
CLIPPING_LEVEL = 95


def calculate_audio_level(samples: bytes, source: str, name: str = "",
                          floor_db: float = -60.0, ceiling_db: float = 0.0) -> AudioLevelData:
    """Compute a 0-100 level and clipping flag for little-endian int16 PCM.

    The RMS is converted to dBFS and mapped linearly so ``floor_db`` reads 0
    and ``ceiling_db`` reads 100. A sample at either int16 extreme counts as
    clipping and forces the level to at least 95.
    """
    if len(samples) % 2:
        samples = samples[:-1]
    if not samples:
        return AudioLevelData(source=source, level=0, clipping=False, name=name)

    pcm = np.frombuffer(samples, dtype="<i2")
    clipping = bool(np.any((pcm == 32767) | (pcm == -32768)))

    rms = float(np.sqrt(np.mean(np.square(pcm.astype(np.float64)))))
    if rms > 0:
        db = 20.0 * np.log10(rms / INT16_FULL_SCALE)
        scaled = (db - floor_db) * (100.0 / (ceiling_db - floor_db))
    else:
        scaled = 0.0

    if clipping:
        scaled = max(scaled, CLIPPING_LEVEL)

    level = int(min(max(scaled, 0.0), 100.0))
    return AudioLevelData(source=source, level=level, clipping=clipping, name=name)


@dataclass
class _LevelState:
    data: AudioLevelData
    last_update: float
    last_non_zero: float


class LevelMonitor:
    """Tracks per-source levels and fans level events out to bounded queues.

    ``observe`` runs on capture threads and never blocks: when a subscriber
    queue is full its oldest event is discarded to make room.
    """

    def __init__(self, inactivity_threshold: float = 15.0, floor_db: float = -60.0,
                 ceiling_db: float = 0.0, clock: Callable[[], float] = time.monotonic):
        if ceiling_db <= floor_db:
            raise ValueError(f"Level ceiling ({ceiling_db} dB) must be above floor ({floor_db} dB)")
        self.inactivity_threshold = inactivity_threshold
        self.floor_db = floor_db
        self.ceiling_db = ceiling_db
        self._clock = clock

        self._states: Dict[str, _LevelState] = {}
        self._lock = threading.Lock()

        self._subscribers: List[queue.Queue] = []
        self._subscribers_lock = threading.Lock()
        self.dropped_events = 0

        self._ticker_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def register(self, source_id: str, name: str) -> None:
        """Add a source at level 0; new sources count as active."""
        now = self._clock()
        with self._lock:
            self._states[source_id] = _LevelState(
                data=AudioLevelData(source=source_id, level=0, clipping=False, name=name),
                last_update=now,
                last_non_zero=now,
            )

    def unregister(self, source_id: str) -> None:
        with self._lock:
            self._states.pop(source_id, None)

    def is_registered(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._states

    def _is_inactive(self, state: _LevelState, now: float) -> bool:
        return (now - state.last_update > self.inactivity_threshold
                or now - state.last_non_zero > self.inactivity_threshold)

    def observe(self, source_id: str, chunk: bytes) -> Optional[AudioLevelData]:
        """Meter one PCM chunk and publish the resulting level.

        Returns:
            The level as stored (0 while inactive), or None for unknown sources
        """
        with self._lock:
            state = self._states.get(source_id)
            if state is None:
                return None
            name = state.data.name

        data = calculate_audio_level(chunk, source_id, name, self.floor_db, self.ceiling_db)
        now = self._clock()

        with self._lock:
            state = self._states.get(source_id)
            if state is None:
                return None
            state.last_update = now
            if data.level > 0:
                state.last_non_zero = now
            if self._is_inactive(state, now):
                data = replace(data, level=0)
            state.data = data

        self._emit(data)
        return data

    def check_activity(self) -> bool:
        """Zero the level of every inactive source.

        Returns:
            True if any level changed
        """
        now = self._clock()
        changed = []
        with self._lock:
            for state in self._states.values():
                if state.data.level != 0 and self._is_inactive(state, now):
                    state.data = replace(state.data, level=0)
                    changed.append(state.data)

        for data in changed:
            self._emit(data)
        return bool(changed)

    def get_level(self, source_id: str) -> Optional[AudioLevelData]:
        with self._lock:
            state = self._states.get(source_id)
            return state.data if state else None

    def snapshot(self) -> Dict[str, AudioLevelData]:
        with self._lock:
            return {source_id: state.data for source_id, state in self._states.items()}

    def levels_message(self) -> Dict[str, object]:
        """All current levels in the presentation layer's message format."""
        return {
            "type": "audio-level",
            "levels": {source_id: data.to_dict() for source_id, data in self.snapshot().items()},
        }

    def subscribe(self, maxsize: int = 100) -> queue.Queue:
        """Return a bounded queue that receives every future level event."""
        q = queue.Queue(maxsize=maxsize)
        with self._subscribers_lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._subscribers_lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def _emit(self, data: AudioLevelData) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)

        for q in subscribers:
            while True:
                try:
                    q.put_nowait(data)
                    break
                except queue.Full:
                    try:
                        q.get_nowait()
                    except queue.Empty:
                        continue
                    with self._subscribers_lock:
                        self.dropped_events += 1

    def start_activity_checks(self, interval: float = 1.0) -> None:
        """Run check_activity on a background ticker."""
        if self._ticker_thread and self._ticker_thread.is_alive():
            return
        self._stop_event.clear()
        self._ticker_thread = threading.Thread(target=self._activity_loop, args=(interval,), daemon=True)
        self._ticker_thread.name = "LevelActivityThread"
        self._ticker_thread.start()

    def _activity_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            self.check_activity()

    def stop(self) -> None:
        self._stop_event.set()
        if self._ticker_thread and self._ticker_thread.is_alive():
            self._ticker_thread.join(timeout=2.0)
            if self._ticker_thread.is_alive():
                logger.warning("Level activity thread did not stop cleanly")
