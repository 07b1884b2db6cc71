"""Feeds overlapping analysis windows from every active source to the classifier."""

import time
import queue
import logging
import threading
from typing import Callable, Dict, List, NamedTuple, Optional

from ..analysis.base import AbstractClassifier, pcm_to_float32
from ..config import AnalysisSettings, AudioSettings
from ..errors import SourceNotFoundError
from ..models.events import AnalysisEvent
from .stream_registry import StreamRegistry

logger = logging.getLogger(__name__)


class AnalysisTask(NamedTuple):
    """One extracted window waiting for the classifier."""
    source_id: str
    window: bytes
    window_index: int
    start_offset: int


class AnalysisService:
    """Per-source window readers feeding a pool of classifier worker threads.

    Readers block on their source's analysis buffer until a window is ready
    and hand it to a bounded task queue; a slow classifier only backs up
    that queue (excess windows are dropped), never the capture writers.
    """

    def __init__(self,
                 registry: StreamRegistry,
                 classifier: AbstractClassifier,
                 audio: AudioSettings,
                 settings: AnalysisSettings,
                 result_callback: Optional[Callable[[AnalysisEvent], None]] = None):
        self.registry = registry
        self.classifier = classifier
        self.audio = audio
        self.settings = settings
        self.result_callback = result_callback

        self.task_queue: queue.Queue = queue.Queue(maxsize=settings.queue_size)
        self.worker_threads: List[threading.Thread] = []
        self.readers: Dict[str, threading.Thread] = {}
        self.window_counters: Dict[str, int] = {}
        self.dropped_windows = 0
        self.processed_windows = 0

        self._scheduler_thread: Optional[threading.Thread] = None
        self.shutdown_event = threading.Event()

    def start(self) -> None:
        """Initialize the classifier and start the scheduler and worker pool."""
        if not self.classifier.initialize():
            raise RuntimeError("Classifier failed to initialize")

        self.shutdown_event.clear()
        for i in range(self.settings.workers):
            thread = threading.Thread(target=self._worker_loop)
            thread.name = f"worker_analysis_{i}"
            thread.daemon = True
            thread.start()
            self.worker_threads.append(thread)

        self._scheduler_thread = threading.Thread(target=self._schedule_loop, daemon=True)
        self._scheduler_thread.name = "AnalysisScheduler"
        self._scheduler_thread.start()
        logger.info(f"Started {len(self.worker_threads)} analysis workers")

    def _schedule_loop(self) -> None:
        """Keep exactly one window reader alive per active source."""
        while not self.shutdown_event.is_set():
            self.sync_readers()
            self.shutdown_event.wait(self.settings.poll_interval)

    def sync_readers(self) -> None:
        for source_id in [s for s, t in self.readers.items() if not t.is_alive()]:
            del self.readers[source_id]

        for source_id in self.registry.active_source_ids():
            if source_id in self.readers:
                continue
            thread = threading.Thread(target=self._reader_loop, args=(source_id,), daemon=True)
            thread.name = f"AnalysisReader-{source_id}"
            self.readers[source_id] = thread
            thread.start()

    def _reader_loop(self, source_id: str) -> None:
        buffers = self.registry.analysis_buffers
        logger.debug(f"Analysis reader for {source_id} starting")
        try:
            while not self.shutdown_event.is_set():
                if source_id not in self.registry.active_source_ids():
                    break
                if not buffers.wait_for_data(source_id, timeout=self.settings.poll_interval):
                    continue
                extracted = buffers.extract_window(source_id)
                if extracted is not None:
                    start_offset, window = extracted
                    self._enqueue(source_id, window, start_offset)
        except SourceNotFoundError:
            pass
        logger.debug(f"Analysis reader for {source_id} exiting")

    def _enqueue(self, source_id: str, window: bytes, start_offset: int) -> None:
        index = self.window_counters.get(source_id, 0)
        self.window_counters[source_id] = index + 1
        task = AnalysisTask(source_id=source_id, window=window, window_index=index, start_offset=start_offset)
        try:
            self.task_queue.put_nowait(task)
        except queue.Full:
            self.dropped_windows += 1
            logger.warning(f"Classifier falling behind, dropped window {index} of {source_id}")

    def _worker_loop(self) -> None:
        thread_name = threading.current_thread().name
        while True:
            task = self.task_queue.get()
            if task is None:
                logger.debug(f"Worker {thread_name} received sentinel, exiting.")
                self.task_queue.task_done()
                break
            try:
                self._classify(task)
            except Exception as e:
                logger.error(f"Classification failed for {task.source_id} window {task.window_index}: {e}",
                             exc_info=True)
            finally:
                self.task_queue.task_done()

    def _classify(self, task: AnalysisTask) -> None:
        samples = pcm_to_float32(task.window, self.audio.channels)
        started = time.time()
        predictions = self.classifier.predict(samples)
        processing_time = time.time() - started
        self.processed_windows += 1

        logger.debug(f"Classified {task.source_id} window {task.window_index} in {processing_time:.3f}s")
        if self.result_callback:
            self.result_callback(AnalysisEvent(
                source_id=task.source_id,
                window_index=task.window_index,
                window_start_offset=task.start_offset,
                predictions=predictions,
                processing_time=processing_time,
            ))

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stop readers, let workers finish queued windows, then stop workers."""
        self.shutdown_event.set()
        if self._scheduler_thread and self._scheduler_thread.is_alive():
            self._scheduler_thread.join(timeout=2.0)
        for thread in list(self.readers.values()):
            thread.join(timeout=2.0)

        deadline = time.time() + timeout
        while self.task_queue.unfinished_tasks and time.time() < deadline:
            time.sleep(0.05)
        if self.task_queue.unfinished_tasks:
            logger.warning(f"{self.task_queue.unfinished_tasks} analysis windows left unprocessed")

        for _ in self.worker_threads:
            self.task_queue.put(None)
        for thread in self.worker_threads:
            thread.join(2.0)
            if thread.is_alive():
                logger.warning(f"Worker thread {thread.name} did not terminate cleanly.")
        self.worker_threads.clear()

        self.classifier.cleanup()
        logger.info("Analysis service shutdown complete.")
