"""Publishers bridging capture core events onto pub/sub topics."""

import queue
import logging
import threading
from typing import Optional

from pubsub import pub

from .levels import LevelMonitor

logger = logging.getLogger(__name__)


class LevelPublisher:
    """Drains a level subscription and re-publishes each event via pubsub.pub.

    Listeners run on this publisher's thread, so slow presentation code
    never reaches the capture path.
    """

    def __init__(self, monitor: LevelMonitor, topic: str = "audio.level", maxsize: int = 100):
        """Initialize level publisher.

        Args:
            monitor: LevelMonitor to subscribe to
            topic: Pub/sub topic name for level events
            maxsize: Size of the bounded subscription queue
        """
        self.monitor = monitor
        self.topic = topic
        self.maxsize = maxsize
        self._queue: Optional[queue.Queue] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        logger.info(f"LevelPublisher initialized with topic: {topic}")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._queue = self.monitor.subscribe(self.maxsize)
        self._thread = threading.Thread(target=self._publish_loop, daemon=True)
        self._thread.name = "LevelPublisherThread"
        self._thread.start()

    def _publish_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                level = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                pub.sendMessage(self.topic, level=level)
            except Exception as e:
                logger.error(f"Level listener failed on {self.topic}: {e}", exc_info=True)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._queue is not None:
            self.monitor.unsubscribe(self._queue)
            self._queue = None


class StreamEventPublisher:
    """Publishes stream lifecycle events using pubsub.pub."""

    def __init__(self, topic: str = "stream.events"):
        self.topic = topic

    def publish(self, event) -> None:
        pub.sendMessage(self.topic, event=event)
        logger.debug(f"Published stream event: {event.event_type} for {event.source_id}")
