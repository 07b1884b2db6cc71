"""Analysis result publisher for pub/sub event publishing."""

import logging
from typing import Callable
from pubsub import pub
from ..models.events import AnalysisEvent

logger = logging.getLogger(__name__)


class AnalysisPublisher:
    """Publishes classifier results using pubsub.pub."""

    def __init__(self, topic: str = "analysis.results"):
        """Initialize analysis publisher.

        Args:
            topic: Pub/sub topic name for classifier results
        """
        self.topic = topic
        logger.info(f"AnalysisPublisher initialized with topic: {topic}")

    def publish_analysis_event(self, event: AnalysisEvent) -> None:
        """Publish one window's predictions to the pub/sub topic."""
        pub.sendMessage(self.topic, event=event)
        logger.debug(f"Published analysis result: {event.source_id} window {event.window_index}")

    def get_callback(self) -> Callable[[AnalysisEvent], None]:
        """Get callback function for AnalysisService to use."""
        return self.publish_analysis_event
