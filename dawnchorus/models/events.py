"""Event models for the pub/sub capture architecture."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List


@dataclass
class StreamEvent:
    """Stream lifecycle event ("added", "removed", "degraded", "restarted")."""
    source_id: str
    event_type: str
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AnalysisEvent:
    """Classifier output for one analysis window."""
    source_id: str
    window_index: int
    window_start_offset: int  # Byte offset of the window in the source's stream
    predictions: List[Any]
    processing_time: float
    timestamp: datetime = field(default_factory=datetime.now)
