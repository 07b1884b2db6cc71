"""Services layer: source registry and analysis scheduling."""

from .stream_registry import StreamRegistry, ReconfigureResult, SourceHandle, make_producer_factory
from .analysis_service import AnalysisService

__all__ = [
    "StreamRegistry",
    "ReconfigureResult",
    "SourceHandle",
    "make_producer_factory",
    "AnalysisService",
]
