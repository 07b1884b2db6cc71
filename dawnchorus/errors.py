"""Error taxonomy for the capture core."""


class CaptureError(Exception):
    """Base class for all capture core errors."""


class ConfigurationError(CaptureError):
    """Invalid or unreachable source, or invalid settings."""


class AllocationError(CaptureError):
    """Buffer reservation failed."""


class DuplicateSourceError(AllocationError):
    """A buffer is already allocated for this source."""

    def __init__(self, source_id: str):
        super().__init__(f"Buffer already allocated for source: {source_id}")
        self.source_id = source_id


class SourceNotFoundError(CaptureError):
    """No buffer or handle exists for this source."""

    def __init__(self, source_id: str):
        super().__init__(f"Unknown source: {source_id}")
        self.source_id = source_id


class BufferRangeError(CaptureError):
    """Requested clip range is no longer (or not yet) in the buffer."""


class DecoderError(CaptureError):
    """Decoder subprocess failed to start or exited."""


class StreamDegradedError(DecoderError):
    """Decoder restart budget exhausted."""
