"""Capture source models."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit

from ..errors import ConfigurationError

STREAM_SCHEMES = ("rtsp", "rtsps", "rtmp", "http", "https")


class SourceKind(Enum):
    """Kind of capture source."""
    DEVICE = "device"
    STREAM = "stream"


@dataclass(frozen=True)
class Source:
    """A capture source, identified by device token or stream URL."""
    source_id: str
    kind: SourceKind
    transport: str = "tcp"
    display_name: Optional[str] = None

    def validate(self) -> None:
        """Raise ConfigurationError if this source cannot be captured."""
        if not self.source_id or not self.source_id.strip():
            raise ConfigurationError("Source identifier must not be empty")

        if self.kind is SourceKind.STREAM:
            parts = urlsplit(self.source_id)
            if parts.scheme.lower() not in STREAM_SCHEMES or not parts.hostname:
                raise ConfigurationError(f"Invalid stream URL: {clean_rtsp_url(self.source_id)}")
            if self.transport not in ("tcp", "udp"):
                raise ConfigurationError(f"Unsupported stream transport: {self.transport}")

    @property
    def name(self) -> str:
        """Human-readable name, never containing stream credentials."""
        if self.display_name:
            return self.display_name
        if self.kind is SourceKind.STREAM:
            return clean_rtsp_url(self.source_id)
        return self.source_id


def clean_rtsp_url(url: str) -> str:
    """Strip credentials and path from a stream URL for display."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    # Credentials end at the last '@' before the path
    host_part = rest.split("/", 1)[0]
    if "@" in host_part:
        host_part = host_part.rsplit("@", 1)[1]
    return f"{scheme}://{host_part}"


def anonymized_name(source: Source, index: int) -> str:
    """Display name that reveals nothing about the source."""
    if source.kind is SourceKind.DEVICE:
        return f"audio-source-{index}"
    return f"camera-{index}"
