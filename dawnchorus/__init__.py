"""DawnChorus: capture and buffering core for an edge bioacoustic monitor."""

__version__ = "0.1.0"
