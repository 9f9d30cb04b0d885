"""Pull-based remote task queue with heartbeats and replayable logs."""

__version__ = "0.3.0"
