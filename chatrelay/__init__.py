"""Real-time WebSocket chat relay with a shared roster and bounded history."""

__version__ = "0.1.0"
