"""Telemetry WebSocket Bridge: upstream vehicle telemetry feed to a durable store."""

__version__ = "1.0.0"
