"""Exception hierarchy for the telemetry bridge.

Every error is absorbed at the boundary where it occurs; none of these are
meant to crash the process.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class TransportError(BridgeError):
    """Connection-level failure (refused, handshake, ping timeout).

    Triggers the reconnect policy once the close event follows.
    """


class TransportClosed(TransportError):
    """The upstream connection closed."""

    def __init__(self, code: int = 1006, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Connection closed: {code} - {reason}")


class DecodeError(BridgeError):
    """A single inbound message could not be decoded into an envelope."""

    def __init__(self, message: str, *, raw_payload: str = "", truncated: bool = False) -> None:
        self.raw_payload = raw_payload
        self.truncated = truncated
        super().__init__(message)


class SinkError(BridgeError):
    """A session or record write to the durable store failed."""

    def __init__(self, message: str, *, operation: str = "") -> None:
        self.operation = operation
        super().__init__(message)


class ExhaustedRetries(BridgeError):
    """Reconnect attempts exhausted; needs a manual ``connect()`` to resume."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Max reconnection attempts exceeded ({attempts})")
