"""Upstream transport: the abstract contract and its ``websockets`` implementation.

The connection manager only sees :class:`Transport` and
:class:`TransportHandle`.  Events map onto the handle like this::

    open     → Transport.open() returns a handle
    message  → TransportHandle.recv() returns str / bytes
    close    → TransportHandle.recv() raises TransportClosed(code, reason)
    error    → Transport.open() / TransportHandle.ping() raise TransportError
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import websockets
import websockets.exceptions

from telemetry_bridge.exceptions import TransportClosed, TransportError

logger = logging.getLogger(__name__)

# Close code reported when the peer vanished without a close frame.
ABNORMAL_CLOSURE = 1006
# Close code sent when the peer stops answering keep-alive pings.
KEEPALIVE_TIMEOUT_CLOSURE = 1011


class TransportHandle(Protocol):
    async def recv(self) -> str | bytes:
        """Next inbound message; raises :class:`TransportClosed` once closed."""

    async def ping(self) -> None:
        """Round-trip a keep-alive ping; raises :class:`TransportError` on failure."""

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Start a close; a pending ``recv()`` then raises ``TransportClosed``."""


class Transport(Protocol):
    async def open(self, url: str) -> TransportHandle:
        """Open a connection to *url*.

        Raises :class:`TransportError` for connection-level failures; any
        other exception means the connection could not even be attempted.
        """


class WebSocketHandle:
    """A single open ``websockets`` client connection."""

    def __init__(self, ws, ping_timeout: float) -> None:
        self._ws = ws
        self._ping_timeout = ping_timeout

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except websockets.exceptions.ConnectionClosed as exc:
            raise TransportClosed(*_close_info(exc)) from exc

    async def ping(self) -> None:
        try:
            pong_waiter = await self._ws.ping()
            await asyncio.wait_for(pong_waiter, timeout=self._ping_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"No pong within {self._ping_timeout:g}s") from exc
        except websockets.exceptions.ConnectionClosed as exc:
            raise TransportError(f"Ping failed: {exc}") from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._ws.close(code, reason)


class WebSocketTransport:
    """Opens :class:`WebSocketHandle` connections with ``websockets.connect``.

    Parameters
    ----------
    open_timeout:
        Seconds allowed for TCP + TLS + WebSocket handshake.
    ping_timeout:
        Seconds to wait for a pong after each keep-alive ping.
    close_timeout:
        Seconds to wait for the closing handshake.
    """

    def __init__(
        self,
        open_timeout: float = 10.0,
        ping_timeout: float = 20.0,
        close_timeout: float = 10.0,
    ) -> None:
        self._open_timeout = open_timeout
        self._ping_timeout = ping_timeout
        self._close_timeout = close_timeout

    async def open(self, url: str) -> WebSocketHandle:
        try:
            ws = await websockets.connect(
                url,
                open_timeout=self._open_timeout,
                ping_interval=None,  # keep-alive is driven by the connection manager
                close_timeout=self._close_timeout,
                max_size=None,
            )
        except (
            asyncio.TimeoutError,
            OSError,
            websockets.exceptions.InvalidHandshake,
            websockets.exceptions.ConnectionClosed,
        ) as exc:
            raise TransportError(f"Could not connect to {url}: {exc}") from exc

        logger.debug("WebSocket handshake complete: %s", url)
        return WebSocketHandle(ws, self._ping_timeout)


def _close_info(exc: websockets.exceptions.ConnectionClosed) -> tuple[int, str]:
    """Return the close ``(code, reason)``, preferring the frame the peer sent."""
    frame = exc.rcvd or exc.sent
    if frame is None:
        return ABNORMAL_CLOSURE, ""
    return frame.code, frame.reason
