"""Health/status and manual-reconnect HTTP endpoints.

Served from the ``process_request`` hook of a ``websockets`` server, which
answers plain HTTP requests before any WebSocket upgrade.  Routing is by
path; the method is not checked::

    /health       → {"service", "connected", "state", "session_id",
                     "uptime_seconds", "timestamp"}
    /connect      → schedules ConnectionManager.connect(), acknowledges
                    (POST or GET)
    anything else → 404
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from http import HTTPStatus
from typing import Any, Optional

import orjson
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.http11 import Request, Response

from telemetry_bridge.connection import ConnectionManager

logger = logging.getLogger(__name__)

SERVICE_NAME = "Telemetry WebSocket Bridge"


def _json_response(status: HTTPStatus, body: dict[str, Any]) -> Response:
    data = orjson.dumps(body)
    headers = Headers([
        ("Content-Type", "application/json"),
        ("Content-Length", str(len(data))),
        ("Connection", "close"),
    ])
    return Response(status.value, status.phrase, headers, data)


class HealthServer:
    """Expose :class:`ConnectionManager` status over HTTP.

    Parameters
    ----------
    manager:
        The connection manager to report on and trigger.
    host, port:
        Listen address.  Port 0 picks a free port.
    """

    def __init__(self, manager: ConnectionManager, host: str = "0.0.0.0", port: int = 3000) -> None:
        self._manager = manager
        self._host = host
        self._port = port
        self._server: Optional[Server] = None

    @property
    def port(self) -> Optional[int]:
        """The bound port once started."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await serve(
            self._handler,
            self._host,
            self._port,
            process_request=self.process_request,
        )
        logger.info("Health endpoint listening on %s:%s", self._host, self.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def process_request(self, connection: ServerConnection, request: Request) -> Response:
        """Answer every request over plain HTTP."""
        path = request.path.split("?", 1)[0]

        if path == "/health":
            status = asdict(self._manager.status())
            return _json_response(HTTPStatus.OK, {"service": SERVICE_NAME, **status})

        if path == "/connect":
            logger.info("Manual connect requested")
            self._manager.request_connect()
            return _json_response(HTTPStatus.OK, {"message": "Connection attempt initiated"})

        return _json_response(HTTPStatus.NOT_FOUND, {"error": f"Not found: {path}"})

    async def _handler(self, websocket: ServerConnection) -> None:
        # Unreachable: process_request answers every request.
        await websocket.close(1008, "no WebSocket endpoint")
