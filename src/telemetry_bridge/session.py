"""Best-effort connection-session bookkeeping on top of a :class:`RecordSink`.

None of these calls raise: a failing sink is logged and the bridge keeps
running without session tracking.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from telemetry_bridge.models import SessionStatus
from telemetry_bridge.sinks import RecordSink

logger = logging.getLogger(__name__)


class SessionRecorder:
    """Opens, touches, and updates the status of session rows."""

    def __init__(self, sink: RecordSink) -> None:
        self._sink = sink
        self._counts: dict[str, int] = {}

    async def open(self, tenant_id: str, url: str) -> Optional[str]:
        """Insert a new ``connected`` session and return its id, or ``None`` on failure."""
        fields = {
            "tenant_id": tenant_id,
            "connected_at": datetime.now(timezone.utc),
            "status": SessionStatus.CONNECTED.value,
            "websocket_url": url,
            "message_count": 0,
        }
        try:
            session_id = await self._sink.insert_session(fields)
        except Exception as exc:
            logger.error("Failed to create connection session: %s", exc)
            return None

        self._counts[session_id] = 0
        logger.info("Connection session created: %s", session_id)
        return session_id

    async def touch(self, session_id: Optional[str]) -> None:
        """Bump ``message_count`` and ``last_message_at``."""
        if session_id is None:
            return
        count = self._counts.get(session_id, 0) + 1
        self._counts[session_id] = count
        await self._update(session_id, {
            "last_message_at": datetime.now(timezone.utc),
            "message_count": count,
        })

    async def set_status(
        self,
        session_id: Optional[str],
        status: SessionStatus,
        detail: Optional[str] = None,
    ) -> None:
        """Record a status transition, with an optional error message."""
        if session_id is None:
            return
        if status in (SessionStatus.DISCONNECTED, SessionStatus.FAILED):
            self._counts.pop(session_id, None)
        fields: dict[str, Any] = {
            "status": status.value,
            "last_message_at": datetime.now(timezone.utc),
        }
        if detail:
            fields["error_message"] = detail
        await self._update(session_id, fields)

    async def _update(self, session_id: str, fields: dict[str, Any]) -> None:
        try:
            await self._sink.update_session(session_id, fields)
        except Exception as exc:
            logger.error("Failed to update connection session %s: %s", session_id, exc)
