"""Single upstream connection with an exponential-backoff reconnect state machine::

    IDLE → CONNECTING → (open) → CONNECTED → (close) → RECONNECT_SCHEDULED → CONNECTING
                      → (error + close) →             RECONNECT_SCHEDULED
    RECONNECT_SCHEDULED → (attempt budget spent) → FAILED
    any → (shutdown) → CLOSING → IDLE

All state lives on one :class:`ConnectionManager` and is only touched from
the event loop, so each transport event is handled to completion before the
next one starts.  Inbound messages are processed one at a time; a slow sink
delays the next message instead of piling up concurrent writes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Coroutine, Optional

from telemetry_bridge.config import ReconnectConfig, UpstreamConfig
from telemetry_bridge.envelope import build_record, decode_envelope
from telemetry_bridge.exceptions import (
    DecodeError,
    ExhaustedRetries,
    TransportClosed,
    TransportError,
)
from telemetry_bridge.models import BridgeState, SessionStatus, StatusSnapshot
from telemetry_bridge.session import SessionRecorder
from telemetry_bridge.sinks import RecordSink
from telemetry_bridge.transport import (
    ABNORMAL_CLOSURE,
    KEEPALIVE_TIMEOUT_CLOSURE,
    Transport,
    TransportHandle,
)

logger = logging.getLogger(__name__)


def backoff_delay_ms(attempt: int, reconnect: ReconnectConfig) -> int:
    """Delay before reconnect number ``attempt + 1`` (``attempt`` counts from 0)."""
    return min(
        reconnect.initial_delay_ms * reconnect.backoff_multiplier ** attempt,
        reconnect.max_delay_ms,
    )


class ConnectionManager:
    """Owns the upstream connection, its session, and its reconnect policy.

    Parameters
    ----------
    config:
        Upstream URL, keep-alive interval, and reconnect parameters.
    transport:
        Opens connections to the upstream feed.
    sink:
        Durable store for telemetry records.
    recorder:
        Session bookkeeping; defaults to a :class:`SessionRecorder` on *sink*.
    tenant_id:
        Stamped on every session and record.
    """

    def __init__(
        self,
        config: UpstreamConfig,
        transport: Transport,
        sink: RecordSink,
        recorder: Optional[SessionRecorder] = None,
        tenant_id: str = "default",
    ) -> None:
        self._url = config.url
        self._reconnect = config.reconnect
        self._keepalive_interval = config.keepalive_interval_s
        self._transport = transport
        self._sink = sink
        self._recorder = recorder or SessionRecorder(sink)
        self._tenant_id = tenant_id

        self._state = BridgeState.IDLE
        self._handle: Optional[TransportHandle] = None
        self._session_id: Optional[str] = None
        self._attempts = 0
        self._shutting_down = False
        self._receiver: Optional[asyncio.Task] = None
        self._keepalive: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._started_at = time.monotonic()

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        """Id of the current session, or of the last one while disconnected."""
        return self._session_id

    @property
    def attempts(self) -> int:
        """Reconnect attempts since the last successful open."""
        return self._attempts

    @property
    def connected(self) -> bool:
        return self._state is BridgeState.CONNECTED and self._handle is not None

    def status(self) -> StatusSnapshot:
        """Snapshot for the health endpoint."""
        return StatusSnapshot(
            connected=self.connected,
            state=self._state.value,
            session_id=self._session_id,
            uptime_seconds=round(time.monotonic() - self._started_at, 3),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    # ── public API ──────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the upstream connection unless one is already open or opening.

        From ``FAILED`` this restarts the reconnect budget; from
        ``RECONNECT_SCHEDULED`` it skips the remaining backoff.
        """
        if self._state in (BridgeState.CONNECTING, BridgeState.CONNECTED):
            logger.info("Already connecting or connected")
            return
        if self._shutting_down:
            logger.warning("Shutdown in progress, ignoring connect request")
            return

        if self._state is BridgeState.FAILED:
            self._attempts = 0
        self._cancel_reconnect()
        await self._open()

    def request_connect(self) -> None:
        """Schedule :meth:`connect` in the background (manual trigger)."""
        self._spawn(self.connect(), "manual-connect")

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Close the connection and mark the session disconnected.

        Bounded by *timeout*; no reconnect is scheduled once this starts.
        """
        self._shutting_down = True
        self._cancel_reconnect()
        self._set_state(BridgeState.CLOSING)

        try:
            await asyncio.wait_for(self._teardown(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Shutdown did not finish within %.1fs", timeout)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._handle = None
        self._set_state(BridgeState.IDLE)

    # ── internal: lifecycle ─────────────────────────────────────────

    async def _open(self) -> None:
        self._set_state(BridgeState.CONNECTING)
        logger.info("Connecting to %s", self._url)

        try:
            handle = await self._transport.open(self._url)
        except TransportError as exc:
            await self._on_error(exc)
            await self._on_close(ABNORMAL_CLOSURE, str(exc))
            return
        except Exception as exc:
            logger.exception("Failed to create upstream connection")
            self._set_state(BridgeState.IDLE)
            await self._recorder.set_status(self._session_id, SessionStatus.ERROR, str(exc))
            return

        if self._shutting_down:
            await handle.close()
            return

        self._handle = handle
        self._set_state(BridgeState.CONNECTED)
        self._attempts = 0
        logger.info("Connected to upstream feed")

        self._session_id = await self._recorder.open(self._tenant_id, self._url)
        if self._shutting_down or self._handle is not handle:
            return  # shutdown closed it while the session was being created

        self._receiver = self._spawn(self._receive(handle), "receiver")
        self._keepalive = self._spawn(self._keep_alive(handle), "keepalive")

    async def _receive(self, handle: TransportHandle) -> None:
        code, reason = ABNORMAL_CLOSURE, ""
        try:
            while True:
                raw = await handle.recv()
                await self._on_message(handle, raw)
        except TransportClosed as exc:
            code, reason = exc.code, exc.reason
        except TransportError as exc:
            await self._on_error(exc)
            reason = str(exc)
        await self._on_close(code, reason)

    async def _on_message(self, handle: TransportHandle, raw: str | bytes) -> None:
        if handle is not self._handle or self._state is not BridgeState.CONNECTED:
            logger.warning("Dropping message received without an active connection")
            return

        logger.debug("Received message: %.500s", raw)
        try:
            envelope = decode_envelope(raw)
            await self._sink.insert_record(build_record(envelope, self._tenant_id))
            logger.debug("Stored %s record", envelope.update_type)
            await self._recorder.touch(self._session_id)
        except DecodeError as exc:
            logger.warning("Dropping undecodable message: %s", exc)
            await self._recorder.set_status(self._session_id, SessionStatus.ERROR, str(exc))
        except Exception as exc:
            logger.error("Error processing message: %s", exc)
            await self._recorder.set_status(self._session_id, SessionStatus.ERROR, str(exc))

    async def _on_error(self, exc: Exception) -> None:
        logger.error("Transport error: %s", exc)
        await self._recorder.set_status(self._session_id, SessionStatus.ERROR, str(exc))

    async def _on_close(self, code: int, reason: str) -> None:
        self._handle = None
        self._receiver = None
        if self._keepalive is not None:
            self._keepalive.cancel()
            self._keepalive = None

        logger.info("Upstream closed (code=%s, reason=%s)", code, reason)
        exhausted = False
        if not self._shutting_down:
            if self._attempts < self._reconnect.max_attempts:
                delay_ms = backoff_delay_ms(self._attempts, self._reconnect)
                self._set_state(BridgeState.RECONNECT_SCHEDULED)
                logger.info(
                    "Reconnecting in %dms (attempt %d/%d)",
                    delay_ms,
                    self._attempts + 1,
                    self._reconnect.max_attempts,
                )
                self._reconnect_task = self._spawn(
                    self._reconnect_after(delay_ms / 1000.0), "reconnect"
                )
            else:
                exhausted = True
                self._set_state(BridgeState.FAILED)
                logger.error("%s", ExhaustedRetries(self._attempts))

        await self._recorder.set_status(
            self._session_id,
            SessionStatus.DISCONNECTED,
            f"Connection closed: {code} - {reason}",
        )
        if exhausted:
            await self._recorder.set_status(
                self._session_id,
                SessionStatus.FAILED,
                "Max reconnection attempts exceeded",
            )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._state is not BridgeState.RECONNECT_SCHEDULED:
            return
        self._attempts += 1
        await self._open()

    async def _keep_alive(self, handle: TransportHandle) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            try:
                await handle.ping()
            except TransportError as exc:
                # Record the error first; the receiver's close drives teardown
                # and reconnect and cancels this task.
                await self._on_error(exc)
                await handle.close(KEEPALIVE_TIMEOUT_CLOSURE, "keepalive ping timeout")
                return

    async def _teardown(self) -> None:
        handle, receiver = self._handle, self._receiver
        if handle is not None:
            await handle.close()
            if receiver is not None:
                await asyncio.wait({receiver})
        await self._recorder.set_status(
            self._session_id, SessionStatus.DISCONNECTED, "Service shutdown"
        )

    # ── helpers ─────────────────────────────────────────────────────

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"bridge-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    def _set_state(self, new: BridgeState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.info("Connection state: %s → %s", old.value, new.value)
