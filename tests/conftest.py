"""Shared fakes: an in-memory transport and an in-memory sink."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from telemetry_bridge.config import ReconnectConfig, UpstreamConfig
from telemetry_bridge.exceptions import SinkError, TransportClosed, TransportError


class FakeHandle:
    """Scriptable stand-in for an open WebSocket connection."""

    def __init__(self) -> None:
        self._inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.pings = 0
        self.fail_ping = False

    def feed(self, message: str | bytes) -> None:
        self._inbox.put_nowait(message)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        """Simulate the peer going away."""
        self._inbox.put_nowait(TransportClosed(code, reason))

    async def recv(self) -> str | bytes:
        item = await self._inbox.get()
        if isinstance(item, TransportClosed):
            self.closed = True
            raise item
        return item

    async def ping(self) -> None:
        self.pings += 1
        if self.fail_ping:
            raise TransportError("No pong within 20s")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.drop(code, reason)


class FakeTransport:
    """Hands out :class:`FakeHandle` objects, or refuses when ``refuse`` is set."""

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.opens = 0
        self.refuse = False
        self.fault: Optional[Exception] = None

    async def open(self, url: str) -> FakeHandle:
        self.opens += 1
        if self.fault is not None:
            raise self.fault
        if self.refuse:
            raise TransportError(f"Could not connect to {url}: connection refused")
        handle = FakeHandle()
        self.handles.append(handle)
        return handle


class MemorySink:
    """Records every sink call; individual operations can be made to fail."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.records: list[dict[str, Any]] = []
        self.fail: set[str] = set()
        self.closed = False

    def _check(self, operation: str) -> None:
        if operation in self.fail:
            raise SinkError(f"{operation} unavailable", operation=operation)

    async def insert_session(self, fields: dict[str, Any]) -> str:
        self._check("insert_session")
        session_id = f"session-{len(self.sessions) + 1}"
        self.sessions[session_id] = dict(fields)
        return session_id

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        self._check("update_session")
        self.updates.append((session_id, dict(fields)))
        self.sessions[session_id].update(fields)

    async def insert_record(self, fields: dict[str, Any]) -> None:
        self._check("insert_record")
        self.records.append(fields)

    async def close(self) -> None:
        self.closed = True

    def statuses(self, session_id: str) -> list[str]:
        return [f["status"] for sid, f in self.updates if sid == session_id and "status" in f]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate()* holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def upstream() -> UpstreamConfig:
    """Millisecond-scale timings so reconnect tests run fast."""
    return UpstreamConfig(
        url="wss://telemetry.test/feed",
        keepalive_interval_s=3600,
        reconnect=ReconnectConfig(initial_delay_ms=1, backoff_multiplier=2, max_delay_ms=4, max_attempts=10),
    )
