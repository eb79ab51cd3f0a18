"""Tests for the connection manager state machine."""

from __future__ import annotations

import asyncio

import orjson
import pytest

from telemetry_bridge.config import ReconnectConfig
from telemetry_bridge.connection import ConnectionManager, backoff_delay_ms
from telemetry_bridge.models import BridgeState


SCENARIO = orjson.dumps({
    "telemetry": {
        "location": {"latitude": 12.5, "longitude": 77.6, "timestamp": "0001-01-01T00:00:00Z"},
        "timestamp": "2024-01-01T00:00:00Z",
        "raw_data": {"state": {"reported": {"21": 1, "113": 55, "999": "x"}}},
    }
})


def _manager(upstream, transport, sink) -> ConnectionManager:
    return ConnectionManager(upstream, transport, sink, tenant_id="tenant-a")


def test_backoff_sequence() -> None:
    """Default policy: doubling from 1s, capped at 30s."""
    delays = [backoff_delay_ms(n, ReconnectConfig()) for n in range(10)]
    assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000, 30000, 30000, 30000]


@pytest.mark.asyncio
async def test_connect_opens_session(upstream, transport, sink) -> None:
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()

    assert mgr.state is BridgeState.CONNECTED
    assert mgr.connected is True
    assert mgr.session_id == "session-1"
    session = sink.sessions["session-1"]
    assert session["status"] == "connected"
    assert session["tenant_id"] == "tenant-a"
    assert session["websocket_url"] == "wss://telemetry.test/feed"
    assert session["message_count"] == 0

    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_connect_while_connected_is_noop(upstream, transport, sink) -> None:
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()
    await mgr.connect()

    assert transport.opens == 1
    assert len(sink.sessions) == 1
    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_concurrent_connects_open_once(upstream, transport, sink) -> None:
    mgr = _manager(upstream, transport, sink)
    await asyncio.gather(mgr.connect(), mgr.connect(), mgr.connect())

    assert transport.opens == 1
    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_message_is_normalized_and_stored(upstream, transport, sink, wait_until) -> None:
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()

    transport.handles[0].feed(SCENARIO)
    await wait_until(lambda: sink.sessions["session-1"].get("message_count") == 1)

    [record] = sink.records
    assert record["tenant_id"] == "tenant-a"
    assert record["update_type"] == "telemetry_update"
    assert record["raw_telemetry"] == orjson.loads(SCENARIO)
    assert record["location_data"]["timestamp"] == "2024-01-01T00:00:00Z"
    assert record["state_data"] == {"ignition_state": 1}
    assert record["fuel_data"] == {"level_percentage": 55}
    assert record["misc_data"] == {"raw_state_data": {"999": "x"}}
    assert "last_message_at" in sink.sessions["session-1"]

    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_undecodable_message_keeps_connection(upstream, transport, sink, wait_until) -> None:
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()
    handle = transport.handles[0]

    handle.feed("{broken")
    handle.feed(SCENARIO)
    await wait_until(lambda: len(sink.records) == 1)

    assert mgr.state is BridgeState.CONNECTED
    assert handle.closed is False
    assert "error" in sink.statuses("session-1")
    assert transport.opens == 1

    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_sink_failure_does_not_block_next_message(upstream, transport, sink, wait_until) -> None:
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()
    handle = transport.handles[0]

    sink.fail.add("insert_record")
    handle.feed(SCENARIO)
    await wait_until(lambda: "error" in sink.statuses("session-1"))
    assert mgr.state is BridgeState.CONNECTED

    sink.fail.clear()
    handle.feed(SCENARIO)
    await wait_until(lambda: len(sink.records) == 1)

    assert mgr.state is BridgeState.CONNECTED
    assert transport.opens == 1
    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_session_sink_failure_is_not_fatal(upstream, transport, sink, wait_until) -> None:
    """Without a session the bridge still stores records."""
    sink.fail.add("insert_session")
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()

    assert mgr.state is BridgeState.CONNECTED
    assert mgr.session_id is None

    transport.handles[0].feed(SCENARIO)
    await wait_until(lambda: len(sink.records) == 1)
    assert sink.updates == []

    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_message_from_stale_handle_is_dropped(upstream, transport, sink) -> None:
    """Nothing is processed unless it comes from the active connection."""
    mgr = _manager(upstream, transport, sink)
    await mgr._on_message(object(), SCENARIO)  # type: ignore[arg-type]

    assert sink.records == []
    assert mgr.state is BridgeState.IDLE


@pytest.mark.asyncio
async def test_close_schedules_reconnect(upstream, transport, sink, wait_until) -> None:
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()

    transport.handles[0].drop(1006, "gone")
    await wait_until(lambda: transport.opens == 2 and mgr.state is BridgeState.CONNECTED)

    assert sink.sessions["session-1"]["status"] == "disconnected"
    assert sink.sessions["session-1"]["error_message"] == "Connection closed: 1006 - gone"
    assert mgr.session_id == "session-2"
    assert mgr.attempts == 0

    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_exhausted_retries_reach_failed(upstream, transport, sink, wait_until) -> None:
    """Ten failed reconnects end in FAILED with no further attempts."""
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()

    transport.refuse = True
    transport.handles[0].drop(1006, "gone")
    await wait_until(lambda: mgr.state is BridgeState.FAILED)

    # initial open + 10 reconnect attempts
    assert transport.opens == 11
    assert mgr.attempts == 10
    statuses = sink.statuses("session-1")
    assert statuses[-1] == "failed"
    assert sink.sessions["session-1"]["error_message"] == "Max reconnection attempts exceeded"
    assert mgr.session_id == "session-1"

    await asyncio.sleep(0.05)
    assert transport.opens == 11
    assert mgr.state is BridgeState.FAILED

    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_manual_connect_after_failed_restarts_cycle(upstream, transport, sink, wait_until) -> None:
    upstream.reconnect.max_attempts = 2
    transport.refuse = True
    mgr = _manager(upstream, transport, sink)

    await mgr.connect()
    await wait_until(lambda: mgr.state is BridgeState.FAILED)
    assert transport.opens == 3

    transport.refuse = False
    await mgr.connect()
    assert mgr.state is BridgeState.CONNECTED
    assert mgr.attempts == 0

    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_manual_connect_skips_pending_backoff(upstream, transport, sink) -> None:
    upstream.reconnect.initial_delay_ms = 60000
    upstream.reconnect.max_delay_ms = 60000
    transport.refuse = True
    mgr = _manager(upstream, transport, sink)

    await mgr.connect()
    assert mgr.state is BridgeState.RECONNECT_SCHEDULED

    transport.refuse = False
    await mgr.connect()
    assert mgr.state is BridgeState.CONNECTED
    assert transport.opens == 2

    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_construction_fault_leaves_idle(upstream, transport, sink) -> None:
    """A fault other than a connection failure does not trigger reconnects."""
    transport.fault = ValueError("invalid URI")
    mgr = _manager(upstream, transport, sink)

    await mgr.connect()
    assert mgr.state is BridgeState.IDLE
    await asyncio.sleep(0.02)
    assert transport.opens == 1

    transport.fault = None
    await mgr.connect()
    assert mgr.state is BridgeState.CONNECTED
    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_keepalive_pings(upstream, transport, sink, wait_until) -> None:
    upstream.keepalive_interval_s = 0.01
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()

    await wait_until(lambda: transport.handles[0].pings >= 3)
    assert mgr.state is BridgeState.CONNECTED
    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_keepalive_failure_records_error_then_reconnects(upstream, transport, sink, wait_until) -> None:
    upstream.keepalive_interval_s = 0.01
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()

    transport.handles[0].fail_ping = True
    await wait_until(lambda: transport.opens == 2 and mgr.state is BridgeState.CONNECTED)

    statuses = sink.statuses("session-1")
    assert statuses.index("error") < statuses.index("disconnected")
    assert sink.sessions["session-1"]["error_message"] == (
        "Connection closed: 1011 - keepalive ping timeout"
    )
    await mgr.shutdown(timeout=1)


@pytest.mark.asyncio
async def test_shutdown_records_final_status(upstream, transport, sink) -> None:
    mgr = _manager(upstream, transport, sink)
    await mgr.connect()
    await mgr.shutdown(timeout=1)

    assert mgr.state is BridgeState.IDLE
    assert transport.handles[0].closed is True
    assert sink.sessions["session-1"]["status"] == "disconnected"
    assert sink.sessions["session-1"]["error_message"] == "Service shutdown"

    await asyncio.sleep(0.02)
    assert transport.opens == 1


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_reconnect(upstream, transport, sink) -> None:
    upstream.reconnect.initial_delay_ms = 60000
    upstream.reconnect.max_delay_ms = 60000
    transport.refuse = True
    mgr = _manager(upstream, transport, sink)

    await mgr.connect()
    assert mgr.state is BridgeState.RECONNECT_SCHEDULED
    await mgr.shutdown(timeout=1)

    assert mgr.state is BridgeState.IDLE
    assert transport.opens == 1
    await mgr.connect()
    assert transport.opens == 1


@pytest.mark.asyncio
async def test_status_snapshot(upstream, transport, sink) -> None:
    mgr = _manager(upstream, transport, sink)
    snapshot = mgr.status()
    assert snapshot.connected is False
    assert snapshot.session_id is None
    assert snapshot.state == "IDLE"

    await mgr.connect()
    snapshot = mgr.status()
    assert snapshot.connected is True
    assert snapshot.session_id == "session-1"
    assert snapshot.uptime_seconds >= 0
    await mgr.shutdown(timeout=1)

    snapshot = mgr.status()
    assert snapshot.connected is False
    assert snapshot.session_id == "session-1"
