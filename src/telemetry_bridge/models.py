"""Dataclass models for the telemetry bridge.

Records handed to sinks are flat ``dict`` mappings of column name to value;
these models are converted with :meth:`NormalizedTelemetry.to_fields` or
``dataclasses.asdict()`` and serialized with ``orjson``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from typing import Any, Optional


class BridgeState(enum.Enum):
    """States of the upstream connection state machine."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CLOSING = "CLOSING"
    RECONNECT_SCHEDULED = "RECONNECT_SCHEDULED"
    FAILED = "FAILED"


class SessionStatus(str, enum.Enum):
    """Values stored in a connection session's ``status`` column."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    FAILED = "failed"


@dataclass
class NormalizedTelemetry:
    """Sparse normalized view of one vendor telemetry envelope.

    Every slot is either ``None`` or non-empty; the normalizer never leaves
    an empty dict behind.  ``charge_data`` and ``trip_data`` have no vendor
    key mapped into them yet.
    """

    device_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    serial_number: Optional[str] = None
    location_data: Optional[dict] = None
    fuel_data: Optional[dict] = None
    charge_data: Optional[dict] = None
    trip_data: Optional[dict] = None
    engine_data: Optional[dict] = None
    state_data: Optional[dict] = None
    odometer_data: Optional[dict] = None
    misc_data: Optional[dict] = None

    def to_fields(self) -> dict[str, Any]:
        """Return only the present slots, keyed by column name."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass
class Envelope:
    """A decoded inbound message, prior to normalization."""

    message: dict = field(default_factory=dict)
    payload: dict = field(default_factory=dict)
    telemetry: dict = field(default_factory=dict)
    update_type: str = "telemetry_update"
    timestamp: str = ""


@dataclass
class StatusSnapshot:
    """Point-in-time view of the bridge served by the health endpoint."""

    connected: bool = False
    state: str = BridgeState.IDLE.value
    session_id: Optional[str] = None
    uptime_seconds: float = 0.0
    timestamp: str = ""
