"""Normalize vendor telemetry envelopes into :class:`NormalizedTelemetry`.

The vendor reports most sensor values as a flat ``raw_data.state.reported``
mapping keyed by numeric IO codes.  Each key is placed by an exact match in
:data:`RAW_STATE_FIELDS`::

    "16"              → odometer_data.total_distance
    "66" / "67"       → engine_data.voltage_66 / voltage_67
    "68"              → engine_data.battery_current
    "113"             → fuel_data.level_percentage
    "21"              → state_data.ignition_state
    "239"-"241"       → state_data.state_239 … state_241
    "256"             → misc_data.vin
    "389" / "390"     → odometer_data.total_distance_alt / trip_distance
    sp alt ang sat …  → ignored (already projected into location_data)
    anything else     → misc_data.raw_state_data[key], value untouched

Adding a vendor field is a one-line edit to the table.
"""

from __future__ import annotations

import enum
from typing import Any

from telemetry_bridge.models import NormalizedTelemetry

# The vendor sends this instead of null when a fix has no timestamp.
ZERO_DATE = "0001-01-01T00:00:00Z"


class Slot(enum.Enum):
    """Where a raw-state key lands in the normalized record."""

    ODOMETER = "odometer_data"
    ENGINE = "engine_data"
    FUEL = "fuel_data"
    STATE = "state_data"
    VIN = "vin"
    IGNORED = "ignored"
    MISC = "misc_data"


RAW_STATE_FIELDS: dict[str, tuple[Slot, str]] = {
    "16": (Slot.ODOMETER, "total_distance"),
    "66": (Slot.ENGINE, "voltage_66"),
    "67": (Slot.ENGINE, "voltage_67"),
    "68": (Slot.ENGINE, "battery_current"),
    "113": (Slot.FUEL, "level_percentage"),
    "21": (Slot.STATE, "ignition_state"),
    "239": (Slot.STATE, "state_239"),
    "240": (Slot.STATE, "state_240"),
    "241": (Slot.STATE, "state_241"),
    "256": (Slot.VIN, "vin"),
    "389": (Slot.ODOMETER, "total_distance_alt"),
    "390": (Slot.ODOMETER, "trip_distance"),
    "sp": (Slot.IGNORED, "speed"),
    "alt": (Slot.IGNORED, "altitude"),
    "ang": (Slot.IGNORED, "heading"),
    "sat": (Slot.IGNORED, "satellites"),
    "latlng": (Slot.IGNORED, "latlng"),
    "ts": (Slot.IGNORED, "ts"),
    "evt": (Slot.IGNORED, "evt"),
    "pr": (Slot.IGNORED, "pr"),
}

# raw-state key → location_data field
LOCATION_EXTRAS: dict[str, str] = {
    "sp": "speed",
    "alt": "altitude",
    "ang": "heading",
    "sat": "satellites",
}

# telemetry key → misc_data field
METADATA_FIELDS: dict[str, str] = {
    "device_type": "device_type",
    "vehicle_make": "vehicle_make",
    "vehicle_model": "vehicle_model",
    "id": "telemetry_id",
    "created_at": "created_at",
}


def classify_raw_key(key: str) -> tuple[Slot, str]:
    """Return the ``(slot, field)`` placement for a raw-state *key*.

    Unknown keys go to :attr:`Slot.MISC` under their original name.
    """
    return RAW_STATE_FIELDS.get(key, (Slot.MISC, key))


def normalize(payload: Any, telemetry: Any) -> NormalizedTelemetry:
    """Project the recognized fields of one envelope into a sparse record.

    Parameters
    ----------
    payload:
        The envelope payload (``message.payload`` or the message itself).
    telemetry:
        ``payload.telemetry``.  Non-dict values are treated as empty.

    Returns
    -------
    NormalizedTelemetry
        A fresh record; sub-records that would be empty are ``None``.
    """
    payload = payload if isinstance(payload, dict) else {}
    telemetry = telemetry if isinstance(telemetry, dict) else {}

    raw_state = _safe_get(telemetry, "raw_data", "state", "reported")
    if not isinstance(raw_state, dict):
        raw_state = {}

    buckets: dict[Slot, dict] = {
        Slot.ODOMETER: {},
        Slot.ENGINE: {},
        Slot.FUEL: {},
        Slot.STATE: {},
    }
    misc: dict[str, Any] = {}
    unclassified: dict[str, Any] = {}

    for key, value in raw_state.items():
        slot, name = classify_raw_key(key)
        if slot is Slot.IGNORED:
            continue
        if slot is Slot.VIN:
            misc[name] = value
        elif slot is Slot.MISC:
            unclassified[name] = value
        else:
            buckets[slot][name] = value

    if unclassified:
        misc["raw_state_data"] = unclassified

    for source_key, name in METADATA_FIELDS.items():
        if telemetry.get(source_key):
            misc[name] = telemetry[source_key]

    return NormalizedTelemetry(
        device_id=telemetry.get("device_id") or None,
        vehicle_id=telemetry.get("vehicle_id") or payload.get("vehicleId") or None,
        serial_number=telemetry.get("device_serial_number") or None,
        location_data=_location(telemetry, raw_state),
        fuel_data=buckets[Slot.FUEL] or None,
        engine_data=buckets[Slot.ENGINE] or None,
        state_data=buckets[Slot.STATE] or None,
        odometer_data=buckets[Slot.ODOMETER] or None,
        misc_data=misc or None,
    )


def _location(telemetry: dict, raw_state: dict) -> dict | None:
    """Build ``location_data``, or ``None`` when either coordinate is unset.

    A coordinate of exactly 0 counts as unset.
    """
    location = telemetry.get("location")
    if not isinstance(location, dict):
        return None
    latitude = location.get("latitude")
    longitude = location.get("longitude")
    if not (latitude and longitude):
        return None

    result: dict[str, Any] = {"latitude": latitude, "longitude": longitude}

    timestamp = location.get("timestamp")
    if not timestamp or timestamp == ZERO_DATE:
        timestamp = telemetry.get("timestamp")
    if timestamp:
        result["timestamp"] = timestamp

    for key, name in LOCATION_EXTRAS.items():
        if key in raw_state:
            result[name] = raw_state[key]

    return result


def _safe_get(obj: dict, *keys: str):
    """Walk nested dicts, returning ``None`` on any missing key."""
    current = obj
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current
