"""Decode raw WebSocket messages into envelopes and build persisted records.

Decoding pipeline::

    raw str / bytes
      │
      ├─ JSON parse failure      → DecodeError
      ├─ top level not an object → DecodeError
      └─ valid                   → Envelope(message, payload, telemetry, …)

The raw decoded message is always kept in the record as ``raw_telemetry``;
the normalized slots only carry what the normalizer recognizes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import orjson

from telemetry_bridge.exceptions import DecodeError
from telemetry_bridge.models import Envelope
from telemetry_bridge.normalizer import normalize

# Maximum bytes of raw payload preserved on a DecodeError.
MAX_RAW_PAYLOAD_BYTES = 4096

DEFAULT_UPDATE_TYPE = "telemetry_update"


def decode_envelope(raw: str | bytes) -> Envelope:
    """Decode a single inbound message.

    Raises
    ------
    DecodeError
        When the message is not JSON or not a JSON object.
    """
    try:
        message = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise _decode_error(f"Invalid JSON: {exc}", raw) from exc

    if not isinstance(message, dict):
        raise _decode_error(
            f"Expected a JSON object, got {type(message).__name__}", raw
        )

    payload = message.get("payload") or message
    if not isinstance(payload, dict):
        payload = message
    telemetry = payload.get("telemetry") or {}
    if not isinstance(telemetry, dict):
        telemetry = {}

    update_type = payload.get("update_type") or message.get("type") or DEFAULT_UPDATE_TYPE
    timestamp = (
        telemetry.get("timestamp")
        or payload.get("timestamp")
        or message.get("timestamp")
        or datetime.now(timezone.utc).isoformat()
    )

    return Envelope(
        message=message,
        payload=payload,
        telemetry=telemetry,
        update_type=update_type,
        timestamp=timestamp,
    )


def build_record(envelope: Envelope, tenant_id: str) -> dict[str, Any]:
    """Return the flat field mapping persisted for one envelope."""
    record: dict[str, Any] = {
        "tenant_id": tenant_id,
        "update_type": envelope.update_type,
        "timestamp": envelope.timestamp,
        "raw_telemetry": envelope.message,
    }
    record.update(normalize(envelope.payload, envelope.telemetry).to_fields())
    return record


def _decode_error(message: str, raw: str | bytes) -> DecodeError:
    """Build a :class:`DecodeError` with truncation handling."""
    data = raw.encode("utf-8", errors="replace") if isinstance(raw, str) else raw
    truncated = len(data) > MAX_RAW_PAYLOAD_BYTES
    if truncated:
        # A multi-byte character split by the cut is dropped.
        raw_str = data[:MAX_RAW_PAYLOAD_BYTES].decode("utf-8", errors="ignore")
    elif isinstance(raw, str):
        raw_str = raw
    else:
        raw_str = data.decode("utf-8", errors="replace")
    return DecodeError(message, raw_payload=raw_str, truncated=truncated)
