"""Record sinks: the durable stores sessions and telemetry records land in.

Every sink implements :class:`RecordSink`.  Field mappings are flat
``column → value`` dicts; absent fields are simply not in the mapping.

FileSink
    Appends one NDJSON line per write to
    ``{prefix}-{tenant_id}-{timestamp}.ndjson.active``.  Rotates when a time
    or size threshold is reached: ``fsync``, atomic ``os.rename`` to
    ``.ndjson``, then open a new ``.active`` file.  Session updates are
    appended, never rewritten in place.

StdoutSink
    Writes the same NDJSON lines to ``sys.stdout.buffer``.  Useful for
    debugging.

SqlSink
    SQLAlchemy ORM tables ``telematic_websocket_sessions`` and
    ``telematic_data_streams``.  Blocking database calls run on a dedicated
    single-thread executor so they never stall the event loop and never
    run concurrently with each other.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

import orjson
from sqlalchemy import JSON, DateTime, Integer, String, create_engine, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from telemetry_bridge.config import SinkConfig
from telemetry_bridge.exceptions import SinkError

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "telematic_websocket_sessions"
RECORDS_TABLE = "telematic_data_streams"


class RecordSink(Protocol):
    """Abstract durable store consumed by the recorder and the manager."""

    async def insert_session(self, fields: dict[str, Any]) -> str:
        """Insert a session row and return its id."""

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        """Update the given columns of an existing session row."""

    async def insert_record(self, fields: dict[str, Any]) -> None:
        """Insert one telemetry record."""

    async def close(self) -> None:
        """Release resources; no further calls follow."""


def _ndjson_line(table: str, op: str, fields: dict[str, Any], row_id: Optional[str] = None) -> bytes:
    """Serialize one sink write as a newline-terminated NDJSON line."""
    obj: dict[str, Any] = {"table": table, "op": op}
    if row_id is not None:
        obj["id"] = row_id
    obj["fields"] = fields
    return orjson.dumps(obj, option=orjson.OPT_APPEND_NEWLINE)


class _LineSink:
    """Shared NDJSON encoding for the line-oriented sinks."""

    def _write(self, data: bytes) -> None:
        raise NotImplementedError

    def _emit(self, operation: str, data: bytes) -> None:
        try:
            self._write(data)
        except (OSError, ValueError) as exc:
            raise SinkError(str(exc), operation=operation) from exc

    async def insert_session(self, fields: dict[str, Any]) -> str:
        session_id = str(uuid.uuid4())
        self._emit("insert_session", _ndjson_line(SESSIONS_TABLE, "insert", fields, session_id))
        return session_id

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        self._emit("update_session", _ndjson_line(SESSIONS_TABLE, "update", fields, session_id))

    async def insert_record(self, fields: dict[str, Any]) -> None:
        self._emit("insert_record", _ndjson_line(RECORDS_TABLE, "insert", fields))

    async def close(self) -> None:
        """No-op by default."""


class StdoutSink(_LineSink):
    """Write NDJSON lines directly to stdout (for debugging)."""

    def _write(self, data: bytes) -> None:
        try:
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout broken, consumer likely exited")
            raise


class FileSink(_LineSink):
    """Rotating NDJSON file writer.

    Parameters
    ----------
    output_dir:
        Directory for output files.
    prefix:
        Filename prefix (e.g. ``"telemetry"``).
    tenant_id:
        Tenant identifier included in the filename.
    rotation_seconds:
        Rotate after this many seconds.
    rotation_bytes:
        Rotate after the active file reaches this size.
    flush_every_n:
        Flush the write buffer after this many lines.
    flush_interval_ms:
        Flush the write buffer after this many milliseconds.
    """

    def __init__(
        self,
        output_dir: str,
        prefix: str = "telemetry",
        tenant_id: str = "default",
        rotation_seconds: int = 600,
        rotation_bytes: int = 52428800,
        flush_every_n: int = 50,
        flush_interval_ms: int = 1000,
    ) -> None:
        self._output_dir = Path(output_dir)
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._prefix = prefix
        self._tenant_id = tenant_id
        self._rotation_seconds = rotation_seconds
        self._rotation_bytes = rotation_bytes
        self._flush_every_n = flush_every_n
        self._flush_interval_ms = flush_interval_ms

        self._fh = None
        self._active_path: Path | None = None
        self._final_path: Path | None = None
        self._bytes_written = 0
        self._lines_since_flush = 0
        self._last_flush_time = time.monotonic()
        self._opened_at = 0.0

        self._open_new_file()

    async def close(self) -> None:
        """Flush, fsync, and rename the active file on graceful shutdown."""
        if self._fh and not self._fh.closed:
            self._flush()
            os.fsync(self._fh.fileno())
            self._fh.close()
            if self._active_path and self._active_path.exists():
                os.rename(self._active_path, self._final_path)
                logger.info(
                    "Closed and renamed %s → %s",
                    self._active_path.name,
                    self._final_path.name,
                )

    def _write(self, data: bytes) -> None:
        if self._should_rotate():
            self._rotate()

        self._fh.write(data)
        self._bytes_written += len(data)
        self._lines_since_flush += 1

        if self._should_flush():
            self._flush()

    def _open_new_file(self) -> None:
        # Microseconds keep names unique when rotation happens twice in a second.
        ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        base = f"{self._prefix}-{self._tenant_id}-{ts}"
        self._active_path = self._output_dir / f"{base}.ndjson.active"
        self._final_path = self._output_dir / f"{base}.ndjson"
        self._fh = open(self._active_path, "ab")
        self._bytes_written = 0
        self._lines_since_flush = 0
        self._opened_at = time.monotonic()
        self._last_flush_time = time.monotonic()
        logger.info("Opened new file: %s", self._active_path.name)

    def _should_rotate(self) -> bool:
        elapsed = time.monotonic() - self._opened_at
        return (
            self._bytes_written >= self._rotation_bytes
            or elapsed >= self._rotation_seconds
        )

    def _rotate(self) -> None:
        self._flush()
        os.fsync(self._fh.fileno())
        self._fh.close()
        os.rename(self._active_path, self._final_path)
        logger.info(
            "Rotated %s (%d bytes)",
            self._final_path.name,
            self._bytes_written,
        )
        self._open_new_file()

    def _should_flush(self) -> bool:
        if self._lines_since_flush >= self._flush_every_n:
            return True
        elapsed_ms = (time.monotonic() - self._last_flush_time) * 1000
        return elapsed_ms >= self._flush_interval_ms

    def _flush(self) -> None:
        if self._fh and not self._fh.closed:
            self._fh.flush()
            self._lines_since_flush = 0
            self._last_flush_time = time.monotonic()


# ── SQL ─────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class SessionRow(Base):
    __tablename__ = SESSIONS_TABLE

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(String(1024), default=None)
    websocket_url: Mapped[Optional[str]] = mapped_column(String(512), default=None)


class RecordRow(Base):
    __tablename__ = RECORDS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    update_type: Mapped[str] = mapped_column(String(64))
    # Vendor-supplied; stored as received.
    timestamp: Mapped[Optional[str]] = mapped_column(String(64), index=True, default=None)
    raw_telemetry: Mapped[dict] = mapped_column(JSON)
    device_id: Mapped[Optional[str]] = mapped_column(String(128), index=True, default=None)
    vehicle_id: Mapped[Optional[str]] = mapped_column(String(128), index=True, default=None)
    serial_number: Mapped[Optional[str]] = mapped_column(String(128), default=None)
    location_data: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    fuel_data: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    charge_data: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    trip_data: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    engine_data: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    state_data: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    odometer_data: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    misc_data: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


def _columns(model: type[Base], fields: dict[str, Any]) -> dict[str, Any]:
    """Drop keys that are not columns of *model*."""
    names = model.__table__.columns.keys()
    return {k: v for k, v in fields.items() if k in names}


class SqlSink:
    """SQLAlchemy-backed sink.

    Parameters
    ----------
    url:
        SQLAlchemy database URL.
    echo:
        Log every SQL statement (passed through to ``create_engine``).
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self._engine = create_engine(url, echo=echo)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sql-sink")
        self._schema_ready = False

    async def insert_session(self, fields: dict[str, Any]) -> str:
        return await self._run("insert_session", self._insert_session, fields)

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        await self._run("update_session", self._update_session, session_id, fields)

    async def insert_record(self, fields: dict[str, Any]) -> None:
        await self._run("insert_record", self._insert_record, fields)

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._engine.dispose)
        self._executor.shutdown(wait=True)

    # ── internal (executor thread) ─────────────────────────────────

    async def _run(self, operation: str, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, *args)
        except SQLAlchemyError as exc:
            raise SinkError(str(exc), operation=operation) from exc

    def _ensure_schema(self) -> None:
        if not self._schema_ready:
            Base.metadata.create_all(self._engine)
            self._schema_ready = True

    def _insert_session(self, fields: dict[str, Any]) -> str:
        self._ensure_schema()
        with Session(self._engine) as db, db.begin():
            row = SessionRow(**_columns(SessionRow, fields))
            db.add(row)
            db.flush()
            return row.id

    def _update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        self._ensure_schema()
        with Session(self._engine) as db, db.begin():
            result = db.execute(
                update(SessionRow)
                .where(SessionRow.id == session_id)
                .values(**_columns(SessionRow, fields))
            )
            if result.rowcount == 0:
                raise SinkError(f"Unknown session {session_id}", operation="update_session")

    def _insert_record(self, fields: dict[str, Any]) -> None:
        self._ensure_schema()
        with Session(self._engine) as db, db.begin():
            db.add(RecordRow(**_columns(RecordRow, fields)))


def create_sink(config: SinkConfig, tenant_id: str) -> RecordSink:
    """Build the sink selected by ``config.type``."""
    if config.type == "stdout":
        return StdoutSink()
    if config.type == "sql":
        return SqlSink(config.sql.url, echo=config.sql.echo)
    if config.type == "file":
        fc = config.file
        return FileSink(
            output_dir=fc.output_dir,
            prefix=fc.file_prefix,
            tenant_id=tenant_id,
            rotation_seconds=fc.rotation.interval_seconds,
            rotation_bytes=fc.rotation.max_size_bytes,
            flush_every_n=fc.flush.every_n_events,
            flush_interval_ms=fc.flush.interval_ms,
        )
    raise ValueError(f"Unknown sink type: {config.type}")
