"""Click CLI for the telemetry bridge.

Entry point registered in ``pyproject.toml`` as ``telemetry-bridge``.

Subcommands::

    telemetry-bridge                      # run the bridge
    telemetry-bridge normalize FILE       # print the record one envelope becomes
    telemetry-bridge secrets init         # create encrypted secrets file + key
    telemetry-bridge secrets set NAME     # store a secret
    telemetry-bridge secrets unset NAME   # remove a secret
    telemetry-bridge secrets list         # list secret names
    telemetry-bridge secrets rekey        # re-encrypt with a new key
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import click
import orjson

from telemetry_bridge import __version__
from telemetry_bridge.config import AppConfig, LogFileConfig, load_config
from telemetry_bridge.connection import ConnectionManager
from telemetry_bridge.envelope import build_record, decode_envelope
from telemetry_bridge.exceptions import DecodeError
from telemetry_bridge.health import HealthServer
from telemetry_bridge.redactor import SecretRedactingFilter, collect_secret_values
from telemetry_bridge.secrets import SecretStore, SecretStoreError, ensure_key_file, read_key_file
from telemetry_bridge.sinks import create_sink
from telemetry_bridge.transport import WebSocketTransport

logger = logging.getLogger("telemetry_bridge")

DEFAULT_CONFIG = "/etc/telemetry-bridge/config.json"
DEFAULT_SECRETS_FILE = "/etc/telemetry-bridge/.secrets.enc"


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger with JSON output on stderr + optional file + redaction."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    redactor = SecretRedactingFilter(secret_values)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file_config and log_file_config.enabled:
        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        ))

    # Filters on handlers also see records propagated from child loggers.
    for handler in handlers:
        handler.setFormatter(_JsonFormatter())
        handler.addFilter(redactor)
        root.addHandler(handler)


def _secret_store(key_file: Optional[str], create_key: bool = False) -> SecretStore:
    secrets_file = os.environ.get("TELEMETRY_BRIDGE_SECRETS_FILE", DEFAULT_SECRETS_FILE)
    key_path = key_file or os.environ.get("TELEMETRY_BRIDGE_KEY_FILE")
    if not key_path:
        raise click.UsageError("--key-file or TELEMETRY_BRIDGE_KEY_FILE is required")
    key = ensure_key_file(key_path) if create_key else read_key_file(key_path)
    return SecretStore(secrets_file, key)


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("-s", "--sink", "sink_type", type=click.Choice(["file", "stdout", "sql"]),
              default=None, help="Durable store to write to.")
@click.option("-d", "--output-dir", default=None, help="Override file sink directory.")
@click.option("--upstream-url", default=None, help="Override upstream WebSocket URL.")
@click.option("--tenant-id", default=None, help="Override tenant identifier.")
@click.option("--no-health", is_flag=True, help="Do not start the health endpoint.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    sink_type: Optional[str],
    output_dir: Optional[str],
    upstream_url: Optional[str],
    tenant_id: Optional[str],
    no_health: bool,
    validate_only: bool,
) -> None:
    """Telemetry WebSocket Bridge: upstream vehicle telemetry to a durable store."""
    if ctx.invoked_subcommand is not None:
        return

    cfg_path = config_path or os.environ.get("TELEMETRY_BRIDGE_CONFIG", DEFAULT_CONFIG)

    secrets_dict: dict[str, str] = {}
    key_file = os.environ.get("TELEMETRY_BRIDGE_KEY_FILE")
    try:
        if key_file and Path(key_file).exists():
            store = SecretStore(
                os.environ.get("TELEMETRY_BRIDGE_SECRETS_FILE", DEFAULT_SECRETS_FILE),
                read_key_file(key_file),
            )
            if store.exists():
                secrets_dict = store.load()
        cfg = load_config(cfg_path, secrets=secrets_dict)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    if upstream_url:
        cfg.upstream.url = upstream_url
    if tenant_id:
        cfg.tenant_id = tenant_id
    cfg.sink.type = sink_type or os.environ.get("TELEMETRY_BRIDGE_SINK") or cfg.sink.type
    if output_dir:
        cfg.sink.file.output_dir = output_dir
    if no_health:
        cfg.health.enabled = False
    effective_level = (
        log_level
        or os.environ.get("TELEMETRY_BRIDGE_LOG_LEVEL")
        or cfg.logging.level
    )

    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    secret_values.extend(secrets_dict.values())
    _setup_logging(effective_level, secret_values, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting telemetry-bridge %s (tenant=%s, sink=%s, upstream=%s)",
        __version__,
        cfg.tenant_id,
        cfg.sink.type,
        cfg.upstream.url,
    )

    asyncio.run(_run_bridge(cfg))


# ── async runtime ───────────────────────────────────────────────────


async def _run_bridge(cfg: AppConfig) -> None:
    """Wire transport, sink, manager and health endpoint; run until signalled."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    sink = create_sink(cfg.sink, cfg.tenant_id)
    transport = WebSocketTransport(
        open_timeout=cfg.upstream.open_timeout_s,
        ping_timeout=cfg.upstream.ping_timeout_s,
    )
    manager = ConnectionManager(cfg.upstream, transport, sink, tenant_id=cfg.tenant_id)
    health = HealthServer(manager, cfg.health.host, cfg.health.port) if cfg.health.enabled else None

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    try:
        if health is not None:
            await health.start()

        try:
            await asyncio.wait_for(stop.wait(), timeout=cfg.upstream.connect_delay_ms / 1000.0)
        except asyncio.TimeoutError:
            await manager.connect()

        await stop.wait()
    finally:
        logger.info("Shutting down gracefully")
        await manager.shutdown(timeout=cfg.shutdown_timeout_s)
        if health is not None:
            await health.stop()
        await sink.close()
        logger.info("Bridge shut down")


# ── normalize ───────────────────────────────────────────────────────


@main.command("normalize")
@click.argument("source", type=click.File("rb"), default="-")
@click.option("--tenant-id", default="default", help="Tenant stamped on the record.")
def normalize_cmd(source, tenant_id: str) -> None:
    """Print the record a single envelope (FILE or stdin) would be stored as."""
    try:
        envelope = decode_envelope(source.read())
    except DecodeError as exc:
        raise click.ClickException(str(exc)) from exc
    record = build_record(envelope, tenant_id)
    click.echo(orjson.dumps(record, option=orjson.OPT_INDENT_2).decode())


# ── secrets subcommand group ────────────────────────────────────────


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file (TELEMETRY_BRIDGE_SECRETS_FILE)."""


@secrets.command("init")
@click.option("--key-file", default=None, help="Master key path (created if missing).")
def secrets_init(key_file: Optional[str]) -> None:
    """Create an empty encrypted secrets file and, if needed, its key."""
    store = _secret_store(key_file, create_key=True)
    if store.exists():
        raise click.ClickException(f"Already exists: {store.path}")
    store.save({})
    click.echo(f"Initialized: {store.path}")


@secrets.command("set")
@click.argument("name")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", default=None, help="Master key path.")
def secrets_set(name: str, value: str, key_file: Optional[str]) -> None:
    """Store a secret, e.g. DATABASE_URL."""
    try:
        _secret_store(key_file).set(name, value)
    except SecretStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Set: {name}")


@secrets.command("unset")
@click.argument("name")
@click.option("--key-file", default=None, help="Master key path.")
def secrets_unset(name: str, key_file: Optional[str]) -> None:
    """Remove a stored secret."""
    try:
        removed = _secret_store(key_file).unset(name)
    except SecretStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if not removed:
        raise click.ClickException(f"No such secret: {name}")
    click.echo(f"Removed: {name}")


@secrets.command("list")
@click.option("--key-file", default=None, help="Master key path.")
def secrets_list(key_file: Optional[str]) -> None:
    """List stored secret names (values are never shown)."""
    try:
        names = _secret_store(key_file).names()
    except SecretStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    for name in names:
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", default=None, help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path (created if missing).")
def secrets_rekey(key_file: Optional[str], new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    try:
        _secret_store(key_file).rekey(ensure_key_file(new_key_file))
    except SecretStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Re-keyed with: {new_key_file}")
