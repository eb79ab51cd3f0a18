"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"

DEFAULT_UPSTREAM_URL = "wss://qk3ytibzxc.execute-api.ap-southeast-1.amazonaws.com/production"


@dataclass
class ReconnectConfig:
    """Reconnection backoff parameters."""

    initial_delay_ms: int = 1000
    backoff_multiplier: int = 2
    max_delay_ms: int = 30000
    max_attempts: int = 10


@dataclass
class UpstreamConfig:
    """Upstream telemetry feed settings."""

    url: str = DEFAULT_UPSTREAM_URL
    connect_delay_ms: int = 1000
    keepalive_interval_s: float = 30.0
    ping_timeout_s: float = 20.0
    open_timeout_s: float = 10.0
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class RotationConfig:
    """File rotation thresholds."""

    interval_seconds: int = 600
    max_size_bytes: int = 52428800


@dataclass
class FlushConfig:
    """File flush settings."""

    interval_ms: int = 1000
    every_n_events: int = 50


@dataclass
class FileSinkConfig:
    """NDJSON file sink settings."""

    output_dir: str = "/var/lib/telemetry-bridge/data"
    file_prefix: str = "telemetry"
    rotation: RotationConfig = field(default_factory=RotationConfig)
    flush: FlushConfig = field(default_factory=FlushConfig)


@dataclass
class SqlSinkConfig:
    """SQL sink settings.  ``url`` is any SQLAlchemy database URL."""

    url: str = "sqlite:////var/lib/telemetry-bridge/telemetry.db"
    echo: bool = False


@dataclass
class SinkConfig:
    """Which durable store to write to, plus per-store settings."""

    type: str = "file"
    file: FileSinkConfig = field(default_factory=FileSinkConfig)
    sql: SqlSinkConfig = field(default_factory=SqlSinkConfig)


@dataclass
class HealthConfig:
    """Health/status HTTP surface."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/telemetry-bridge/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*key*", "*token*", "*secret*", "*password*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    tenant_id: str = "default"
    shutdown_timeout_s: float = 5.0
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if secrets and var_name in secrets:
            return secrets[var_name]
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are scalar fields of dataclass *cls*."""
    return {
        k: v for k, v in raw.items()
        if k in cls.__dataclass_fields__ and not isinstance(v, dict)
    }


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    upstream_raw = raw.get("upstream", {})
    sink_raw = raw.get("sink", {})
    file_raw = sink_raw.get("file", {})
    logging_raw = raw.get("logging", {})

    return AppConfig(
        tenant_id=raw.get("tenant_id", "default"),
        shutdown_timeout_s=raw.get("shutdown_timeout_s", 5.0),
        upstream=UpstreamConfig(
            **_pick(UpstreamConfig, upstream_raw),
            reconnect=ReconnectConfig(
                **_pick(ReconnectConfig, upstream_raw.get("reconnect", {}))
            ),
        ),
        sink=SinkConfig(
            type=sink_raw.get("type", "file"),
            file=FileSinkConfig(
                **_pick(FileSinkConfig, file_raw),
                rotation=RotationConfig(**_pick(RotationConfig, file_raw.get("rotation", {}))),
                flush=FlushConfig(**_pick(FlushConfig, file_raw.get("flush", {}))),
            ),
            sql=SqlSinkConfig(**_pick(SqlSinkConfig, sink_raw.get("sql", {}))),
        ),
        health=HealthConfig(**_pick(HealthConfig, raw.get("health", {}))),
        logging=LoggingConfig(
            level=logging_raw.get("level", "info"),
            format=logging_raw.get("format", "json"),
            file=LogFileConfig(**_pick(LogFileConfig, logging_raw.get("file", {}))),
            redact_patterns=logging_raw.get(
                "redact_patterns",
                ["*key*", "*token*", "*secret*", "*password*"],
            ),
        ),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())

    interpolated = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
