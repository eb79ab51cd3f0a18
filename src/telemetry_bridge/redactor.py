"""Logging filter that keeps sink credentials out of log output.

Two kinds of values are collected from the resolved configuration:

* values whose *key* matches one of ``logging.redact_patterns``
  (case-insensitive shell globs such as ``*password*``);
* passwords embedded in any URL-shaped value, e.g. the ``secret`` in
  ``postgresql://bridge:secret@db/telemetry``.  SQLAlchemy and the driver
  both like to echo the URL on connection errors.

Occurrences of collected values are replaced with ``[REDACTED]`` in each
record's message and arguments before it is emitted.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Iterable
from urllib.parse import unquote, urlsplit

REDACTED = "[REDACTED]"


class SecretRedactingFilter(logging.Filter):
    """A :class:`logging.Filter` that scrubs secret values from log output."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        self._secrets: list[str] = []
        for value in secret_values or []:
            self.add_secret(value)

    def add_secret(self, value: str) -> None:
        """Register an additional secret value at runtime.

        Single characters are ignored; redacting them would shred every
        message.  Longer secrets are matched first.
        """
        if value and len(value) > 1 and value not in self._secrets:
            self._secrets.append(value)
            self._secrets.sort(key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            record.msg = self._redact(record.msg)
            if isinstance(record.args, dict):
                record.args = {k: self._redact(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._redact(a) for a in record.args)
        return True

    def _redact(self, value: Any) -> Any:
        if isinstance(value, BaseException):
            value = str(value)
        if not isinstance(value, str):
            return value
        for secret in self._secrets:
            if secret in value:
                value = value.replace(secret, REDACTED)
        return value


def url_password(value: str) -> str | None:
    """Return the password component of a URL-shaped *value*, if any."""
    if "://" not in value or "@" not in value:
        return None
    try:
        password = urlsplit(value).password
    except ValueError:
        return None
    return password or None


def collect_secret_values(
    config_dict: dict[str, Any],
    patterns: list[str] | None = None,
) -> list[str]:
    """Walk *config_dict* and collect every value that must not be logged."""
    results: list[str] = []
    _walk(config_dict, [p.lower() for p in patterns or []], results)
    return results


def _walk(obj: Any, patterns: list[str], out: list[str]) -> None:
    if isinstance(obj, dict):
        for key, val in obj.items():
            if isinstance(val, str):
                if any(fnmatch.fnmatch(str(key).lower(), p) for p in patterns):
                    out.append(val)
                password = url_password(val)
                if password:
                    out.extend(sorted({password, unquote(password)}))
            else:
                _walk(val, patterns, out)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            _walk(item, patterns, out)
