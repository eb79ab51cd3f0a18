"""Encrypted store for sink credentials (database URLs, service keys).

Config values such as ``"${DATABASE_URL}"`` are resolved from this store
when neither a CLI override nor an environment variable supplies them.

File layout::

    [8 bytes:  magic "TLMBSECR"]
    [1 byte:   version = 0x01]
    [12 bytes: nonce]
    [N bytes:  AES-256-GCM ciphertext + 16-byte tag]

The 9-byte header is bound to the ciphertext as associated data.  The key
is a raw 32-byte file, created with mode 0600 when missing.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

MAGIC = b"TLMBSECR"
VERSION = 0x01
NONCE_LEN = 12
KEY_LEN = 32
_HEADER = MAGIC + bytes([VERSION])


class SecretStoreError(Exception):
    """The secrets file or key file is missing, corrupt, or mismatched."""


def ensure_key_file(key_file: str | Path) -> bytes:
    """Return the key in *key_file*, generating a new one if it does not exist."""
    kf = Path(key_file)
    if not kf.exists():
        kf.parent.mkdir(parents=True, exist_ok=True)
        kf.write_bytes(AESGCM.generate_key(bit_length=256))
        os.chmod(kf, 0o600)
        logger.info("Generated new key file %s", kf)
    return read_key_file(kf)


def read_key_file(key_file: str | Path) -> bytes:
    kf = Path(key_file)
    if not kf.exists():
        raise SecretStoreError(f"Key file not found: {kf}")
    key = kf.read_bytes()
    if len(key) != KEY_LEN:
        raise SecretStoreError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


class SecretStore:
    """Name → value secrets, encrypted at rest in a single file.

    Parameters
    ----------
    path:
        Location of the encrypted file.
    key:
        32-byte AES key (see :func:`read_key_file`).
    """

    def __init__(self, path: str | Path, key: bytes) -> None:
        if len(key) != KEY_LEN:
            raise SecretStoreError(f"Key must be {KEY_LEN} bytes")
        self._path = Path(path)
        self._key = key

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> dict[str, str]:
        """Decrypt and return every stored secret."""
        try:
            data = self._path.read_bytes()
        except FileNotFoundError as exc:
            raise SecretStoreError(f"Secrets file not found: {self._path}") from exc

        if not data.startswith(MAGIC):
            raise SecretStoreError("Invalid secrets file (bad magic)")
        if len(data) < len(_HEADER) + NONCE_LEN:
            raise SecretStoreError("Invalid secrets file (truncated)")
        if data[len(MAGIC)] != VERSION:
            raise SecretStoreError(f"Unsupported secrets file version: {data[len(MAGIC)]}")

        nonce = data[len(_HEADER):len(_HEADER) + NONCE_LEN]
        ciphertext = data[len(_HEADER) + NONCE_LEN:]
        try:
            plaintext = AESGCM(self._key).decrypt(nonce, ciphertext, _HEADER)
        except InvalidTag as exc:
            raise SecretStoreError("Wrong key or tampered secrets file") from exc
        return orjson.loads(plaintext)

    def save(self, values: dict[str, str]) -> None:
        """Encrypt *values* and replace the file atomically."""
        nonce = os.urandom(NONCE_LEN)
        ciphertext = AESGCM(self._key).encrypt(nonce, orjson.dumps(values), _HEADER)

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "wb") as fh:
            fh.write(_HEADER + nonce + ciphertext)
        os.chmod(tmp, 0o600)
        os.replace(tmp, self._path)

    def names(self) -> list[str]:
        return sorted(self.load())

    def set(self, name: str, value: str) -> None:
        values = self.load() if self.exists() else {}
        values[name] = value
        self.save(values)

    def unset(self, name: str) -> bool:
        """Remove *name*; returns False if it was not stored."""
        values = self.load()
        if name not in values:
            return False
        del values[name]
        self.save(values)
        return True

    def rekey(self, new_key: bytes) -> "SecretStore":
        """Re-encrypt the contents under *new_key* and return the new store."""
        values = self.load()
        store = SecretStore(self._path, new_key)
        store.save(values)
        return store
