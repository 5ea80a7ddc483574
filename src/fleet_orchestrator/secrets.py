"""AES-256-GCM encrypted secret store.

Holds the values ``${VAR}`` placeholders in the config resolve against,
and the private keys generated for gateways during onboarding.

File format::

    [8 bytes:  magic "FLTSECRT"]
    [1 byte:   version = 0x01]
    [16 bytes: salt]             ← authenticated as associated data
    [12 bytes: nonce]
    [N bytes:  ciphertext]
    [16 bytes: GCM auth tag]     ← appended by AESGCM automatically

The key is the raw 32 bytes of a key file created with mode ``0600``.
Every write re-encrypts the whole store under a fresh salt and nonce and
replaces the file atomically. Read-modify-write cycles hold an exclusive
``flock`` on a sidecar ``.lock`` file, so separate processes sharing one
store do not lose each other's writes.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import orjson
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

MAGIC = b"FLTSECRT"
VERSION = 0x01
SALT_LEN = 16
NONCE_LEN = 12
KEY_LEN = 32
_HEADER_LEN = len(MAGIC) + 1 + SALT_LEN + NONCE_LEN


def device_key_name(device_name: str) -> str:
    """Name under which a gateway's private key is stored."""
    return f"device:{device_name}:private_key"


def _read_key(key_file: str | Path) -> bytes:
    kf = Path(key_file)
    if not kf.exists():
        raise FileNotFoundError(f"Key file not found: {key_file}")
    key = kf.read_bytes()
    if len(key) != KEY_LEN:
        raise ValueError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


def _create_key(key_file: str | Path) -> bytes:
    kf = Path(key_file)
    if not kf.exists():
        kf.write_bytes(os.urandom(KEY_LEN))
        os.chmod(kf, 0o600)
    return _read_key(kf)


class SecretStore:
    """Named secrets in one encrypted file.

    Parameters
    ----------
    path:
        The ``.secrets.enc`` file.
    key_file:
        The 32-byte master key.
    """

    def __init__(self, path: str | Path, key_file: str | Path) -> None:
        self._path = Path(path)
        self._key_file = Path(key_file)
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self, write: bool = False) -> Iterator[None]:
        lock_path = self._path.with_name(self._path.name + ".lock")
        with self._lock, open(lock_path, "a+b") as lock_fh:
            fcntl.flock(lock_fh.fileno(), fcntl.LOCK_EX if write else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)

    @classmethod
    def init(cls, path: str | Path, key_file: str | Path) -> "SecretStore":
        """Create an empty store, generating the key file when absent."""
        key = _create_key(key_file)
        store = cls(path, key_file)
        with store._locked(write=True):
            _encrypt_store(store.path, key, {})
        logger.info("Initialised secret store at %s", path)
        return store

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, str]:
        """Decrypt and return every secret."""
        with self._locked():
            return _decrypt_store(self._path, _read_key(self._key_file))

    def get(self, name: str) -> Optional[str]:
        return self.load().get(name)

    def names(self) -> list[str]:
        """Return the names (not values) of all stored secrets."""
        return sorted(self.load())

    def set(self, name: str, value: str) -> None:
        """Add or replace a single secret."""
        with self._locked(write=True):
            key = _read_key(self._key_file)
            store = _decrypt_store(self._path, key)
            store[name] = value
            _encrypt_store(self._path, key, store)

    def delete(self, name: str) -> bool:
        """Remove *name*; returns whether it was present."""
        with self._locked(write=True):
            key = _read_key(self._key_file)
            store = _decrypt_store(self._path, key)
            if store.pop(name, None) is None:
                return False
            _encrypt_store(self._path, key, store)
            return True

    def rekey(self, new_key_file: str | Path) -> None:
        """Re-encrypt the store under *new_key_file* and switch to it."""
        with self._locked(write=True):
            store = _decrypt_store(self._path, _read_key(self._key_file))
            new_key = _create_key(new_key_file)
            _encrypt_store(self._path, new_key, store)
            self._key_file = Path(new_key_file)
        logger.info("Re-encrypted secret store %s with %s", self._path, new_key_file)


def load_secrets(secrets_file: str | Path, key_file: str | Path) -> dict[str, str]:
    """Decrypt and return the full secrets dict."""
    return SecretStore(secrets_file, key_file).load()


# ── internal helpers ────────────────────────────────────────────────

def _encrypt_store(path: Path, key: bytes, store: dict[str, str]) -> None:
    """Serialize *store* to JSON, encrypt, and atomically replace *path*."""
    plaintext = orjson.dumps(store)
    salt = os.urandom(SALT_LEN)
    nonce = os.urandom(NONCE_LEN)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, salt)  # includes 16-byte tag

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".", suffix=".tmp")
    tmp_path = Path(tmp_name)
    with os.fdopen(fd, "wb") as fh:
        fh.write(MAGIC)
        fh.write(bytes([VERSION]))
        fh.write(salt)
        fh.write(nonce)
        fh.write(ciphertext)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)


def _decrypt_store(path: Path, key: bytes) -> dict[str, str]:
    """Read and decrypt the secrets file, returning the JSON dict."""
    data = path.read_bytes()

    if len(data) < _HEADER_LEN or data[:8] != MAGIC:
        raise ValueError("Invalid secrets file (bad magic)")
    if data[8] != VERSION:
        raise ValueError(f"Unsupported secrets file version: {data[8]}")

    salt = data[9:9 + SALT_LEN]
    nonce = data[9 + SALT_LEN:_HEADER_LEN]
    ciphertext = data[_HEADER_LEN:]

    plaintext = AESGCM(key).decrypt(nonce, ciphertext, salt)
    return orjson.loads(plaintext)
