"""Embedded, optionally encrypted, versioned key-value database."""

from __future__ import annotations

import abc
import base64
import binascii
import json
import os
import threading
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_MAGIC = b"MPCDB1"
_NONCE_SIZE = 12


class KVStore(abc.ABC):
    """Interface of a key-value store."""

    @abc.abstractmethod
    def put(self, key: str, value: bytes) -> None: ...

    @abc.abstractmethod
    def get(self, key: str) -> bytes: ...

    @abc.abstractmethod
    def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...

    @abc.abstractmethod
    def backup(self) -> Any: ...


class KeyNotFoundError(KeyError):
    """The requested key is not in the database."""

    def __str__(self) -> str:
        return f"key not found: {self.args[0]}"


class Database:
    """Directory-backed key-value database; every write gets a new commit version."""

    def __init__(self, path: str | os.PathLike[str], encryption_key: bytes | None = b"") -> None:
        key = bytes(encryption_key or b"")
        if key and len(key) not in (16, 24, 32):
            raise ValueError("encryption key must be 16, 24 or 32 bytes long")
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True, mode=0o700)
        self._file = self.path / "data.db"
        self._aead = AESGCM(key) if key else None
        self._lock = threading.RLock()
        self._entries: dict[str, tuple[int, bytes]] = {}
        self._version = 0
        self._closed = False
        if self._file.exists():
            self._read()

    def _read(self) -> None:
        raw = self._file.read_bytes()
        if not raw.startswith(_MAGIC) or len(raw) <= len(_MAGIC):
            raise ValueError(f"not a database file: {self._file}")
        encrypted, body = raw[len(_MAGIC)] == 1, raw[len(_MAGIC) + 1:]
        if encrypted != (self._aead is not None):
            raise ValueError("encryption key mismatch")
        if self._aead is not None:
            try:
                body = self._aead.decrypt(body[:_NONCE_SIZE], body[_NONCE_SIZE:], _MAGIC)
            except InvalidTag as exc:
                raise ValueError("encryption key mismatch") from exc
        try:
            state = json.loads(body)
            self._version = int(state["version"])
            self._entries = {k: (int(v), base64.b64decode(b)) for k, v, b in state["entries"]}
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"corrupt database file: {self._file}") from exc

    def _write(self) -> None:
        payload = json.dumps({
            "version": self._version,
            "entries": [[k, v, base64.b64encode(b).decode("ascii")] for k, (v, b) in self._entries.items()],
        }).encode("utf-8")
        if self._aead is not None:
            nonce = os.urandom(_NONCE_SIZE)
            body = b"\x01" + nonce + self._aead.encrypt(nonce, payload, _MAGIC)
        else:
            body = b"\x00" + payload
        tmp = self._file.with_suffix(".tmp")
        with open(tmp, "wb") as fh:
            fh.write(_MAGIC + body)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self._file)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("database is closed")

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._check_open()
            self._version += 1
            self._entries[key] = (self._version, bytes(value))
            self._write()

    def get(self, key: str) -> bytes:
        with self._lock:
            self._check_open()
            try:
                return self._entries[key][1]
            except KeyError:
                raise KeyNotFoundError(key) from None

    def delete(self, key: str) -> None:
        with self._lock:
            self._check_open()
            self._version += 1
            self._entries.pop(key, None)
            self._write()

    def keys(self) -> list[str]:
        """All keys in byte order."""
        with self._lock:
            self._check_open()
            return sorted(self._entries, key=lambda k: k.encode("utf-8"))

    def backup(self, since: int) -> tuple[bytes, int]:
        """Dump entries with version >= ``since``; return the dump and the highest version in it."""
        with self._lock:
            self._check_open()
            selected = sorted(
                ((k, v, b) for k, (v, b) in self._entries.items() if v >= since),
                key=lambda item: item[0].encode("utf-8"),
            )
        if not selected:
            return b"", since
        dump = [{"key": k, "version": v, "value": base64.b64encode(b).decode("ascii")} for k, v, b in selected]
        return json.dumps(dump).encode("utf-8"), max(v for _, v, _ in selected)

    def load(self, data: bytes) -> None:
        """Apply a dump produced by :meth:`backup`, keeping the entries' versions."""
        if not data:
            return
        try:
            items = [
                (str(i["key"]), int(i["version"]), base64.b64decode(i["value"], validate=True))
                for i in json.loads(data)
            ]
        except (KeyError, TypeError, ValueError, binascii.Error) as exc:
            raise ValueError("invalid backup data") from exc
        with self._lock:
            self._check_open()
            for key, version, value in items:
                self._entries[key] = (version, value)
                self._version = max(self._version, version)
            self._write()

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()