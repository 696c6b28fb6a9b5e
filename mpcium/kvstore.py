"""Encrypted key-value store with encrypted incremental backups."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mpcium import logger
from mpcium.backup import BackupError, BackupExecutor
from mpcium.db import Database, KVStore


class EncryptionKeyNotProvidedError(ValueError):
    """The store was configured without an encryption key."""

    def __init__(self, message: str = "encryption key not provided") -> None:
        super().__init__(message)


class BackupEncryptionKeyNotProvidedError(ValueError):
    """The store was configured without a backup encryption key."""

    def __init__(self, message: str = "backup encryption key not provided") -> None:
        super().__init__(message)


@dataclass
class BadgerConfig:
    """Settings for :func:`new_badger_kv_store`."""

    node_id: str = ""
    encryption_key: bytes = b""
    backup_encryption_key: bytes = b""
    backup_dir: str | os.PathLike[str] = ""
    db_path: str | os.PathLike[str] = ""


class QuietLogger:
    """Database logger that forwards errors and warnings and drops info and debug output."""

    min_level = logger.Level.WARN

    def _log(self, level: logger.Level, fmt: str, args: tuple[Any, ...]) -> None:
        if level < self.min_level:
            return
        text = fmt % args if args else fmt
        if level >= logger.Level.ERROR:
            logger.error("[BADGER] ERROR", None, "detail", text)
        else:
            logger.warn("[BADGER] WARN", "detail", text)

    def error(self, fmt: str, *args: Any) -> None:
        self._log(logger.Level.ERROR, fmt, args)

    def warning(self, fmt: str, *args: Any) -> None:
        self._log(logger.Level.WARN, fmt, args)

    def info(self, fmt: str, *args: Any) -> None:
        self._log(logger.Level.INFO, fmt, args)

    def debug(self, fmt: str, *args: Any) -> None:
        self._log(logger.Level.DEBUG, fmt, args)


@dataclass(eq=False)
class BadgerKVStore(KVStore):
    """Key-value store over an encrypted :class:`~mpcium.db.Database`."""

    db: Database
    backup_executor: BackupExecutor | None = None

    def put(self, key: str, value: bytes) -> None:
        self.db.put(key, value)

    def get(self, key: str) -> bytes:
        """Return the value for ``key``; raise KeyNotFoundError if it is absent."""
        return self.db.get(key)

    def keys(self) -> list[str]:
        return self.db.keys()

    def delete(self, key: str) -> None:
        self.db.delete(key)

    def backup(self) -> Path | None:
        """Write an incremental encrypted backup; return its path, or None if nothing changed."""
        if self.backup_executor is None:
            raise BackupError("backup executor is not initialized")
        return self.backup_executor.execute()

    def close(self) -> None:
        self.db.close()


def new_badger_kv_store(config: BadgerConfig) -> BadgerKVStore:
    """Open the encrypted store described by ``config`` together with its backup executor."""
    if not config.encryption_key:
        raise EncryptionKeyNotProvidedError()
    if not config.backup_encryption_key:
        raise BackupEncryptionKeyNotProvidedError()

    db = Database(config.db_path, config.encryption_key)
    logger.info("Connected to BadgerDB successfully!", "path", str(config.db_path))

    try:
        executor = BackupExecutor(
            config.node_id,
            db,
            config.backup_encryption_key,
            config.backup_dir,
        )
    except BaseException:
        db.close()
        raise
    return BadgerKVStore(db=db, backup_executor=executor)