"""Encrypted incremental backups of a :class:`~mpcium.db.Database`."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import struct
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mpcium.db import Database

MAGIC = b"MPCIUM_BACKUP"
DEFAULT_BACKUP_DIR = "./backups"
ALGORITHM = "AES-256-GCM"
NONCE_SIZE = 12
_VERSION_FILE = "latest.version"
_MAX_META_LEN = 0xFFFFFFFF


def encrypt_aes_gcm(plaintext: bytes, key: bytes) -> tuple[bytes, bytes]:
    """Encrypt with AES-GCM under a fresh nonce; return (ciphertext, nonce)."""
    nonce = os.urandom(NONCE_SIZE)
    return AESGCM(bytes(key)).encrypt(nonce, bytes(plaintext), None), nonce


def decrypt_aes_gcm(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """Decrypt AES-GCM ciphertext; raise ValueError if authentication fails."""
    try:
        return AESGCM(bytes(key)).decrypt(bytes(nonce), bytes(ciphertext), None)
    except InvalidTag as exc:
        raise ValueError("message authentication failed") from exc


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is not None and moment.utcoffset() == timezone.utc.utcoffset(None):
        return moment.strftime("%Y-%m-%dT%H:%M:%SZ")
    return moment.isoformat(timespec="seconds")


class BackupError(Exception):
    """A backup could not be written, read or restored."""


@dataclass
class BackupMeta:
    algo: str
    nonce_b64: str
    created_at: str
    since: int
    next_since: int
    encryption_key_id: str

    def to_json(self) -> bytes:
        return json.dumps(asdict(self), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> BackupMeta:
        try:
            raw = json.loads(data)
            return cls(
                algo=str(raw["algo"]),
                nonce_b64=str(raw["nonce_b64"]),
                created_at=str(raw["created_at"]),
                since=int(raw["since"]),
                next_since=int(raw["next_since"]),
                encryption_key_id=str(raw["encryption_key_id"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise BackupError(f"invalid backup metadata: {exc}") from exc


@dataclass
class BackupVersionInfo:
    version: int
    since: int
    updated_at: str

    def to_json(self) -> bytes:
        return json.dumps(asdict(self), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> BackupVersionInfo:
        try:
            raw = json.loads(data)
            return cls(
                version=int(raw.get("version", 0)),
                since=int(raw.get("since", 0)),
                updated_at=str(raw.get("updated_at", "")),
            )
        except (AttributeError, TypeError, ValueError) as exc:
            raise BackupError(f"invalid version info: {exc}") from exc


class BackupExecutor:
    """Writes encrypted incremental backups and restores them."""

    def __init__(
        self,
        node_id: str,
        db: Database | None,
        backup_encryption_key: bytes,
        backup_dir: str | os.PathLike[str] = "",
    ) -> None:
        self.node_id = node_id
        self.db = db
        self.backup_encryption_key = bytes(backup_encryption_key)
        self.backup_dir = Path(backup_dir or DEFAULT_BACKUP_DIR)
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            raise BackupError(f"failed to create backup directory: {exc}") from exc

    @property
    def _version_file(self) -> Path:
        return self.backup_dir / _VERSION_FILE

    def execute(self) -> Path | None:
        """Write a backup of changes since the last one; return its path, or None if skipped."""
        if self.db is None:
            raise BackupError("no database to back up")
        info = self.load_version_info()
        since = info.since
        version = info.version + 1
        now = datetime.now().astimezone()
        filename = f"backup-{self.node_id}-{now:%Y-%m-%d_%H-%M-%S}-{version}.enc"
        out_path = self.backup_dir / filename

        plain, next_since = self.db.backup(since)
        if not plain or next_since == since:
            print("[SKIP] No changes since last backup, skipping.")
            return None

        try:
            ciphertext, nonce = encrypt_aes_gcm(plain, self.backup_encryption_key)
        except ValueError as exc:
            raise BackupError(f"failed to encrypt backup: {exc}") from exc

        meta = BackupMeta(
            algo=ALGORITHM,
            nonce_b64=base64.b64encode(nonce).decode("ascii"),
            created_at=_rfc3339(now),
            since=since,
            next_since=next_since,
            encryption_key_id=hashlib.sha256(self.backup_encryption_key).hexdigest()[:16],
        )
        meta_json = meta.to_json()
        if len(meta_json) > _MAX_META_LEN:
            raise BackupError("metaJSON too large")

        try:
            with open(out_path, "wb") as fh:
                fh.write(MAGIC)
                fh.write(struct.pack(">I", len(meta_json)))
                fh.write(meta_json)
                fh.write(ciphertext)
        except OSError as exc:
            raise BackupError(f"failed to write backup: {exc}") from exc

        print("Encrypted backup successfully:", filename, "next version:", version)
        try:
            self.save_version_info(version, next_since)
        except OSError as exc:
            print("Warning: Failed to save latest.version:", exc)
        return out_path

    def save_version_info(self, counter: int, since: int) -> None:
        info = BackupVersionInfo(
            version=counter,
            since=since,
            updated_at=_rfc3339(datetime.now(timezone.utc)),
        )
        fd = os.open(self._version_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(info.to_json())

    def load_version_info(self) -> BackupVersionInfo:
        """Read latest.version; a missing file gives version 0 and since 0."""
        try:
            data = self._version_file.read_bytes()
        except FileNotFoundError:
            return BackupVersionInfo(
                version=0, since=0, updated_at=_rfc3339(datetime.now().astimezone())
            )
        except OSError as exc:
            raise BackupError(f"failed to load version info: {exc}") from exc
        return BackupVersionInfo.from_json(data)

    def sorted_encrypted_backups(self) -> list[Path]:
        return sorted(self.backup_dir.glob("backup-*.enc"), key=str)

    def restore_all_backups_encrypted(
        self, restore_path: str | os.PathLike[str], encryption_key: bytes
    ) -> None:
        """Replay every backup, oldest first, into a new database at ``restore_path``."""
        try:
            Path(restore_path).mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            raise BackupError(f"failed to create restore directory: {exc}") from exc

        restore_db = Database(restore_path, encryption_key)
        try:
            for path in self.sorted_encrypted_backups():
                print("Restoring:", path)
                self._load_encrypted_backup(restore_db, path)
        finally:
            restore_db.close()
        print("✅ Restore complete:", restore_path)

    def _read_backup(self, path: Path) -> tuple[BackupMeta, bytes]:
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise BackupError(f"failed to read backup {path}: {exc}") from exc
        if len(data) < len(MAGIC) or data[: len(MAGIC)] != MAGIC:
            raise BackupError("bad magic")
        offset = len(MAGIC)
        if len(data) < offset + 4:
            raise BackupError("truncated backup file")
        (meta_len,) = struct.unpack(">I", data[offset : offset + 4])
        offset += 4
        if len(data) < offset + meta_len:
            raise BackupError("truncated backup file")
        meta = BackupMeta.from_json(data[offset : offset + meta_len])
        return meta, data[offset + meta_len :]

    def read_backup_metadata(self, path: str | os.PathLike[str]) -> BackupMeta:
        return self._read_backup(Path(path))[0]

    def _load_encrypted_backup(self, db: Database, path: Path) -> None:
        meta, ciphertext = self._read_backup(path)
        try:
            nonce = base64.b64decode(meta.nonce_b64, validate=True)
        except binascii.Error as exc:
            raise BackupError(f"invalid nonce in {path}") from exc
        try:
            plain = decrypt_aes_gcm(ciphertext, self.backup_encryption_key, nonce)
        except ValueError as exc:
            raise BackupError(f"failed to decrypt {path}: {exc}") from exc
        try:
            db.load(plain)
        except ValueError as exc:
            raise BackupError(f"failed to load {path}: {exc}") from exc