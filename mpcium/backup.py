"""Encrypted incremental backups of a Database and their restoration."""

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
from typing import BinaryIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mpcium import logger
from mpcium.database import Database

MAGIC = b"MPCIUM_BACKUP"
DEFAULT_BACKUP_DIR = "./backups"
VERSION_FILE = "latest.version"
ALGORITHM = "AES-256-GCM"
_NONCE_SIZE = 12
_META_LENGTH = struct.Struct(">I")
_MAX_META_LENGTH = 0xFFFFFFFF


class BackupError(Exception):
    """Raised when a backup cannot be written, read or restored."""


def _rfc3339(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


def encrypt_aes_gcm(plaintext: bytes, key: bytes) -> tuple[bytes, bytes]:
    """Encrypt with AES-GCM under a fresh random nonce; return (ciphertext, nonce)."""
    nonce = os.urandom(_NONCE_SIZE)
    return AESGCM(key).encrypt(nonce, plaintext, None), nonce


def decrypt_aes_gcm(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """Decrypt and authenticate AES-GCM ciphertext."""
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError) as exc:
        raise BackupError("backup decryption failed") from exc


@dataclass
class BackupMeta:
    """Metadata stored in the header of each backup file."""

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
        raw = json.loads(data)
        return cls(
            algo=raw.get("algo", ""),
            nonce_b64=raw.get("nonce_b64", ""),
            created_at=raw.get("created_at", ""),
            since=int(raw.get("since", 0)),
            next_since=int(raw.get("next_since", 0)),
            encryption_key_id=raw.get("encryption_key_id", ""),
        )


@dataclass
class BackupVersionInfo:
    """The backup counter and the database version the next backup starts from."""

    version: int
    since: int
    updated_at: str

    def to_json(self) -> bytes:
        return json.dumps(asdict(self), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> BackupVersionInfo:
        raw = json.loads(data)
        return cls(
            version=int(raw.get("version", 0)),
            since=int(raw.get("since", 0)),
            updated_at=raw.get("updated_at", ""),
        )


def _read_header(stream: BinaryIO) -> BackupMeta:
    magic = stream.read(len(MAGIC))
    if len(magic) < len(MAGIC):
        raise BackupError("truncated backup header")
    if magic != MAGIC:
        raise BackupError("bad magic")
    raw_length = stream.read(_META_LENGTH.size)
    if len(raw_length) != _META_LENGTH.size:
        raise BackupError("truncated backup header")
    (meta_length,) = _META_LENGTH.unpack(raw_length)
    raw_meta = stream.read(meta_length)
    if len(raw_meta) != meta_length:
        raise BackupError("truncated backup metadata")
    try:
        return BackupMeta.from_json(raw_meta)
    except (ValueError, TypeError, AttributeError) as exc:
        raise BackupError("invalid backup metadata") from exc


def read_backup_metadata(path: str | os.PathLike[str]) -> BackupMeta:
    """Read the metadata header of a backup file."""
    with open(path, "rb") as fh:
        return _read_header(fh)


class BackupExecutor:
    """Writes encrypted incremental backups of a database into a directory."""

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
        self.backup_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

    @property
    def _version_file(self) -> Path:
        return self.backup_dir / VERSION_FILE

    def execute(self) -> Path | None:
        """Write a backup of everything changed since the last one.

        Returns the new file's path, or None when there was nothing to back up.
        """
        if self.db is None:
            raise BackupError("no database to back up")
        try:
            info = self.load_version_info()
        except (OSError, ValueError) as exc:
            raise BackupError(f"failed to load version info: {exc}") from exc

        since = info.since
        version = info.version + 1
        now = datetime.now().astimezone()
        filename = f"backup-{self.node_id}-{now:%Y-%m-%d_%H-%M-%S}-{version}.enc"
        out_path = self.backup_dir / filename

        plain, next_since = self.db.dump(since)
        if not plain or next_since == since:
            logger.info("[SKIP] No changes since last backup, skipping.")
            return None

        ciphertext, nonce = encrypt_aes_gcm(plain, self.backup_encryption_key)
        meta = BackupMeta(
            algo=ALGORITHM,
            nonce_b64=base64.b64encode(nonce).decode("ascii"),
            created_at=_rfc3339(now),
            since=since,
            next_since=next_since,
            encryption_key_id=hashlib.sha256(self.backup_encryption_key).hexdigest()[:16],
        )
        meta_json = meta.to_json()
        if len(meta_json) > _MAX_META_LENGTH:
            raise BackupError("backup metadata too large")

        with open(out_path, "wb") as fh:
            fh.write(MAGIC)
            fh.write(_META_LENGTH.pack(len(meta_json)))
            fh.write(meta_json)
            fh.write(ciphertext)

        logger.info("Encrypted backup successfully", "file", filename, "version", version)
        try:
            self.save_version_info(version, next_since)
        except OSError as exc:
            logger.warn("Failed to save latest.version", "error", str(exc))
        return out_path

    def save_version_info(self, counter: int, since: int) -> None:
        """Record the backup counter and the next starting version."""
        info = BackupVersionInfo(
            version=counter, since=since, updated_at=_rfc3339(datetime.now(timezone.utc))
        )
        fd = os.open(self._version_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(info.to_json())

    def load_version_info(self) -> BackupVersionInfo:
        """Return the saved version info, or a fresh one when none is saved."""
        try:
            data = self._version_file.read_bytes()
        except FileNotFoundError:
            return BackupVersionInfo(
                version=0, since=0, updated_at=_rfc3339(datetime.now().astimezone())
            )
        return BackupVersionInfo.from_json(data)

    def sorted_encrypted_backups(self) -> list[Path]:
        """Return the backup files in name order."""
        return sorted(self.backup_dir.glob("backup-*.enc"), key=str)

    def restore_all_backups_encrypted(
        self, restore_path: str | os.PathLike[str], encryption_key: bytes
    ) -> None:
        """Replay every backup, oldest first, into a database at restore_path."""
        target = Path(restore_path)
        target.mkdir(mode=0o700, parents=True, exist_ok=True)
        with Database(target, encryption_key) as restored:
            for path in self.sorted_encrypted_backups():
                logger.info("Restoring", "file", str(path))
                self._load_encrypted_backup(restored, path)
        logger.info("Restore complete", "path", str(target))

    def _load_encrypted_backup(self, db: Database, path: Path) -> None:
        with open(path, "rb") as fh:
            meta = _read_header(fh)
            ciphertext = fh.read()
        try:
            nonce = base64.b64decode(meta.nonce_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise BackupError("invalid nonce in backup metadata") from exc
        plain = decrypt_aes_gcm(ciphertext, self.backup_encryption_key, nonce)
        db.load(plain)