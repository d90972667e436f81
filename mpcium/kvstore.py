"""Key/value store interface and its encrypted, backed-up implementation."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from mpcium import logger
from mpcium.backup import BackupError, BackupExecutor
from mpcium.database import Database


class KVStore(ABC):
    """A key/value store with backups."""

    @abstractmethod
    def put(self, key: str, value: bytes) -> None:
        """Store a value under a key."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the value of a key; raise KeyError when it is absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key."""

    @abstractmethod
    def close(self) -> None:
        """Release the store."""

    @abstractmethod
    def backup(self) -> Path | None:
        """Write a backup of recent changes."""


@dataclass
class StoreConfig:
    """Settings for an EncryptedKVStore."""

    node_id: str = ""
    encryption_key: bytes = b""
    backup_encryption_key: bytes = b""
    backup_dir: str | os.PathLike[str] = ""
    db_path: str | os.PathLike[str] = ""


class EncryptionKeyNotProvidedError(ValueError):
    """The store's encryption key is missing."""


class BackupEncryptionKeyNotProvidedError(ValueError):
    """The backup encryption key is missing."""


class EncryptedKVStore(KVStore):
    """KVStore over an encrypted Database with encrypted incremental backups."""

    def __init__(self, config: StoreConfig) -> None:
        if not config.encryption_key:
            raise EncryptionKeyNotProvidedError("encryption key not provided")
        if not config.backup_encryption_key:
            raise BackupEncryptionKeyNotProvidedError("backup encryption key not provided")

        self.db = Database(config.db_path, config.encryption_key)
        logger.info("Connected to database successfully!", "path", str(config.db_path))
        try:
            self.backup_executor: BackupExecutor | None = BackupExecutor(
                config.node_id, self.db, config.backup_encryption_key, config.backup_dir
            )
        except BaseException:
            self.db.close()
            raise

    def put(self, key: str, value: bytes) -> None:
        self.db.set(key, value)

    def get(self, key: str) -> bytes:
        return self.db.get(key)

    def keys(self) -> list[str]:
        """Return all keys in sorted order."""
        return self.db.keys()

    def delete(self, key: str) -> None:
        self.db.delete(key)

    def backup(self) -> Path | None:
        if self.backup_executor is None:
            raise BackupError("backup executor is not initialized")
        return self.backup_executor.execute()

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> EncryptedKVStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()