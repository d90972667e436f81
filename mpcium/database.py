"""An encrypted, versioned key/value database kept as a record log on disk."""

from __future__ import annotations

import base64
import json
import os
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mpcium import logger

_LOG_NAME = "data.log"
_NONCE_SIZE = 12
_LENGTH = struct.Struct(">I")


@dataclass
class _Entry:
    value: bytes | None
    version: int


def _warn(message: str) -> None:
    logger.warn("[DB] WARN", "message", message)


def _to_record(key: str, entry: _Entry) -> dict[str, Any]:
    value = None if entry.value is None else base64.b64encode(entry.value).decode("ascii")
    return {"key": key, "value": value, "version": entry.version}


def _from_record(record: dict[str, Any]) -> tuple[str, _Entry]:
    try:
        value = record["value"]
        return record["key"], _Entry(
            None if value is None else base64.b64decode(value), int(record["version"])
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"malformed database record: {exc}") from exc


def _split_records(data: bytes) -> tuple[list[bytes], int]:
    """Return the complete length-prefixed blobs and the byte length they cover."""
    blobs = []
    offset = 0
    while offset + _LENGTH.size <= len(data):
        (size,) = _LENGTH.unpack_from(data, offset)
        end = offset + _LENGTH.size + size
        if end > len(data):
            break
        blobs.append(data[offset + _LENGTH.size : end])
        offset = end
    return blobs, offset


class Database:
    """Key/value store persisted as an (optionally AES-GCM encrypted) record log.

    Every write receives a new, increasing version, which lets `dump` produce
    incremental snapshots of what changed since a given version.
    """

    def __init__(self, path: str | os.PathLike[str], encryption_key: bytes | None = None) -> None:
        key = bytes(encryption_key or b"")
        if key and len(key) not in (16, 24, 32):
            raise ValueError("encryption key must be 16, 24 or 32 bytes long")
        self.path = Path(path)
        self.path.mkdir(mode=0o700, parents=True, exist_ok=True)
        self._aead = AESGCM(key) if key else None
        self._entries: dict[str, _Entry] = {}
        self._version = 0
        self._lock = threading.RLock()
        self._log_path = self.path / _LOG_NAME
        self._replay()
        self._file = open(self._log_path, "ab")
        self._closed = False

    def _encode(self, key: str, entry: _Entry) -> bytes:
        payload = json.dumps(_to_record(key, entry)).encode("utf-8")
        if self._aead is not None:
            nonce = os.urandom(_NONCE_SIZE)
            payload = nonce + self._aead.encrypt(nonce, payload, None)
        return _LENGTH.pack(len(payload)) + payload

    def _decode(self, blob: bytes) -> tuple[str, _Entry]:
        if self._aead is not None:
            try:
                blob = self._aead.decrypt(blob[:_NONCE_SIZE], blob[_NONCE_SIZE:], None)
            except (InvalidTag, ValueError) as exc:
                raise ValueError(
                    "cannot decrypt database records: wrong encryption key or corrupted data"
                ) from exc
        try:
            record = json.loads(blob.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("unreadable database record: wrong encryption key?") from exc
        return _from_record(record)

    def _replay(self) -> None:
        if not self._log_path.exists():
            return
        data = self._log_path.read_bytes()
        blobs, good = _split_records(data)
        for blob in blobs:
            self._apply(*self._decode(blob))
        if good < len(data):
            _warn(f"discarding {len(data) - good} trailing bytes of an incomplete record")
            with open(self._log_path, "r+b") as fh:
                fh.truncate(good)

    def _apply(self, key: str, entry: _Entry) -> None:
        current = self._entries.get(key)
        if current is None or current.version <= entry.version:
            self._entries[key] = entry
        self._version = max(self._version, entry.version)

    def _append(self, key: str, entry: _Entry) -> None:
        self._file.write(self._encode(key, entry))
        self._file.flush()
        os.fsync(self._file.fileno())

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("database is closed")

    def _write(self, key: str, value: bytes | None) -> None:
        with self._lock:
            self._check_open()
            self._version += 1
            entry = _Entry(value, self._version)
            self._append(key, entry)
            self._entries[key] = entry

    def set(self, key: str, value: bytes) -> None:
        """Store a value under a key."""
        self._write(key, bytes(value))

    def get(self, key: str) -> bytes:
        """Return the value of a key; raise KeyError when it is absent."""
        with self._lock:
            self._check_open()
            entry = self._entries.get(key)
            if entry is None or entry.value is None:
                raise KeyError(key)
            return entry.value

    def delete(self, key: str) -> None:
        """Remove a key."""
        self._write(key, None)

    def keys(self) -> list[str]:
        """Return the live keys in sorted order."""
        with self._lock:
            self._check_open()
            return sorted(key for key, entry in self._entries.items() if entry.value is not None)

    def dump(self, since: int) -> tuple[bytes, int]:
        """Serialise every entry with a version >= since.

        Returns the snapshot and the version to pass next time. Deletions are
        only included in incremental (since > 0) snapshots.
        """
        with self._lock:
            self._check_open()
            selected = sorted(
                (key, entry)
                for key, entry in self._entries.items()
                if entry.version >= since and (entry.value is not None or since > 0)
            )
            if not selected:
                return b"", since
            payload = json.dumps([_to_record(key, entry) for key, entry in selected])
            return payload.encode("utf-8"), max(entry.version for _, entry in selected) + 1

    def load(self, data: bytes) -> None:
        """Apply a snapshot produced by `dump`, keeping the entries' versions."""
        if not data:
            return
        try:
            records = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("invalid snapshot data") from exc
        if not isinstance(records, list):
            raise ValueError("invalid snapshot data")
        entries = [_from_record(record) for record in records]
        with self._lock:
            self._check_open()
            for key, entry in entries:
                self._apply(key, entry)
                self._append(key, entry)

    def _compact(self) -> None:
        tmp_path = self.path / (_LOG_NAME + ".tmp")
        ordered = sorted(self._entries.items(), key=lambda item: item[1].version)
        with open(tmp_path, "wb") as fh:
            for key, entry in ordered:
                fh.write(self._encode(key, entry))
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, self._log_path)

    def close(self) -> None:
        """Compact the log and close the database."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._file.close()
            self._compact()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()