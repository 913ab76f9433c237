"""Keyed JSON blob stores used to persist advisory chain-query results."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Protocol

from ..config.settings import CacheBackend, CacheConfig


class CacheMissError(KeyError):
    """Raised when a cache key has never been written (or was deleted)."""


class CacheStoreError(RuntimeError):
    """Raised for any cache failure other than a missing key."""


class CacheCorruptError(CacheStoreError):
    """Raised when a stored entry exists but cannot be decoded."""


class CacheStore(Protocol):
    """Interface describing cache backends (files, SQLite, memory, ...)."""

    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


def _require_key(key: str) -> str:
    if not key:
        raise CacheStoreError("Cache key cannot be empty")
    return key


def _encode(key: str, value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise CacheStoreError(f"Failed to encode cache entry {key}: {exc}") from exc


def _decode(key: str, payload: str) -> Any:
    try:
        return json.loads(payload)
    except ValueError as exc:
        raise CacheCorruptError(f"Failed to decode cache entry {key}: {exc}") from exc


class JsonFileCacheStore:
    """Stores every key as ``<directory>/<key>.json``."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self._directory / f"{_require_key(key)}.json"

    def get(self, key: str) -> Any:
        path = self._path(key)
        try:
            payload = path.read_text(encoding="utf8")
        except FileNotFoundError as exc:
            raise CacheMissError(key) from exc
        except OSError as exc:
            raise CacheStoreError(f"Failed to read cache in {key} path: {exc}") from exc
        return _decode(key, payload)

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        payload = _encode(key, value)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Readers never see a half-written entry.
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(payload, encoding="utf8")
            os.replace(tmp, path)
        except OSError as exc:
            raise CacheStoreError(f"Failed to save cache in {key} path: {exc}") from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise CacheMissError(key) from exc
        except OSError as exc:
            raise CacheStoreError(f"Failed to remove cache in {key} path: {exc}") from exc


CREATE_CACHE_TABLE = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteCacheStore:
    """SQLite-backed cache keeping one row per key."""

    def __init__(self, database_path: Path) -> None:
        self._database_path = Path(database_path).resolve()
        try:
            self._initialize()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Failed to open cache database {self._database_path}: {exc}") from exc

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_CACHE_TABLE)
            con.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        try:
            yield con
        finally:
            con.close()

    def get(self, key: str) -> Any:
        _require_key(key)
        try:
            with self._connect() as con:
                row = con.execute("SELECT payload FROM cache_entries WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Failed to read cache entry {key}: {exc}") from exc
        if row is None:
            raise CacheMissError(key)
        return _decode(key, row[0])

    def set(self, key: str, value: Any) -> None:
        _require_key(key)
        payload = _encode(key, value)
        try:
            with self._connect() as con:
                con.execute(
                    """
                    INSERT INTO cache_entries (key, payload, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at = excluded.updated_at
                    """,
                    (key, payload, datetime.now(timezone.utc).isoformat()),
                )
                con.commit()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Failed to save cache entry {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        _require_key(key)
        try:
            with self._connect() as con:
                cur = con.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                con.commit()
                deleted = cur.rowcount
        except sqlite3.Error as exc:
            raise CacheStoreError(f"Failed to remove cache entry {key}: {exc}") from exc
        if not deleted:
            raise CacheMissError(key)


class MemoryCacheStore:
    """Process-local store; payloads still round-trip through JSON."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str) -> Any:
        _require_key(key)
        with self._lock:
            payload = self._entries.get(key)
        if payload is None:
            raise CacheMissError(key)
        return _decode(key, payload)

    def set(self, key: str, value: Any) -> None:
        payload = _encode(_require_key(key), value)
        with self._lock:
            self._entries[key] = payload

    def delete(self, key: str) -> None:
        _require_key(key)
        with self._lock:
            if self._entries.pop(key, None) is None:
                raise CacheMissError(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)


def build_cache_store(config: CacheConfig) -> CacheStore:
    """Instantiate the backend selected in configuration."""

    if config.backend == CacheBackend.SQLITE:
        return SQLiteCacheStore(config.database_path)
    if config.backend == CacheBackend.MEMORY:
        return MemoryCacheStore()
    return JsonFileCacheStore(config.directory)


__all__ = [
    "CacheCorruptError",
    "CacheMissError",
    "CacheStore",
    "CacheStoreError",
    "JsonFileCacheStore",
    "MemoryCacheStore",
    "SQLiteCacheStore",
    "build_cache_store",
]
