"""Whole-snapshot persistence adapters.

An adapter reads and writes the entire board as one mapping.  The adapter is
picked from the storage path's extension:

* ``.sqlite`` / ``.db`` → :class:`SqliteAdapter` (single-row blob table)
* ``.yaml`` / ``.yml``  → :class:`YamlAdapter`
* anything else         → :class:`JsonAdapter`

Any read or write failure, including a corrupt file, raises
:class:`~flux_board.errors.StorageError`.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import yaml

from ..errors import StorageError
from ..io_utils import _atomic_write_json, _atomic_write_yaml


def _empty() -> dict[str, Any]:
    return {"version": 1, "projects": [], "epics": [], "tasks": [], "webhooks": [], "deliveries": []}


class StorageAdapter(ABC):
    """Read/write the full board snapshot."""

    path: Path

    @abstractmethod
    def read(self) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def write(self, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release adapter resources (no-op for file adapters)."""


class JsonAdapter(StorageAdapter):
    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return _empty()
        try:
            text = self.path.read_text(encoding="utf-8")
            data = json.loads(text) if text.strip() else _empty()
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read board snapshot {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"{self.path.name}: expected object, got {type(data).__name__}")
        return data

    def write(self, data: dict[str, Any]) -> None:
        try:
            _atomic_write_json(self.path, data)
        except OSError as exc:
            raise StorageError(f"Failed to write board snapshot {self.path}: {exc}") from exc


class YamlAdapter(StorageAdapter):
    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return _empty()
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise StorageError(f"Failed to read board snapshot {self.path}: {exc}") from exc
        if data is None:
            return _empty()
        if not isinstance(data, dict):
            raise StorageError(f"{self.path.name}: expected mapping, got {type(data).__name__}")
        return data

    def write(self, data: dict[str, Any]) -> None:
        try:
            _atomic_write_yaml(self.path, data)
        except (OSError, yaml.YAMLError) as exc:
            raise StorageError(f"Failed to write board snapshot {self.path}: {exc}") from exc


class SqliteAdapter(StorageAdapter):
    """Keeps the JSON snapshot in a single-row ``store`` table (WAL mode)."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                str(self.path),
                isolation_level=None,
                check_same_thread=False,
            )
            self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.execute("PRAGMA busy_timeout=5000")
            self._connection.execute(
                "CREATE TABLE IF NOT EXISTS store (id INTEGER PRIMARY KEY CHECK (id = 1), data TEXT NOT NULL)"
            )
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Failed to open board database at {self.path}: {exc}") from exc

    def _conn(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StorageError(f"Board database {self.path} is closed")
        return self._connection

    def read(self) -> dict[str, Any]:
        with self._lock:
            try:
                row = self._conn().execute("SELECT data FROM store WHERE id = 1").fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to read board snapshot {self.path}: {exc}") from exc
        if not row or not row[0]:
            return _empty()
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt board snapshot in {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"{self.path.name}: expected object, got {type(data).__name__}")
        return data

    def write(self, data: dict[str, Any]) -> None:
        serialized = json.dumps(data)
        with self._lock:
            try:
                self._conn().execute(
                    "INSERT INTO store (id, data) VALUES (1, ?) "
                    "ON CONFLICT(id) DO UPDATE SET data = excluded.data",
                    (serialized,),
                )
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to write board snapshot {self.path}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_adapter(path: Path) -> StorageAdapter:
    """Pick an adapter from the file extension of *path*."""
    suffix = path.suffix.lower()
    if suffix in {".sqlite", ".db"}:
        return SqliteAdapter(path)
    if suffix in {".yaml", ".yml"}:
        return YamlAdapter(path)
    return JsonAdapter(path)
