"""
dag-orchestrator — durable stores

File: src/dag_orchestrator/persistence/durable.py

Purpose
- Byte-level storage for the current run snapshot.

Functional requirements
- ``read`` returns ``None`` when nothing was ever written.
- ``write`` replaces the previous snapshot atomically; readers never see a torn write.
- IO failures surface as ``PersistenceError``.

Non-functional requirements
- SQLite connections use WAL and a busy timeout so status readers do not block the scheduler.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

from dag_orchestrator.domain.errors import PersistenceError
from dag_orchestrator.utils.fs import atomic_write, ensure_parent

if TYPE_CHECKING:
    from collections.abc import Iterator

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
_SNAPSHOT_KEY: Final[str] = "current"


class DurableStore(Protocol):
    """Minimal byte store contract used by :class:`PersistenceManager`."""

    def read(self) -> bytes | None: ...

    def write(self, data: bytes) -> None: ...

    def describe(self) -> str: ...


class FileDurableStore:
    """Snapshot in a single file, replaced with ``atomic_write``."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> bytes | None:
        try:
            return self._path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"cannot read snapshot {self._path}: {exc}") from exc

    def write(self, data: bytes) -> None:
        try:
            atomic_write(ensure_parent(self._path), data)
        except OSError as exc:
            raise PersistenceError(f"cannot write snapshot {self._path}: {exc}") from exc

    def describe(self) -> str:
        return f"file:{self._path}"


class SQLiteDurableStore:
    """Snapshot as one row of a key/value table."""

    def __init__(self, path: str | Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._schema_ready = False

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> bytes | None:
        if not self._path.exists():
            return None
        try:
            with self._connection() as conn:
                row = conn.execute(
                    "SELECT payload FROM snapshots WHERE key = ?", (_SNAPSHOT_KEY,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot read snapshot from {self._path}: {exc}") from exc
        if row is None:
            return None
        return bytes(row[0])

    def write(self, data: bytes) -> None:
        try:
            with self._connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute(
                        "INSERT INTO snapshots(key, payload, updated_at) "
                        "VALUES (?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now')) "
                        "ON CONFLICT(key) DO UPDATE SET "
                        "payload = excluded.payload, updated_at = excluded.updated_at",
                        (_SNAPSHOT_KEY, sqlite3.Binary(data)),
                    )
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot write snapshot to {self._path}: {exc}") from exc

    def describe(self) -> str:
        return f"sqlite:{self._path}"

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        ensure_parent(self._path)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            if not self._schema_ready:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS snapshots ("
                    "key TEXT PRIMARY KEY, payload BLOB NOT NULL, updated_at TEXT NOT NULL)"
                )
                self._schema_ready = True
            yield conn
        finally:
            conn.close()


class InMemoryDurableStore:
    """Process-local store for tests and throwaway runs."""

    def __init__(self, initial: bytes | None = None) -> None:
        self._data = initial
        self._lock = threading.Lock()
        self.writes = 0

    def read(self) -> bytes | None:
        with self._lock:
            return self._data

    def write(self, data: bytes) -> None:
        with self._lock:
            self._data = bytes(data)
            self.writes += 1

    def describe(self) -> str:
        return "memory"


def open_durable_store(backend: str, path: str | Path | None = None) -> DurableStore:
    """Build the store named by ``backend`` (``file``, ``sqlite`` or ``memory``)."""
    if backend == "memory":
        return InMemoryDurableStore()
    if path is None:
        raise ValueError(f"persistence backend {backend!r} requires a path")
    if backend == "file":
        return FileDurableStore(path)
    if backend == "sqlite":
        return SQLiteDurableStore(path)
    raise ValueError(f"unknown persistence backend {backend!r}")


__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "DurableStore",
    "FileDurableStore",
    "InMemoryDurableStore",
    "SQLiteDurableStore",
    "open_durable_store",
]
