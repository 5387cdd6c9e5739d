"""Byte stores behind the persistence manager."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from dag_orchestrator.domain.errors import PersistenceError
from dag_orchestrator.persistence.durable import (
    FileDurableStore,
    InMemoryDurableStore,
    SQLiteDurableStore,
    open_durable_store,
)


@pytest.fixture(params=["file", "sqlite", "memory"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> object:
    if request.param == "file":
        return FileDurableStore(tmp_path / "state" / "run.json")
    if request.param == "sqlite":
        return SQLiteDurableStore(tmp_path / "state" / "run.sqlite3")
    return InMemoryDurableStore()


def test_read_before_any_write_is_none(store: FileDurableStore) -> None:
    assert store.read() is None


def test_write_replaces_previous_snapshot(store: FileDurableStore) -> None:
    store.write(b"first")
    store.write(b"second")

    assert store.read() == b"second"


def test_file_store_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "run.json"
    store = FileDurableStore(target)

    store.write(b"{}")
    store.write(b'{"a":1}')

    assert sorted(p.name for p in tmp_path.iterdir()) == ["run.json"]
    assert store.describe() == f"file:{target}"


def test_file_store_write_failure_is_a_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = FileDurableStore(blocker / "run.json")

    with pytest.raises(PersistenceError, match="cannot write snapshot"):
        store.write(b"{}")


def test_file_store_read_failure_is_a_persistence_error(tmp_path: Path) -> None:
    directory = tmp_path / "run.json"
    directory.mkdir()

    with pytest.raises(PersistenceError, match="cannot read snapshot"):
        FileDurableStore(directory).read()


def test_sqlite_store_uses_wal_and_a_single_row(tmp_path: Path) -> None:
    path = tmp_path / "run.sqlite3"
    store = SQLiteDurableStore(path)
    store.write(b"one")
    store.write(b"two")

    conn = sqlite3.connect(path)
    try:
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        rows = conn.execute("SELECT key, payload FROM snapshots").fetchall()
    finally:
        conn.close()

    assert mode.lower() == "wal"
    assert rows == [("current", b"two")]


def test_sqlite_store_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "run.sqlite3"
    SQLiteDurableStore(path).write(b"payload")

    assert SQLiteDurableStore(path).read() == b"payload"


def test_sqlite_store_rejects_a_non_database(tmp_path: Path) -> None:
    path = tmp_path / "run.sqlite3"
    path.write_bytes(b"this is not sqlite" * 100)

    with pytest.raises(PersistenceError):
        SQLiteDurableStore(path).read()


def test_sqlite_store_rejects_negative_busy_timeout(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        SQLiteDurableStore(tmp_path / "x.sqlite3", busy_timeout_ms=-1)


def test_memory_store_counts_writes() -> None:
    store = InMemoryDurableStore(b"seed")

    assert store.read() == b"seed"
    store.write(b"next")
    assert store.writes == 1
    assert store.describe() == "memory"


@pytest.mark.parametrize(
    ("backend", "expected"),
    [("file", FileDurableStore), ("sqlite", SQLiteDurableStore), ("memory", InMemoryDurableStore)],
)
def test_open_durable_store_by_name(tmp_path: Path, backend: str, expected: type) -> None:
    assert isinstance(open_durable_store(backend, tmp_path / "snap"), expected)


def test_open_durable_store_validates_arguments(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="requires a path"):
        open_durable_store("file")
    with pytest.raises(ValueError, match="unknown persistence backend"):
        open_durable_store("s3", tmp_path / "snap")
