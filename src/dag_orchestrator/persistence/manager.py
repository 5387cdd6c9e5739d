"""Snapshot after every state change; restore once at startup."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from dag_orchestrator.domain.errors import PersistenceError, SnapshotDecodeError
from dag_orchestrator.domain.models import utc_now
from dag_orchestrator.persistence.snapshot import RunSnapshot, decode_snapshot, encode_snapshot

if TYPE_CHECKING:
    from dag_orchestrator.domain.models import Task
    from dag_orchestrator.persistence.durable import DurableStore

logger = structlog.get_logger(__name__)


class PersistenceManager:
    """Encodes run state and hands it to a :class:`DurableStore`."""

    __slots__ = ("_clock", "_last_saved_at", "_saves", "_store")

    def __init__(self, store: DurableStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock
        self._saves = 0
        self._last_saved_at: datetime | None = None

    @property
    def store(self) -> DurableStore:
        return self._store

    @property
    def saves(self) -> int:
        return self._saves

    @property
    def last_saved_at(self) -> datetime | None:
        return self._last_saved_at

    def save(self, tasks: Iterable[Task], results: Mapping[str, object]) -> int:
        """Write a snapshot and return its size in bytes.

        Raises ``PersistenceError``; the caller decides whether that is fatal.
        """
        try:
            payload = encode_snapshot(tasks, results)
        except ValueError as exc:
            raise PersistenceError(f"run state is not serializable: {exc}") from exc
        self._store.write(payload)
        self._saves += 1
        self._last_saved_at = self._clock()
        logger.debug(
            "persistence_snapshot_saved",
            target=self._store.describe(),
            size_bytes=len(payload),
            saves=self._saves,
        )
        return len(payload)

    def load(self) -> RunSnapshot | None:
        """Return the last snapshot, or ``None`` for a cold start.

        A missing snapshot is a normal cold start. An unreadable or corrupt one
        is logged and also treated as a cold start.
        """
        try:
            payload = self._store.read()
        except PersistenceError as exc:
            logger.error(
                "persistence_snapshot_unreadable",
                target=self._store.describe(),
                error=str(exc),
            )
            return None

        if payload is None:
            logger.info("persistence_cold_start", target=self._store.describe())
            return None

        try:
            snapshot = decode_snapshot(payload)
        except SnapshotDecodeError as exc:
            logger.error(
                "persistence_snapshot_corrupt",
                target=self._store.describe(),
                size_bytes=len(payload),
                error=str(exc),
            )
            return None

        logger.info(
            "persistence_snapshot_loaded",
            target=self._store.describe(),
            tasks=len(snapshot.tasks),
            results=len(snapshot.results),
        )
        return snapshot


__all__ = ["PersistenceManager"]
