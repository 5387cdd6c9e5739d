"""
dag-orchestrator — persistence

File: src/dag_orchestrator/persistence/__init__.py

Purpose
- Snapshot codec, durable byte stores and the manager that ties them to a run.

Functional requirements
- Each snapshot supersedes the previous one.
- A missing or corrupt snapshot never prevents startup.
"""

from dag_orchestrator.persistence.durable import (
    DurableStore,
    FileDurableStore,
    InMemoryDurableStore,
    SQLiteDurableStore,
    open_durable_store,
)
from dag_orchestrator.persistence.manager import PersistenceManager
from dag_orchestrator.persistence.snapshot import RunSnapshot, decode_snapshot, encode_snapshot

__all__ = [
    "DurableStore",
    "FileDurableStore",
    "InMemoryDurableStore",
    "PersistenceManager",
    "RunSnapshot",
    "SQLiteDurableStore",
    "decode_snapshot",
    "encode_snapshot",
    "open_durable_store",
]
