"""Run snapshot codec.

A snapshot is canonical JSON (sorted keys, compact separators) holding every
task record and every recorded result::

    {"schema_version": 1, "tasks": [...], "results": {"<task id>": <output>}}

Decoding rebuilds a ``TaskGraphStore`` to prove the records form a valid graph
before anything is handed back to the caller.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Final

from dag_orchestrator.constants import SNAPSHOT_SCHEMA_VERSION
from dag_orchestrator.control_plane.graph_store import TaskGraphStore
from dag_orchestrator.domain.errors import (
    InvariantViolationError,
    SnapshotDecodeError,
    StructuralError,
)
from dag_orchestrator.domain.models import JSONValue, Task, TaskStatus, to_json_value

_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset({"schema_version", "tasks", "results"})


@dataclass(frozen=True, slots=True)
class RunSnapshot:
    tasks: tuple[Task, ...]
    results: Mapping[str, JSONValue] = field(default_factory=dict)

    def task_ids(self) -> tuple[str, ...]:
        return tuple(task.id for task in self.tasks)


def encode_snapshot(tasks: Iterable[Task], results: Mapping[str, object]) -> bytes:
    ordered = sorted(tasks, key=Task.dispatch_key)
    payload = {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "tasks": [task.to_dict() for task in ordered],
        "results": {task_id: to_json_value(results[task_id]) for task_id in sorted(results)},
    }
    text = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return (text + "\n").encode("utf-8")


def decode_snapshot(data: bytes) -> RunSnapshot:
    """Parse and validate snapshot bytes; raises ``SnapshotDecodeError``."""
    try:
        raw = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SnapshotDecodeError(f"snapshot is not valid UTF-8 JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise SnapshotDecodeError("snapshot root must be a JSON object")
    unknown = sorted(set(raw) - _TOP_LEVEL_KEYS)
    if unknown:
        raise SnapshotDecodeError(f"snapshot has unknown field(s): {', '.join(unknown)}")

    version = raw.get("schema_version")
    if version != SNAPSHOT_SCHEMA_VERSION:
        raise SnapshotDecodeError(
            f"unsupported snapshot schema_version {version!r}; "
            f"expected {SNAPSHOT_SCHEMA_VERSION}"
        )

    raw_tasks = raw.get("tasks")
    raw_results = raw.get("results", {})
    if not isinstance(raw_tasks, list):
        raise SnapshotDecodeError("snapshot.tasks must be an array")
    if not isinstance(raw_results, dict):
        raise SnapshotDecodeError("snapshot.results must be an object")

    tasks: list[Task] = []
    for index, item in enumerate(raw_tasks):
        try:
            tasks.append(Task.from_dict(item))
        except ValueError as exc:
            raise SnapshotDecodeError(f"snapshot.tasks[{index}]: {exc}") from exc

    try:
        store = TaskGraphStore.restore(tasks)
    except (StructuralError, InvariantViolationError) as exc:
        raise SnapshotDecodeError(f"snapshot graph is inconsistent: {exc}") from exc

    complete = {task.id for task in store.tasks_with_status(TaskStatus.COMPLETE)}
    orphaned = sorted(set(raw_results) - complete)
    if orphaned:
        raise SnapshotDecodeError(
            f"results recorded for tasks that are not complete: {', '.join(orphaned)}"
        )
    missing = sorted(complete - set(raw_results))
    if missing:
        raise SnapshotDecodeError(f"complete tasks without a result: {', '.join(missing)}")

    try:
        results = {key: to_json_value(value) for key, value in raw_results.items()}
    except ValueError as exc:
        raise SnapshotDecodeError(f"snapshot.results: {exc}") from exc
    return RunSnapshot(tasks=tuple(tasks), results=results)


__all__ = ["RunSnapshot", "decode_snapshot", "encode_snapshot"]
