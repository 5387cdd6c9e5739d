"""Dataclass domain models for tasks, their lifecycle, and their failures."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import PurePath
from typing import Final, NoReturn, TypeVar

from dag_orchestrator.constants import INJECTED_RESULTS_KEY
from dag_orchestrator.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=StrEnum)

_MAX_KIND_LEN: Final[int] = 128
_MAX_MESSAGE_LEN: Final[int] = 8192


class TaskStatus(StrEnum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class ErrorKind(StrEnum):
    DISPATCH_ERROR = "dispatch_error"
    WORKER_FAILURE = "worker_failure"
    INTERRUPTED_BY_RESTART = "interrupted_by_restart"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.SKIPPED}
)
NON_TERMINAL_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.PENDING, TaskStatus.BLOCKED, TaskStatus.READY, TaskStatus.RUNNING}
)
# Statuses that poison dependents: a task downstream of one of these is skipped.
UNSATISFIABLE_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.FAILED, TaskStatus.SKIPPED}
)

ALLOWED_TRANSITIONS: Final[Mapping[TaskStatus, frozenset[TaskStatus]]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.READY, TaskStatus.SKIPPED}),
    TaskStatus.READY: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETE, TaskStatus.FAILED}),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}


def is_allowed_transition(current: TaskStatus, requested: TaskStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class WorkerHandle:
    """Opaque reference to an in-flight worker, scoped to the runtime that issued it."""

    runtime: str
    ref: str

    def __post_init__(self) -> None:
        _as_str(self.runtime, "WorkerHandle.runtime", max_len=_MAX_KIND_LEN)
        _as_str(self.ref, "WorkerHandle.ref", max_len=_MAX_MESSAGE_LEN)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"runtime": self.runtime, "ref": self.ref}

    @classmethod
    def from_dict(cls, payload: object) -> WorkerHandle:
        obj = _expect_object(payload, "WorkerHandle", required={"runtime", "ref"})
        return cls(
            runtime=_as_str(obj["runtime"], "WorkerHandle.runtime"),
            ref=_as_str(obj["ref"], "WorkerHandle.ref"),
        )


@dataclass(frozen=True, slots=True)
class TaskError:
    """Why a task ended in ``failed``; ``detail`` keeps the worker payload verbatim."""

    kind: ErrorKind
    message: str
    detail: JSONValue = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(ErrorKind, self.kind, "TaskError.kind"))
        if not isinstance(self.message, str):
            _fail("TaskError.message", f"expected string, got {type(self.message).__name__}")
        object.__setattr__(self, "message", self.message[:_MAX_MESSAGE_LEN])
        object.__setattr__(self, "detail", to_json_value(self.detail))

    @classmethod
    def cancelled(cls, message: str = "cancelled by request") -> TaskError:
        return cls(kind=ErrorKind.CANCELLED, message=message)

    @classmethod
    def timeout(cls, message: str = "task exceeded its time limit") -> TaskError:
        return cls(kind=ErrorKind.TIMEOUT, message=message)

    @classmethod
    def interrupted_by_restart(cls) -> TaskError:
        return cls(
            kind=ErrorKind.INTERRUPTED_BY_RESTART,
            message="scheduler restarted while the task was running",
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {"kind": self.kind.value, "message": self.message, "detail": self.detail}

    @classmethod
    def from_dict(cls, payload: object) -> TaskError:
        obj = _expect_object(
            payload, "TaskError", required={"kind", "message"}, optional={"detail"}
        )
        return cls(
            kind=_as_enum(ErrorKind, obj["kind"], "TaskError.kind"),
            message=_as_message(obj["message"], "TaskError.message"),
            detail=to_json_value(obj.get("detail")),
        )


@dataclass(frozen=True, slots=True)
class TaskDescriptor:
    """One entry of a submission batch."""

    kind: str
    spec: JSONValue = None
    depends_on: tuple[str, ...] = ()
    inject_dependency_results: bool = False
    id: str | None = None

    def __post_init__(self) -> None:
        if self.id is not None:
            domain_ids.validate_task_id(self.id)
        object.__setattr__(
            self, "kind", _as_str(self.kind, "TaskDescriptor.kind", max_len=_MAX_KIND_LEN)
        )
        object.__setattr__(self, "spec", to_json_value(self.spec))
        object.__setattr__(
            self, "depends_on", _as_task_id_tuple(self.depends_on, "TaskDescriptor.depends_on")
        )
        if not isinstance(self.inject_dependency_results, bool):
            _fail("TaskDescriptor.inject_dependency_results", "expected boolean")
        if (
            self.inject_dependency_results
            and isinstance(self.spec, dict)
            and INJECTED_RESULTS_KEY in self.spec
        ):
            _fail(
                "TaskDescriptor.spec",
                f"key {INJECTED_RESULTS_KEY!r} is reserved when dependency results are injected",
            )
        if self.id is not None and self.id in self.depends_on:
            _fail("TaskDescriptor.depends_on", f"task {self.id!r} cannot depend on itself")

    @classmethod
    def from_dict(cls, payload: object) -> TaskDescriptor:
        """Parse a submission entry; accepts camelCase and snake_case keys."""
        obj = _expect_object(
            payload,
            "TaskDescriptor",
            required={"kind"},
            optional={
                "id",
                "spec",
                "dependsOn",
                "depends_on",
                "injectDependencyResults",
                "inject_dependency_results",
            },
        )
        depends_raw = obj.get("dependsOn", obj.get("depends_on", ()))
        inject_raw = obj.get("injectDependencyResults", obj.get("inject_dependency_results", False))
        raw_id = obj.get("id")
        return cls(
            id=None if raw_id is None else _as_str(raw_id, "TaskDescriptor.id"),
            kind=_as_str(obj["kind"], "TaskDescriptor.kind"),
            spec=to_json_value(obj.get("spec")),
            depends_on=_as_task_id_tuple(depends_raw, "TaskDescriptor.depends_on"),
            inject_dependency_results=_as_bool(
                inject_raw, "TaskDescriptor.inject_dependency_results"
            ),
        )


@dataclass(frozen=True, slots=True)
class Task:
    """Authoritative task record. Instances are immutable; transitions replace them."""

    id: str
    kind: str
    spec: JSONValue
    depends_on: tuple[str, ...]
    inject_dependency_results: bool
    status: TaskStatus
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    worker_handle: WorkerHandle | None = None
    error: TaskError | None = None

    def __post_init__(self) -> None:
        domain_ids.validate_task_id(self.id)
        object.__setattr__(self, "status", _as_enum(TaskStatus, self.status, "Task.status"))
        object.__setattr__(self, "created_at", as_utc(self.created_at, "Task.created_at"))
        if self.started_at is not None:
            object.__setattr__(self, "started_at", as_utc(self.started_at, "Task.started_at"))
        if self.completed_at is not None:
            object.__setattr__(
                self, "completed_at", as_utc(self.completed_at, "Task.completed_at")
            )

        if (self.worker_handle is not None) != (self.status is TaskStatus.RUNNING):
            _fail("Task.worker_handle", "must be set if and only if status is running")
        if (self.error is not None) != (self.status is TaskStatus.FAILED):
            _fail("Task.error", "must be set if and only if status is failed")

        if self.started_at is not None and self.started_at < self.created_at:
            _fail("Task.started_at", "must not precede created_at")
        if self.completed_at is not None:
            floor = self.started_at if self.started_at is not None else self.created_at
            if self.completed_at < floor:
                _fail("Task.completed_at", "must not precede started_at/created_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def dispatch_key(self) -> tuple[datetime, str]:
        """Deterministic dispatch order: oldest first, ties broken by id."""
        return (self.created_at, self.id)

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "id": self.id,
            "kind": self.kind,
            "spec": self.spec,
            "status": self.status.value,
            "dependsOn": list(self.depends_on),
            "injectDependencyResults": self.inject_dependency_results,
            "createdAt": datetime_to_iso8601z(self.created_at),
            "startedAt": _optional_iso(self.started_at),
            "completedAt": _optional_iso(self.completed_at),
        }
        if self.worker_handle is not None:
            payload["workerHandle"] = self.worker_handle.to_dict()
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> Task:
        obj = _expect_object(
            payload,
            "Task",
            required={"id", "kind", "status", "dependsOn", "createdAt"},
            optional={
                "spec",
                "injectDependencyResults",
                "startedAt",
                "completedAt",
                "workerHandle",
                "error",
            },
        )
        handle_raw = obj.get("workerHandle")
        error_raw = obj.get("error")
        return cls(
            id=_as_str(obj["id"], "Task.id"),
            kind=_as_str(obj["kind"], "Task.kind"),
            spec=to_json_value(obj.get("spec")),
            depends_on=_as_task_id_tuple(obj["dependsOn"], "Task.dependsOn"),
            inject_dependency_results=_as_bool(
                obj.get("injectDependencyResults", False), "Task.injectDependencyResults"
            ),
            status=_as_enum(TaskStatus, obj["status"], "Task.status"),
            created_at=as_utc(obj["createdAt"], "Task.createdAt"),
            started_at=_optional_datetime(obj.get("startedAt"), "Task.startedAt"),
            completed_at=_optional_datetime(obj.get("completedAt"), "Task.completedAt"),
            worker_handle=None if handle_raw is None else WorkerHandle.from_dict(handle_raw),
            error=None if error_raw is None else TaskError.from_dict(error_raw),
        )


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    """One accepted status change, in the order the scheduler applied it."""

    task_id: str
    from_status: TaskStatus | None
    to_status: TaskStatus
    at: datetime
    error: TaskError | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "from": None if self.from_status is None else self.from_status.value,
            "to": self.to_status.value,
            "at": datetime_to_iso8601z(self.at),
            "error": None if self.error is None else self.error.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class StatusCounts:
    """Per-status task counts; every status is always present."""

    values: Mapping[TaskStatus, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        full = {status: int(self.values.get(status, 0)) for status in TaskStatus}
        object.__setattr__(self, "values", full)

    def __getitem__(self, status: TaskStatus) -> int:
        return self.values[status]

    @property
    def total(self) -> int:
        return sum(self.values.values())

    @property
    def non_terminal(self) -> int:
        return sum(self.values[status] for status in NON_TERMINAL_STATUSES)

    def to_dict(self) -> dict[str, int]:
        return {status.value: self.values[status] for status in TaskStatus}


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware")
    return parsed.astimezone(UTC)


def datetime_to_iso8601z(value: datetime) -> str:
    normalized = as_utc(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def to_json_value(value: object, *, path: str = "value", depth: int = 0) -> JSONValue:
    """Normalize ``value`` into plain JSON data.

    Tuples become lists, sets become sorted lists, datetimes become ISO-8601
    strings and paths become strings. Anything else that JSON cannot represent
    raises ``ValueError``.
    """
    if depth > 64:
        _fail(path, "nesting is too deep")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "floats must be finite")
        return value
    if isinstance(value, datetime):
        return datetime_to_iso8601z(value)
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object keys must be strings, got {type(key).__name__}")
            out[key] = to_json_value(item, path=f"{path}.{key}", depth=depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [
            to_json_value(item, path=f"{path}[{index}]", depth=depth + 1)
            for index, item in enumerate(value)
        ]
    if isinstance(value, (set, frozenset)):
        items = [to_json_value(item, path=path, depth=depth + 1) for item in value]
        return sorted(items, key=canonical_json)
    _fail(path, f"value of type {type(value).__name__} is not JSON-serializable")


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    allowed = required | (optional or set())
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        if key not in allowed:
            _fail(f"{path}.{key}", "unknown field")
        out[key] = item
    missing = sorted(required - out.keys())
    if missing:
        _fail(path, f"missing required field(s): {', '.join(missing)}")
    return out


def _as_str(value: object, path: str, *, max_len: int = _MAX_MESSAGE_LEN) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    stripped = value.strip()
    if not stripped:
        _fail(path, "must not be empty")
    if len(stripped) > max_len:
        _fail(path, f"must be at most {max_len} characters")
    return stripped


def _as_message(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    return value


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        _fail(path, f"expected boolean, got {type(value).__name__}")
    return value


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_task_id_tuple(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        _fail(path, f"expected array of task ids, got {type(value).__name__}")
    seen: set[str] = set()
    out: list[str] = []
    for index, item in enumerate(value):
        try:
            task_id = domain_ids.validate_task_id(item)
        except ValueError as exc:
            _fail(f"{path}[{index}]", str(exc))
        if task_id in seen:
            _fail(f"{path}[{index}]", f"duplicate dependency {task_id!r}")
        seen.add(task_id)
        out.append(task_id)
    return tuple(out)


def _optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return as_utc(value, path)


def _optional_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return datetime_to_iso8601z(value)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ErrorKind",
    "JSONScalar",
    "JSONValue",
    "NON_TERMINAL_STATUSES",
    "StatusCounts",
    "TERMINAL_STATUSES",
    "Task",
    "TaskDescriptor",
    "TaskError",
    "TaskStatus",
    "TransitionRecord",
    "UNSATISFIABLE_STATUSES",
    "WorkerHandle",
    "as_utc",
    "canonical_json",
    "datetime_to_iso8601z",
    "is_allowed_transition",
    "to_json_value",
    "utc_now",
]
