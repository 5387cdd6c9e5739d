"""
dag-orchestrator — domain layer

File: src/dag_orchestrator/domain/__init__.py

Purpose
- Task records, lifecycle states, failure descriptions and identifiers shared by every other package.

Functional requirements
- Domain objects are immutable and JSON-serializable.
- Status changes follow ``ALLOWED_TRANSITIONS`` only.

Non-functional requirements
- No IO side effects and no third-party imports.
"""

from dag_orchestrator.domain.errors import (
    CyclicDependencyError,
    DispatchError,
    DuplicateTaskError,
    InvalidTransitionError,
    InvariantViolationError,
    OrchestratorError,
    PersistenceError,
    SnapshotDecodeError,
    StructuralError,
    UnknownDependencyError,
    UnknownTaskError,
)
from dag_orchestrator.domain.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ErrorKind,
    JSONValue,
    StatusCounts,
    Task,
    TaskDescriptor,
    TaskError,
    TaskStatus,
    TransitionRecord,
    WorkerHandle,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CyclicDependencyError",
    "DispatchError",
    "DuplicateTaskError",
    "ErrorKind",
    "InvalidTransitionError",
    "InvariantViolationError",
    "JSONValue",
    "OrchestratorError",
    "PersistenceError",
    "SnapshotDecodeError",
    "StatusCounts",
    "StructuralError",
    "TERMINAL_STATUSES",
    "Task",
    "TaskDescriptor",
    "TaskError",
    "TaskStatus",
    "TransitionRecord",
    "UnknownDependencyError",
    "UnknownTaskError",
    "WorkerHandle",
]
