"""Exception taxonomy for the orchestration core.

Structural errors reject the offending operation and leave state untouched.
Dispatch and invariant errors are raised by the collaborators around the
scheduler; persistence errors are caught by the scheduler and surfaced through
health reporting instead of propagating out of a tick.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestration core."""


class StructuralError(OrchestratorError, ValueError):
    """Rejected graph mutation; the graph is left exactly as it was."""


class CyclicDependencyError(StructuralError):
    """Raised when a submission would introduce a dependency cycle."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "submission introduces at least one dependency cycle"
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"submission introduces dependency cycle(s): {preview}{suffix}"
        super().__init__(message)


class UnknownDependencyError(StructuralError):
    """Raised when a task depends on an id that is neither stored nor submitted."""

    def __init__(self, task_id: str, missing: Sequence[str]) -> None:
        self.task_id = task_id
        self.missing = tuple(missing)
        rendered = ", ".join(self.missing)
        super().__init__(f"task {task_id!r} depends on unknown task id(s): {rendered}")


class DuplicateTaskError(StructuralError):
    """Raised when a submitted id is already in use."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"task id {task_id!r} is already in use")


class UnknownTaskError(StructuralError, KeyError):
    """Raised when an operation names a task the store does not hold."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"unknown task: {task_id}")

    def __str__(self) -> str:
        return f"unknown task: {self.task_id}"


class InvalidTransitionError(StructuralError):
    """Raised for a status change the state machine does not allow."""

    def __init__(self, task_id: str, current: str, requested: str, reason: str = "") -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"illegal transition for task {task_id!r}: {current} -> {requested}{detail}"
        )


class InvariantViolationError(OrchestratorError):
    """Raised when an operation would break a core invariant (e.g. double completion)."""


class DispatchError(OrchestratorError):
    """The worker runtime could not start a task."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(f"failed to dispatch task {task_id!r}: {message}")


class PersistenceError(OrchestratorError):
    """A snapshot could not be written to or read from the durable store."""


class SnapshotDecodeError(PersistenceError, ValueError):
    """Snapshot bytes are corrupt, truncated or from an unsupported schema."""


__all__ = [
    "CyclicDependencyError",
    "DispatchError",
    "DuplicateTaskError",
    "InvalidTransitionError",
    "InvariantViolationError",
    "OrchestratorError",
    "PersistenceError",
    "SnapshotDecodeError",
    "StructuralError",
    "UnknownDependencyError",
    "UnknownTaskError",
]
