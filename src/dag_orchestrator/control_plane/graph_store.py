"""
Authoritative task store: every task, its dependency edges, and its lifecycle.

Structural checks (duplicate ids, unknown dependencies, cycles) run against a
trial copy of the graph so a rejected submission leaves the store untouched.
Status changes are validated against ``ALLOWED_TRANSITIONS`` and recorded in
an append-only transition log.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

from dag_orchestrator.domain.errors import (
    CyclicDependencyError,
    DuplicateTaskError,
    InvalidTransitionError,
    InvariantViolationError,
    UnknownDependencyError,
    UnknownTaskError,
)
from dag_orchestrator.domain.ids import generate_task_id
from dag_orchestrator.domain.models import (
    TERMINAL_STATUSES,
    UNSATISFIABLE_STATUSES,
    StatusCounts,
    Task,
    TaskDescriptor,
    TaskError,
    TaskStatus,
    TransitionRecord,
    WorkerHandle,
    as_utc,
    is_allowed_transition,
    utc_now,
)
from dag_orchestrator.planning.task_graph import TaskGraph

if TYPE_CHECKING:
    from collections.abc import Iterator

Clock = Callable[[], datetime]
IdFactory = Callable[[], str]

_WAITING_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.BLOCKED})
# Statuses that require every dependency to be complete already.
_STARTED_STATUSES = frozenset({TaskStatus.READY, TaskStatus.RUNNING, TaskStatus.COMPLETE})


class TaskGraphStore:
    """Holds tasks and edges; the only place task records are replaced."""

    __slots__ = ("_clock", "_graph", "_id_factory", "_log", "_tasks")

    def __init__(
        self,
        *,
        clock: Clock = utc_now,
        id_factory: IdFactory = generate_task_id,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory
        self._tasks: dict[str, Task] = {}
        self._graph = TaskGraph()
        self._log: list[TransitionRecord] = []

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks())

    def contains(self, task_id: str) -> bool:
        return task_id in self._tasks

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise UnknownTaskError(task_id) from None

    def tasks(self) -> tuple[Task, ...]:
        """All tasks in dispatch order."""
        return tuple(sorted(self._tasks.values(), key=Task.dispatch_key))

    def tasks_with_status(self, *statuses: TaskStatus) -> tuple[Task, ...]:
        wanted = frozenset(statuses)
        return tuple(
            sorted(
                (task for task in self._tasks.values() if task.status in wanted),
                key=Task.dispatch_key,
            )
        )

    def counts(self) -> StatusCounts:
        tally: dict[TaskStatus, int] = {}
        for task in self._tasks.values():
            tally[task.status] = tally.get(task.status, 0) + 1
        return StatusCounts(tally)

    def transition_log(self) -> tuple[TransitionRecord, ...]:
        return tuple(self._log)

    def submit(
        self, descriptors: Iterable[TaskDescriptor | Mapping[str, object]]
    ) -> tuple[Task, ...]:
        """Validate and insert a batch of tasks atomically.

        Raises ``DuplicateTaskError``, ``UnknownDependencyError`` or
        ``CyclicDependencyError``; in every failure case no task is inserted.
        Returns the new tasks in submission order.
        """
        batch = [
            item if isinstance(item, TaskDescriptor) else TaskDescriptor.from_dict(item)
            for item in descriptors
        ]
        if not batch:
            return ()

        resolved_ids: list[str] = []
        batch_ids: set[str] = set()
        for descriptor in batch:
            task_id = descriptor.id if descriptor.id is not None else self._fresh_id(batch_ids)
            if task_id in self._tasks or task_id in batch_ids:
                raise DuplicateTaskError(task_id)
            batch_ids.add(task_id)
            resolved_ids.append(task_id)

        for task_id, descriptor in zip(resolved_ids, batch, strict=True):
            missing = [
                dep
                for dep in descriptor.depends_on
                if dep not in self._tasks and dep not in batch_ids
            ]
            if missing:
                raise UnknownDependencyError(task_id, missing)

        trial = self._graph.copy()
        for task_id, descriptor in zip(resolved_ids, batch, strict=True):
            trial.add_task(task_id, descriptor.depends_on)
        cycles = trial.find_cycles()
        if cycles:
            raise CyclicDependencyError(cycles)

        created_at = self._now()
        created: list[Task] = []
        for task_id, descriptor in zip(resolved_ids, batch, strict=True):
            status = TaskStatus.BLOCKED if descriptor.depends_on else TaskStatus.PENDING
            created.append(
                Task(
                    id=task_id,
                    kind=descriptor.kind,
                    spec=descriptor.spec,
                    depends_on=descriptor.depends_on,
                    inject_dependency_results=descriptor.inject_dependency_results,
                    status=status,
                    created_at=created_at,
                )
            )

        self._graph = trial
        for task in created:
            self._tasks[task.id] = task
            self._log.append(
                TransitionRecord(
                    task_id=task.id, from_status=None, to_status=task.status, at=created_at
                )
            )
        return tuple(created)

    def ready_tasks(self) -> tuple[Task, ...]:
        """Waiting tasks whose dependencies are all complete, in dispatch order."""
        return tuple(
            task
            for task in self.tasks_with_status(*_WAITING_STATUSES)
            if self._dependencies_complete(task)
        )

    def dependents(self, task_id: str) -> tuple[Task, ...]:
        if task_id not in self._tasks:
            raise UnknownTaskError(task_id)
        children = (self._tasks[child] for child in self._graph.dependents(task_id))
        return tuple(sorted(children, key=Task.dispatch_key))

    def outstanding_dependencies(self, task_id: str) -> tuple[str, ...]:
        """Transitive dependency ids of ``task_id`` that are not yet complete."""
        if task_id not in self._tasks:
            raise UnknownTaskError(task_id)
        return tuple(
            dep
            for dep in self._graph.ancestors(task_id)
            if self._tasks[dep].status is not TaskStatus.COMPLETE
        )

    def has_unsatisfiable_dependency(self, task_id: str) -> bool:
        task = self.get(task_id)
        return any(self._tasks[dep].status in UNSATISFIABLE_STATUSES for dep in task.depends_on)

    def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        *,
        at: datetime | None = None,
        worker_handle: WorkerHandle | None = None,
        error: TaskError | None = None,
    ) -> Task:
        """Move ``task_id`` to ``new_status`` and return the replacement record."""
        current = self.get(task_id)
        requested = TaskStatus(new_status)

        def reject(reason: str = "") -> InvalidTransitionError:
            return InvalidTransitionError(task_id, current.status.value, requested.value, reason)

        if not is_allowed_transition(current.status, requested):
            raise reject()
        if (worker_handle is not None) != (requested is TaskStatus.RUNNING):
            raise reject("a worker handle is required for running and forbidden otherwise")
        if (error is not None) != (requested is TaskStatus.FAILED):
            raise reject("an error is required for failed and forbidden otherwise")
        if requested is TaskStatus.READY and not self._dependencies_complete(current):
            raise reject("dependencies are not all complete")
        if requested is TaskStatus.SKIPPED and not self.has_unsatisfiable_dependency(task_id):
            raise reject("no dependency failed or was skipped")

        moment = as_utc(at, "at") if at is not None else self._now()
        started_at = current.started_at
        completed_at = current.completed_at
        if requested is TaskStatus.RUNNING:
            started_at = max(moment, current.created_at)
            moment = started_at
        elif requested in TERMINAL_STATUSES:
            floor = current.started_at if current.started_at is not None else current.created_at
            completed_at = max(moment, floor)
            moment = completed_at
        else:
            moment = max(moment, current.created_at)

        updated = replace(
            current,
            status=requested,
            started_at=started_at,
            completed_at=completed_at,
            worker_handle=worker_handle,
            error=error,
        )
        self._tasks[task_id] = updated
        self._log.append(
            TransitionRecord(
                task_id=task_id,
                from_status=current.status,
                to_status=requested,
                at=moment,
                error=error,
            )
        )
        return updated

    @classmethod
    def restore(
        cls,
        tasks: Iterable[Task],
        *,
        clock: Clock = utc_now,
        id_factory: IdFactory = generate_task_id,
    ) -> TaskGraphStore:
        """Rebuild a store from persisted task records.

        The records must form a structurally valid graph: unique ids, known
        dependencies, no cycles, and statuses consistent with their
        dependencies' statuses.
        """
        store = cls(clock=clock, id_factory=id_factory)
        records = list(tasks)
        for task in records:
            if task.id in store._tasks:
                raise DuplicateTaskError(task.id)
            store._tasks[task.id] = task

        for task in records:
            missing = [dep for dep in task.depends_on if dep not in store._tasks]
            if missing:
                raise UnknownDependencyError(task.id, missing)
            store._graph.add_task(task.id, task.depends_on)

        cycles = store._graph.find_cycles()
        if cycles:
            raise CyclicDependencyError(cycles)

        for task in records:
            store._check_restored_status(task)
        return store

    def _check_restored_status(self, task: Task) -> None:
        if task.status in _STARTED_STATUSES and not self._dependencies_complete(task):
            raise InvariantViolationError(
                f"task {task.id!r} is {task.status.value} but not all dependencies are complete"
            )
        if task.status is TaskStatus.PENDING and task.depends_on:
            raise InvariantViolationError(f"task {task.id!r} is pending but has dependencies")
        if task.status is TaskStatus.SKIPPED and not self.has_unsatisfiable_dependency(task.id):
            raise InvariantViolationError(
                f"task {task.id!r} is skipped but no dependency failed or was skipped"
            )

    def _dependencies_complete(self, task: Task) -> bool:
        return all(self._tasks[dep].status is TaskStatus.COMPLETE for dep in task.depends_on)

    def _fresh_id(self, reserved: set[str]) -> str:
        while True:
            candidate = self._id_factory()
            if candidate not in self._tasks and candidate not in reserved:
                return candidate

    def _now(self) -> datetime:
        return as_utc(self._clock(), "clock()")


__all__ = ["Clock", "IdFactory", "TaskGraphStore"]
