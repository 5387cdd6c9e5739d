"""
Scheduler loop: the single owner of task state transitions.

Each ``tick`` runs four phases in a fixed order:

1. poll every running task and record its outcome;
2. cascade ``skipped`` through the dependents of anything that failed or was
   skipped, transitively, within the same tick;
3. promote tasks whose dependencies are all complete and dispatch ready tasks
   up to the concurrency limit in ``(created_at, id)`` order;
4. persist a snapshot when any of the above changed state.

A tick never waits on a worker. Public control methods serialize on one
re-entrant lock so signal handlers and other threads may call them between
ticks.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from dag_orchestrator.constants import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PERSISTENCE_FAILURE_THRESHOLD,
)
from dag_orchestrator.control_plane.graph_store import TaskGraphStore
from dag_orchestrator.control_plane.results import ResultStore, build_injected_spec
from dag_orchestrator.control_plane.status import SchedulerHealth, StatusAggregator, StatusSummary
from dag_orchestrator.domain.errors import (
    DispatchError,
    InvalidTransitionError,
    InvariantViolationError,
    PersistenceError,
)
from dag_orchestrator.domain.ids import generate_task_id
from dag_orchestrator.domain.models import (
    ErrorKind,
    JSONValue,
    StatusCounts,
    Task,
    TaskDescriptor,
    TaskError,
    TaskStatus,
    TransitionRecord,
    utc_now,
)

if TYPE_CHECKING:
    from dag_orchestrator.persistence.manager import PersistenceManager
    from dag_orchestrator.workers.dispatcher import WorkerDispatcher

logger = structlog.get_logger(__name__)

TransitionListener = Callable[[TransitionRecord], None]


@dataclass(frozen=True, slots=True)
class TickSummary:
    """What one tick did, plus the counts it left behind."""

    tick: int
    counts: StatusCounts
    dispatched: tuple[str, ...] = ()
    completed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    drained: bool = False
    persisted: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.dispatched or self.completed or self.failed or self.skipped)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "tick": self.tick,
            "counts": dict(self.counts.to_dict()),
            "dispatched": list(self.dispatched),
            "completed": list(self.completed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "drained": self.drained,
            "persisted": self.persisted,
        }


@dataclass(frozen=True, slots=True)
class BootstrapReport:
    restored: bool
    tasks: int
    results: int
    interrupted: tuple[str, ...] = ()


class _TickActivity:
    __slots__ = ("completed", "dispatched", "failed", "skipped")

    def __init__(self) -> None:
        self.dispatched: list[str] = []
        self.completed: list[str] = []
        self.failed: list[str] = []
        self.skipped: list[str] = []


class SchedulerLoop:
    """Drives tasks from submission to a terminal state."""

    def __init__(
        self,
        dispatcher: WorkerDispatcher,
        *,
        persistence: PersistenceManager | None = None,
        store: TaskGraphStore | None = None,
        results: ResultStore | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        persistence_failure_threshold: int = DEFAULT_PERSISTENCE_FAILURE_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = generate_task_id,
    ) -> None:
        _validate_limit(max_concurrency)
        if persistence_failure_threshold <= 0:
            raise ValueError("persistence_failure_threshold must be > 0")

        self._dispatcher = dispatcher
        self._persistence = persistence
        self._clock = clock
        self._id_factory = id_factory
        self._store = (
            store if store is not None else TaskGraphStore(clock=clock, id_factory=id_factory)
        )
        self._results = results if results is not None else ResultStore()
        self._limit = max_concurrency
        self._failure_threshold = persistence_failure_threshold
        self._consecutive_failures = 0
        self._last_persistence_error: str | None = None
        self._listeners: list[TransitionListener] = []
        self._reevaluate: set[str] = set()
        self._tick_count = 0
        self._bootstrapped = False
        self._stopping = False
        self._lock = threading.RLock()

    @property
    def store(self) -> TaskGraphStore:
        return self._store

    @property
    def results(self) -> ResultStore:
        return self._results

    @property
    def dispatcher(self) -> WorkerDispatcher:
        return self._dispatcher

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def health(self) -> SchedulerHealth:
        return SchedulerHealth(
            consecutive_persistence_failures=self._consecutive_failures,
            persistence_failure_threshold=self._failure_threshold,
            last_persistence_error=self._last_persistence_error,
        )

    def in_flight(self) -> tuple[str, ...]:
        """Task ids with a live worker handle in this process."""
        return self._dispatcher.in_flight()

    def is_drained(self) -> bool:
        return self._store.counts().non_terminal == 0

    def summarize(self) -> StatusSummary:
        with self._lock:
            return StatusAggregator(self).summarize()

    def add_listener(self, listener: TransitionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        with self._lock:
            self._listeners.remove(listener)

    def bootstrap(self, *, cancelled: Iterable[str] = ()) -> BootstrapReport:
        """Restore the last snapshot and reconcile tasks left running by a crash.

        Must run before the first submission or tick. Restored ``running`` tasks
        have no live worker any more, so each becomes
        ``failed{interrupted_by_restart}``, or ``failed{cancelled}`` when its id is
        in ``cancelled``; their dependents are skipped on the next tick.
        """
        cancel_ids = frozenset(cancelled)
        with self._lock:
            if self._bootstrapped or self._tick_count or len(self._store):
                raise InvariantViolationError(
                    "bootstrap must run once, before any submission or tick"
                )
            self._bootstrapped = True
            if self._persistence is None:
                return BootstrapReport(restored=False, tasks=0, results=0)

            snapshot = self._persistence.load()
            if snapshot is None:
                return BootstrapReport(restored=False, tasks=0, results=0)

            self._store = TaskGraphStore.restore(
                snapshot.tasks, clock=self._clock, id_factory=self._id_factory
            )
            self._results = ResultStore(snapshot.results)
            mark = len(self._store.transition_log())

            interrupted: list[str] = []
            for task in self._store.tasks_with_status(TaskStatus.RUNNING):
                error = (
                    TaskError.cancelled()
                    if task.id in cancel_ids
                    else TaskError.interrupted_by_restart()
                )
                self._store.transition(task.id, TaskStatus.FAILED, error=error)
                interrupted.append(task.id)
            for task in self._store.tasks_with_status(TaskStatus.FAILED, TaskStatus.SKIPPED):
                self._reevaluate.update(dep.id for dep in self._store.dependents(task.id))

            logger.info(
                "scheduler_restart_reconciled",
                tasks=len(self._store),
                results=len(self._results),
                interrupted=interrupted,
            )
            if interrupted:
                self._persist()
            self._emit_since(mark)
            return BootstrapReport(
                restored=True,
                tasks=len(self._store),
                results=len(self._results),
                interrupted=tuple(interrupted),
            )

    def submit(
        self, descriptors: Iterable[TaskDescriptor | Mapping[str, object]]
    ) -> tuple[Task, ...]:
        """Add a batch of tasks; structural errors propagate and change nothing."""
        with self._lock:
            mark = len(self._store.transition_log())
            created = self._store.submit(descriptors)
            if not created:
                return created
            self._reevaluate.update(task.id for task in created)
            logger.info(
                "scheduler_tasks_submitted",
                count=len(created),
                task_ids=[task.id for task in created],
            )
            self._persist()
            self._emit_since(mark)
            return created

    def tick(self, *, dispatch: bool = True) -> TickSummary:
        """Run one tick.

        Once drained, ticking is a no-op: the counter stays put and every call
        returns an equal summary. ``dispatch=False`` records worker outcomes and
        cascades skips but starts nothing new.
        """
        with self._lock:
            counts = self._store.counts()
            if counts.non_terminal == 0:
                self._reevaluate.clear()
                return TickSummary(tick=self._tick_count, counts=counts, drained=True)

            self._tick_count += 1
            limit = self._limit
            mark = len(self._store.transition_log())
            activity = _TickActivity()

            seeds = self._poll_running(activity)
            seeds.update(self._reevaluate)
            self._reevaluate.clear()
            self._cascade(seeds, activity)
            if dispatch:
                self._dispatch_ready(limit, activity)

            changed = len(self._store.transition_log()) != mark
            persisted = self._persist() if changed else False
            counts = self._store.counts()
            summary = TickSummary(
                tick=self._tick_count,
                counts=counts,
                dispatched=tuple(activity.dispatched),
                completed=tuple(activity.completed),
                failed=tuple(activity.failed),
                skipped=tuple(activity.skipped),
                drained=counts.non_terminal == 0,
                persisted=persisted,
            )
            if changed:
                logger.info(
                    "scheduler_tick",
                    tick=summary.tick,
                    counts=counts.to_dict(),
                    dispatched=len(summary.dispatched),
                    completed=len(summary.completed),
                    failed=len(summary.failed),
                    skipped=len(summary.skipped),
                    drained=summary.drained,
                )
            self._emit_since(mark)
            return summary

    def run_until_drained(
        self,
        *,
        interval_seconds: float = 0.0,
        max_ticks: int | None = None,
        before_tick: Callable[[], object] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> TickSummary:
        """Tick on a timer until drained, stopped, or ``max_ticks`` is reached."""
        if interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        if max_ticks is not None and max_ticks <= 0:
            raise ValueError("max_ticks must be > 0")

        ticks = 0
        while True:
            if before_tick is not None:
                before_tick()
            summary = self.tick()
            ticks += 1
            if summary.drained or self._stopping:
                return summary
            if max_ticks is not None and ticks >= max_ticks:
                return summary
            if interval_seconds:
                sleep(interval_seconds)

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a running task. Other statuses raise ``InvalidTransitionError``."""
        with self._lock:
            return self._fail_running(task_id, TaskError.cancelled(), action="cancel")

    def cancel_all(self) -> tuple[str, ...]:
        with self._lock:
            cancelled = []
            for task in self._store.tasks_with_status(TaskStatus.RUNNING):
                self._fail_running(task.id, TaskError.cancelled(), action="cancel")
                cancelled.append(task.id)
            return tuple(cancelled)

    def fail_running(self, task_id: str, error: TaskError) -> Task:
        """Stop a running task and mark it failed with ``error``."""
        with self._lock:
            return self._fail_running(task_id, error, action="fail")

    def shutdown(self) -> tuple[str, ...]:
        """Cancel every running task and write a final snapshot."""
        with self._lock:
            self._stopping = True
            cancelled = self.cancel_all()
            self._persist()
            logger.info("scheduler_shutdown", cancelled=list(cancelled))
            return cancelled

    def set_concurrency_limit(self, limit: int) -> None:
        """Takes effect at the next tick; running tasks are never preempted."""
        _validate_limit(limit)
        with self._lock:
            previous = self._limit
            self._limit = limit
        if previous != limit:
            logger.info("scheduler_concurrency_changed", previous=previous, limit=limit)

    def _poll_running(self, activity: _TickActivity) -> set[str]:
        seeds: set[str] = set()
        for task in self._store.tasks_with_status(TaskStatus.RUNNING):
            if self._dispatcher.handle_for(task.id) is None:
                result_error: TaskError | None = TaskError(
                    kind=ErrorKind.WORKER_FAILURE, message="no live worker handle for task"
                )
                output: JSONValue = None
            else:
                polled = self._dispatcher.poll(task.id)
                if not polled.done:
                    continue
                result_error, output = polled.error, polled.output

            self._dispatcher.release(task.id)
            if result_error is None:
                try:
                    self._results.record(task.id, output)
                except InvariantViolationError as exc:
                    result_error = TaskError(kind=ErrorKind.WORKER_FAILURE, message=str(exc))

            if result_error is None:
                self._store.transition(task.id, TaskStatus.COMPLETE)
                activity.completed.append(task.id)
                logger.info("scheduler_task_completed", task_id=task.id, kind=task.kind)
            else:
                self._store.transition(task.id, TaskStatus.FAILED, error=result_error)
                activity.failed.append(task.id)
                logger.warning(
                    "scheduler_task_failed",
                    task_id=task.id,
                    kind=task.kind,
                    error_kind=result_error.kind.value,
                    error=result_error.message,
                )
            seeds.update(dep.id for dep in self._store.dependents(task.id))
        return seeds

    def _cascade(self, seeds: Iterable[str], activity: _TickActivity) -> None:
        # Worklist over candidate tasks; a skip enqueues that task's dependents.
        pending = sorted(seeds, key=lambda task_id: self._store.get(task_id).dispatch_key())
        while pending:
            task_id = pending.pop(0)
            task = self._store.get(task_id)
            if task.status is not TaskStatus.BLOCKED:
                continue
            if not self._store.has_unsatisfiable_dependency(task_id):
                continue
            self._store.transition(task_id, TaskStatus.SKIPPED)
            activity.skipped.append(task_id)
            logger.info(
                "scheduler_task_skipped",
                task_id=task_id,
                unsatisfied=list(self._store.outstanding_dependencies(task_id)),
            )
            pending.extend(dep.id for dep in self._store.dependents(task_id))

    def _dispatch_ready(self, limit: int, activity: _TickActivity) -> None:
        for task in self._store.ready_tasks():
            self._store.transition(task.id, TaskStatus.READY)

        capacity = limit - len(self._store.tasks_with_status(TaskStatus.RUNNING))
        for task in self._store.tasks_with_status(TaskStatus.READY):
            if capacity <= 0:
                break
            try:
                spec = build_injected_spec(task, self._results)
                handle = self._dispatcher.start(task, spec)
            except (DispatchError, InvariantViolationError) as exc:
                error = TaskError(kind=ErrorKind.DISPATCH_ERROR, message=str(exc))
                self._store.transition(task.id, TaskStatus.FAILED, error=error)
                activity.failed.append(task.id)
                logger.warning("scheduler_dispatch_failed", task_id=task.id, error=str(exc))
                self._cascade((dep.id for dep in self._store.dependents(task.id)), activity)
                continue

            self._store.transition(task.id, TaskStatus.RUNNING, worker_handle=handle)
            activity.dispatched.append(task.id)
            capacity -= 1
            logger.info(
                "scheduler_task_dispatched",
                task_id=task.id,
                kind=task.kind,
                runtime=handle.runtime,
                ref=handle.ref,
            )

    def _fail_running(self, task_id: str, error: TaskError, *, action: str) -> Task:
        task = self._store.get(task_id)
        if task.status is not TaskStatus.RUNNING:
            raise InvalidTransitionError(
                task_id,
                task.status.value,
                TaskStatus.FAILED.value,
                f"only running tasks can be {'cancelled' if action == 'cancel' else 'failed'}",
            )
        mark = len(self._store.transition_log())
        self._dispatcher.cancel(task_id)
        self._dispatcher.release(task_id)
        updated = self._store.transition(task_id, TaskStatus.FAILED, error=error)
        self._reevaluate.update(dep.id for dep in self._store.dependents(task_id))
        logger.warning(
            "scheduler_task_stopped",
            task_id=task_id,
            action=action,
            error_kind=error.kind.value,
            error=error.message,
        )
        self._persist()
        self._emit_since(mark)
        return updated

    def _persist(self) -> bool:
        if self._persistence is None:
            return False
        try:
            self._persistence.save(self._store.tasks(), self._results.to_dict())
        except PersistenceError as exc:
            self._consecutive_failures += 1
            self._last_persistence_error = str(exc)
            logger.error(
                "persistence_snapshot_failed",
                error=str(exc),
                consecutive_failures=self._consecutive_failures,
            )
            if self._consecutive_failures == self._failure_threshold:
                logger.error(
                    "scheduler_health_degraded",
                    consecutive_failures=self._consecutive_failures,
                    threshold=self._failure_threshold,
                )
            return False

        if self._consecutive_failures >= self._failure_threshold:
            logger.info("scheduler_health_recovered", after_failures=self._consecutive_failures)
        self._consecutive_failures = 0
        self._last_persistence_error = None
        return True

    def _emit_since(self, mark: int) -> None:
        if not self._listeners:
            return
        records = self._store.transition_log()[mark:]
        for record in records:
            for listener in tuple(self._listeners):
                try:
                    listener(record)
                except Exception as exc:
                    logger.error(
                        "scheduler_listener_failed",
                        task_id=record.task_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )


def _validate_limit(limit: int) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValueError(f"concurrency limit must be a positive integer, got {limit!r}")


__all__ = ["BootstrapReport", "SchedulerLoop", "TickSummary", "TransitionListener"]
