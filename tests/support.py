"""Shared test doubles: a manual clock and a scripted in-memory worker runtime."""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from dag_orchestrator.control_plane.scheduler import SchedulerLoop
from dag_orchestrator.domain.errors import PersistenceError
from dag_orchestrator.domain.models import ErrorKind, JSONValue, TaskDescriptor, TaskError
from dag_orchestrator.persistence.durable import InMemoryDurableStore
from dag_orchestrator.persistence.manager import PersistenceManager
from dag_orchestrator.workers.base import PollResult
from dag_orchestrator.workers.dispatcher import WorkerDispatcher

EPOCH = datetime(2026, 1, 1, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; every call returns the current time without advancing."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@dataclass(slots=True)
class StartCall:
    task_id: str
    kind: str
    spec: JSONValue


@dataclass(slots=True)
class ScriptedRuntime:
    """Worker runtime whose outcomes the test decides.

    Started tasks stay running until :meth:`complete` or :meth:`fail` scripts an
    outcome; the next poll then reports it. ``refuse`` makes ``start`` raise.
    """

    runtime_name: str = "scripted"
    started: list[StartCall] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    refused: dict[str, str] = field(default_factory=dict)
    poll_errors: dict[str, Exception] = field(default_factory=dict)
    _refs: dict[str, str] = field(default_factory=dict)
    _outcomes: dict[str, PollResult] = field(default_factory=dict)
    _counter: itertools.count[int] = field(default_factory=lambda: itertools.count(1))

    @property
    def name(self) -> str:
        return self.runtime_name

    def start(self, task_id: str, kind: str, spec: JSONValue) -> str:
        if task_id in self.refused:
            raise RuntimeError(self.refused[task_id])
        self.started.append(StartCall(task_id=task_id, kind=kind, spec=spec))
        ref = f"{task_id}@{next(self._counter)}"
        self._refs[ref] = task_id
        return ref

    def poll(self, ref: str) -> PollResult:
        task_id = self._refs[ref]
        if task_id in self.poll_errors:
            raise self.poll_errors[task_id]
        outcome = self._outcomes.pop(task_id, None)
        if outcome is None:
            return PollResult.running()
        del self._refs[ref]
        return outcome

    def cancel(self, ref: str) -> bool:
        task_id = self._refs.pop(ref, None)
        if task_id is None:
            return False
        self.cancelled.append(task_id)
        return True

    def complete(self, task_id: str, output: object = None) -> None:
        self._outcomes[task_id] = PollResult.success(output)

    def fail(self, task_id: str, message: str = "boom", detail: JSONValue = None) -> None:
        self._outcomes[task_id] = PollResult.failure(
            TaskError(kind=ErrorKind.WORKER_FAILURE, message=message, detail=detail)
        )

    def refuse(self, task_id: str, message: str = "no capacity") -> None:
        self.refused[task_id] = message

    def started_ids(self) -> list[str]:
        return [call.task_id for call in self.started]

    def spec_for(self, task_id: str) -> JSONValue:
        for call in self.started:
            if call.task_id == task_id:
                return call.spec
        raise KeyError(task_id)

    @property
    def live(self) -> tuple[str, ...]:
        return tuple(sorted(self._refs.values()))


class FailingDurableStore(InMemoryDurableStore):
    """In-memory store whose writes fail while ``failing`` is set."""

    def __init__(self, initial: bytes | None = None) -> None:
        super().__init__(initial)
        self.failing = False

    def write(self, data: bytes) -> None:
        if self.failing:
            raise PersistenceError("disk full")
        super().write(data)


def descriptor(
    task_id: str,
    *deps: str,
    kind: str = "echo",
    spec: JSONValue = None,
    inject: bool = False,
) -> TaskDescriptor:
    return TaskDescriptor(
        id=task_id, kind=kind, spec=spec, depends_on=deps, inject_dependency_results=inject
    )


def make_scheduler(
    runtime: ScriptedRuntime | None = None,
    *,
    clock: FakeClock | None = None,
    durable: InMemoryDurableStore | None = None,
    max_concurrency: int = 4,
    persistence_failure_threshold: int = 3,
) -> tuple[SchedulerLoop, ScriptedRuntime, InMemoryDurableStore]:
    runtime = runtime if runtime is not None else ScriptedRuntime()
    clock = clock if clock is not None else FakeClock()
    durable = durable if durable is not None else InMemoryDurableStore()
    scheduler = SchedulerLoop(
        WorkerDispatcher(runtime),
        persistence=PersistenceManager(durable, clock=clock),
        max_concurrency=max_concurrency,
        persistence_failure_threshold=persistence_failure_threshold,
        clock=clock,
    )
    return scheduler, runtime, durable


def statuses(scheduler: SchedulerLoop, ids: Iterable[str] | None = None) -> dict[str, str]:
    store = scheduler.store
    wanted = list(ids) if ids is not None else [task.id for task in store.tasks()]
    return {task_id: store.get(task_id).status.value for task_id in wanted}


def complete_all(runtime: ScriptedRuntime, outputs: Mapping[str, object]) -> None:
    for task_id, output in outputs.items():
        runtime.complete(task_id, output)


def _echo(spec: JSONValue) -> object:
    return spec


def _explode(spec: JSONValue) -> object:
    raise RuntimeError("handler failed on purpose")


# Loaded by ``dagorch --handlers tests.support`` in CLI tests.
HANDLERS = {"echo": _echo, "explode": _explode}
