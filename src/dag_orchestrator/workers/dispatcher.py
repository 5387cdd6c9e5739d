"""Owns the mapping from task id to live worker handle."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from dag_orchestrator.constants import DEFAULT_START_WARN_SECONDS
from dag_orchestrator.domain.errors import DispatchError, InvariantViolationError
from dag_orchestrator.domain.models import ErrorKind, TaskError, WorkerHandle
from dag_orchestrator.workers.base import PollResult

if TYPE_CHECKING:
    from dag_orchestrator.domain.models import JSONValue, Task
    from dag_orchestrator.workers.base import WorkerRuntime

logger = structlog.get_logger(__name__)


class WorkerDispatcher:
    """Starts, polls and cancels workers through a single runtime."""

    __slots__ = ("_handles", "_monotonic", "_runtime", "_start_warn_seconds")

    def __init__(
        self,
        runtime: WorkerRuntime,
        *,
        start_warn_seconds: float = DEFAULT_START_WARN_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if start_warn_seconds < 0:
            raise ValueError("start_warn_seconds must be >= 0")
        self._runtime = runtime
        self._start_warn_seconds = start_warn_seconds
        self._monotonic = monotonic
        self._handles: dict[str, WorkerHandle] = {}

    @property
    def runtime(self) -> WorkerRuntime:
        return self._runtime

    def start(self, task: Task, spec: JSONValue) -> WorkerHandle:
        """Hand ``task`` to the runtime; raises ``DispatchError`` if it refuses."""
        if task.id in self._handles:
            raise InvariantViolationError(f"task {task.id!r} already has a live worker")

        began = self._monotonic()
        try:
            ref = self._runtime.start(task.id, task.kind, spec)
        except Exception as exc:
            logger.warning(
                "dispatcher_start_failed",
                task_id=task.id,
                kind=task.kind,
                runtime=self._runtime.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise DispatchError(task.id, str(exc) or type(exc).__name__) from exc

        elapsed = self._monotonic() - began
        if elapsed > self._start_warn_seconds:
            logger.warning(
                "dispatcher_slow_start",
                task_id=task.id,
                runtime=self._runtime.name,
                elapsed_seconds=round(elapsed, 3),
                warn_after_seconds=self._start_warn_seconds,
            )

        handle = WorkerHandle(runtime=self._runtime.name, ref=ref)
        self._handles[task.id] = handle
        logger.debug("dispatcher_started", task_id=task.id, kind=task.kind, ref=ref)
        return handle

    def poll(self, task_id: str) -> PollResult:
        """Observe a worker without blocking.

        An exception from the runtime counts as the worker finishing with a
        failure, so a broken runtime cannot wedge the scheduler.
        """
        handle = self._require(task_id)
        try:
            return self._runtime.poll(handle.ref)
        except Exception as exc:
            logger.warning(
                "dispatcher_poll_failed",
                task_id=task_id,
                ref=handle.ref,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return PollResult.failure(
                TaskError(
                    kind=ErrorKind.WORKER_FAILURE,
                    message=f"polling the worker raised {type(exc).__name__}: {exc}",
                    detail={"exception": type(exc).__name__, "ref": handle.ref},
                )
            )

    def cancel(self, task_id: str) -> bool:
        """Ask the runtime to stop a worker. Best effort; never raises."""
        handle = self._handles.get(task_id)
        if handle is None:
            return False
        try:
            cancelled = bool(self._runtime.cancel(handle.ref))
        except Exception as exc:
            logger.warning(
                "dispatcher_cancel_failed",
                task_id=task_id,
                ref=handle.ref,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        logger.info("dispatcher_cancel_requested", task_id=task_id, acknowledged=cancelled)
        return cancelled

    def release(self, task_id: str) -> WorkerHandle | None:
        return self._handles.pop(task_id, None)

    def handle_for(self, task_id: str) -> WorkerHandle | None:
        return self._handles.get(task_id)

    def in_flight(self) -> tuple[str, ...]:
        return tuple(sorted(self._handles))

    def _require(self, task_id: str) -> WorkerHandle:
        handle = self._handles.get(task_id)
        if handle is None:
            raise InvariantViolationError(f"no live worker for task {task_id!r}")
        return handle


__all__ = ["WorkerDispatcher"]
