"""In-process runtime: Python callables per task kind on a thread pool."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Final

from dag_orchestrator.domain.models import ErrorKind, JSONValue, TaskError
from dag_orchestrator.workers.base import PollResult

RUNTIME_NAME: Final[str] = "threads"

TaskHandler = Callable[[JSONValue], object]


class ThreadPoolWorkerRuntime:
    """Run registered handlers on a ``ThreadPoolExecutor``.

    A handler receives the effective spec and returns the task output, which
    must be JSON-serializable. Raising marks the task failed.
    """

    def __init__(
        self,
        handlers: Mapping[str, TaskHandler] | None = None,
        *,
        max_threads: int = 4,
    ) -> None:
        if max_threads <= 0:
            raise ValueError("max_threads must be > 0")
        self._handlers: dict[str, TaskHandler] = dict(handlers or {})
        self._executor = ThreadPoolExecutor(
            max_workers=max_threads, thread_name_prefix="dagorch-worker"
        )
        self._futures: dict[str, Future[object]] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return RUNTIME_NAME

    @property
    def kinds(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    @property
    def tracked(self) -> tuple[str, ...]:
        """Refs started and not yet collected by ``poll`` or dropped by ``cancel``."""
        with self._lock:
            return tuple(sorted(self._futures))

    def register(self, kind: str, handler: TaskHandler) -> None:
        if not kind:
            raise ValueError("kind must be non-empty")
        self._handlers[kind] = handler

    def start(self, task_id: str, kind: str, spec: JSONValue) -> str:
        handler = self._handlers.get(kind)
        if handler is None:
            raise LookupError(f"no handler registered for kind {kind!r}")
        future = self._executor.submit(handler, spec)
        ref = f"{task_id}#{next(self._counter)}"
        with self._lock:
            self._futures[ref] = future
        return ref

    def poll(self, ref: str) -> PollResult:
        with self._lock:
            future = self._futures.get(ref)
        if future is None:
            raise KeyError(f"unknown thread ref: {ref}")
        if not future.done():
            return PollResult.running()

        with self._lock:
            self._futures.pop(ref, None)

        if future.cancelled():
            return PollResult.failure(TaskError.cancelled("handler cancelled before it finished"))
        exc = future.exception()
        if exc is not None:
            return PollResult.failure(
                TaskError(
                    kind=ErrorKind.WORKER_FAILURE,
                    message=f"{type(exc).__name__}: {exc}",
                    detail={"exception": type(exc).__name__},
                )
            )
        try:
            return PollResult.success(future.result())
        except ValueError as bad_output:
            return PollResult.failure(
                TaskError(
                    kind=ErrorKind.WORKER_FAILURE,
                    message=f"handler returned a non-JSON output: {bad_output}",
                )
            )

    def cancel(self, ref: str) -> bool:
        """Drop ``ref``; returns True when its handler was stopped before it began.

        A handler that is already running cannot be interrupted. It finishes on
        its pool thread and the result is discarded.
        """
        with self._lock:
            future = self._futures.pop(ref, None)
        if future is None:
            return False
        return future.cancel()

    def close(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)


__all__ = ["RUNTIME_NAME", "TaskHandler", "ThreadPoolWorkerRuntime"]
