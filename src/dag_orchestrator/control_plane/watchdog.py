"""Opt-in timeout enforcement for running tasks."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from dag_orchestrator.domain.errors import InvalidTransitionError
from dag_orchestrator.domain.models import ErrorKind, TaskError, TaskStatus, as_utc, utc_now

if TYPE_CHECKING:
    from dag_orchestrator.control_plane.scheduler import SchedulerLoop

logger = structlog.get_logger(__name__)


class RunningTaskWatchdog:
    """Fails running tasks whose ``started_at`` is older than the timeout.

    Call :meth:`check` between ticks, e.g. as ``before_tick`` of
    :meth:`SchedulerLoop.run_until_drained`.
    """

    __slots__ = ("_clock", "_scheduler", "_timeout")

    def __init__(
        self,
        scheduler: SchedulerLoop,
        *,
        timeout_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._scheduler = scheduler
        self._timeout = timedelta(seconds=timeout_seconds)
        self._clock = clock

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    def overdue(self) -> tuple[str, ...]:
        now = as_utc(self._clock(), "clock()")
        return tuple(
            task.id
            for task in self._scheduler.store.tasks_with_status(TaskStatus.RUNNING)
            if task.started_at is not None and now - task.started_at > self._timeout
        )

    def check(self) -> tuple[str, ...]:
        """Fail every overdue task and return their ids."""
        expired: list[str] = []
        for task_id in self.overdue():
            error = TaskError(
                kind=ErrorKind.TIMEOUT,
                message=f"task exceeded {self._timeout.total_seconds():g}s",
                detail={"timeout_seconds": self._timeout.total_seconds()},
            )
            try:
                self._scheduler.fail_running(task_id, error)
            except InvalidTransitionError:
                # Finished between the scan and the call.
                continue
            expired.append(task_id)
            logger.warning(
                "watchdog_task_timed_out",
                task_id=task_id,
                timeout_seconds=self._timeout.total_seconds(),
            )
        return tuple(expired)


__all__ = ["RunningTaskWatchdog"]
