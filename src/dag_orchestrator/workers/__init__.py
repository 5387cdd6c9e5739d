"""Worker runtimes and the dispatcher that tracks their live handles."""

from dag_orchestrator.workers.base import PollResult, WorkerRuntime
from dag_orchestrator.workers.dispatcher import WorkerDispatcher
from dag_orchestrator.workers.subprocess_runtime import (
    CommandSpec,
    SubprocessWorkerRuntime,
    terminate_orphan,
)
from dag_orchestrator.workers.thread_runtime import TaskHandler, ThreadPoolWorkerRuntime

__all__ = [
    "CommandSpec",
    "PollResult",
    "SubprocessWorkerRuntime",
    "TaskHandler",
    "ThreadPoolWorkerRuntime",
    "WorkerDispatcher",
    "WorkerRuntime",
    "terminate_orphan",
]
