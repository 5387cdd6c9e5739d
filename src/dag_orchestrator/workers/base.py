"""Worker runtime contract shared by the dispatcher and concrete runtimes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from dag_orchestrator.domain.models import JSONValue, TaskError, to_json_value


@dataclass(frozen=True, slots=True)
class PollResult:
    """Non-blocking observation of one worker.

    ``done`` is false while the worker is still running. A finished worker
    carries either ``output`` (success) or ``error`` (failure), never both.
    """

    done: bool
    output: JSONValue = None
    error: TaskError | None = None

    def __post_init__(self) -> None:
        if not self.done and (self.output is not None or self.error is not None):
            raise ValueError("a running worker cannot report output or error")
        if self.error is not None and self.output is not None:
            raise ValueError("a failed worker cannot also report output")
        object.__setattr__(self, "output", to_json_value(self.output, path="PollResult.output"))

    @property
    def succeeded(self) -> bool:
        return self.done and self.error is None

    @classmethod
    def running(cls) -> PollResult:
        return cls(done=False)

    @classmethod
    def success(cls, output: object = None) -> PollResult:
        return cls(done=True, output=to_json_value(output, path="PollResult.output"))

    @classmethod
    def failure(cls, error: TaskError) -> PollResult:
        return cls(done=True, error=error)


@runtime_checkable
class WorkerRuntime(Protocol):
    """Executes task specs out of band.

    ``start`` returns promptly with an opaque reference; ``poll`` and ``cancel``
    never block on the work itself.
    """

    @property
    def name(self) -> str: ...

    def start(self, task_id: str, kind: str, spec: JSONValue) -> str: ...

    def poll(self, ref: str) -> PollResult: ...

    def cancel(self, ref: str) -> bool: ...


__all__ = ["PollResult", "WorkerRuntime"]
