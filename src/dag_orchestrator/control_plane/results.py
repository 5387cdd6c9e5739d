"""Result store and dependency-result injection."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING

from dag_orchestrator.constants import INJECTED_RESULTS_KEY, INJECTED_SPEC_KEY
from dag_orchestrator.domain.errors import InvariantViolationError
from dag_orchestrator.domain.models import JSONValue, canonical_json, to_json_value

if TYPE_CHECKING:
    from dag_orchestrator.domain.models import Task

_MISSING: object = object()


class ResultStore:
    """Write-once outputs keyed by task id, retained for the whole run."""

    __slots__ = ("_outputs",)

    def __init__(self, outputs: Mapping[str, object] | None = None) -> None:
        self._outputs: dict[str, JSONValue] = {}
        if outputs is not None:
            for task_id, output in outputs.items():
                self.record(task_id, output)

    def __len__(self) -> int:
        return len(self._outputs)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._outputs

    def contains(self, task_id: str) -> bool:
        return task_id in self._outputs

    def record(self, task_id: str, output: object) -> JSONValue:
        """Store ``output`` for ``task_id``.

        Recording the same payload twice is a no-op. Recording a different
        payload for a task that already has one raises
        ``InvariantViolationError``.
        """
        normalized = to_json_value(output, path=f"results.{task_id}")
        existing = self._outputs.get(task_id, _MISSING)
        if existing is _MISSING:
            self._outputs[task_id] = normalized
            return normalized
        if canonical_json(existing) != canonical_json(normalized):
            raise InvariantViolationError(
                f"task {task_id!r} already has a recorded result that differs from the new one"
            )
        return existing

    def get(self, task_id: str) -> JSONValue:
        try:
            return self._outputs[task_id]
        except KeyError:
            raise InvariantViolationError(f"no result recorded for task {task_id!r}") from None

    def items(self) -> Iterator[tuple[str, JSONValue]]:
        for task_id in sorted(self._outputs):
            yield task_id, self._outputs[task_id]

    def to_dict(self) -> dict[str, JSONValue]:
        return dict(self.items())


def build_injected_spec(task: Task, results: ResultStore) -> JSONValue:
    """Return the spec a worker should receive for ``task``.

    With injection enabled the upstream outputs are attached under
    ``dependency_results`` as ``{"task_id", "output"}`` entries in the order the
    dependencies were declared. Mapping specs are copied and extended;
    any other spec is wrapped as ``{"spec": <spec>, "dependency_results": [...]}``.
    """
    if not task.inject_dependency_results:
        return task.spec
    if isinstance(task.spec, dict) and INJECTED_RESULTS_KEY in task.spec:
        raise InvariantViolationError(
            f"task {task.id!r} spec already has a {INJECTED_RESULTS_KEY!r} key"
        )

    injected: list[JSONValue] = []
    for dep_id in task.depends_on:
        if not results.contains(dep_id):
            raise InvariantViolationError(
                f"task {task.id!r} needs the result of {dep_id!r}, which was never recorded"
            )
        injected.append({"task_id": dep_id, "output": results.get(dep_id)})

    if isinstance(task.spec, dict):
        merged: dict[str, JSONValue] = dict(task.spec)
        merged[INJECTED_RESULTS_KEY] = injected
        return merged
    return {INJECTED_SPEC_KEY: task.spec, INJECTED_RESULTS_KEY: injected}


__all__ = ["ResultStore", "build_injected_spec"]
