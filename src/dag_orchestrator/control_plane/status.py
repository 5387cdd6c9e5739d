"""Read-only projection of scheduler state for reporting."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from dag_orchestrator.domain.models import JSONValue, StatusCounts, TaskStatus

if TYPE_CHECKING:
    from dag_orchestrator.control_plane.graph_store import TaskGraphStore


@dataclass(frozen=True, slots=True)
class SchedulerHealth:
    """Persistence health as seen by the scheduler."""

    consecutive_persistence_failures: int = 0
    persistence_failure_threshold: int = 3
    last_persistence_error: str | None = None

    def __post_init__(self) -> None:
        if self.consecutive_persistence_failures < 0:
            raise ValueError("consecutive_persistence_failures must be >= 0")
        if self.persistence_failure_threshold <= 0:
            raise ValueError("persistence_failure_threshold must be > 0")

    @property
    def degraded(self) -> bool:
        return self.consecutive_persistence_failures >= self.persistence_failure_threshold

    @property
    def state(self) -> str:
        return "degraded" if self.degraded else "ok"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "state": self.state,
            "consecutive_persistence_failures": self.consecutive_persistence_failures,
            "persistence_failure_threshold": self.persistence_failure_threshold,
            "last_persistence_error": self.last_persistence_error,
        }


@dataclass(frozen=True, slots=True)
class BlockedChain:
    """A blocked task and every upstream id it is still waiting on."""

    task_id: str
    outstanding: tuple[str, ...]

    def to_dict(self) -> dict[str, JSONValue]:
        return {"task_id": self.task_id, "outstanding": list(self.outstanding)}


@dataclass(frozen=True, slots=True)
class StatusSummary:
    counts: StatusCounts
    blocked_chains: tuple[BlockedChain, ...]
    in_flight: tuple[str, ...]
    health: SchedulerHealth

    @property
    def drained(self) -> bool:
        return self.counts.non_terminal == 0

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "counts": dict(self.counts.to_dict()),
            "total": self.counts.total,
            "drained": self.drained,
            "blocked_chains": [chain.to_dict() for chain in self.blocked_chains],
            "in_flight": list(self.in_flight),
            "health": self.health.to_dict(),
        }


class StatusSource(Protocol):
    @property
    def store(self) -> TaskGraphStore: ...

    @property
    def health(self) -> SchedulerHealth: ...

    def in_flight(self) -> tuple[str, ...]: ...


class StatusAggregator:
    """Builds :class:`StatusSummary` values without touching scheduler state."""

    __slots__ = ("_source",)

    def __init__(self, source: StatusSource) -> None:
        self._source = source

    def summarize(self) -> StatusSummary:
        store = self._source.store
        chains = tuple(
            BlockedChain(task_id=task.id, outstanding=store.outstanding_dependencies(task.id))
            for task in store.tasks_with_status(TaskStatus.BLOCKED)
        )
        return StatusSummary(
            counts=store.counts(),
            blocked_chains=chains,
            in_flight=self._source.in_flight(),
            health=self._source.health,
        )


__all__ = [
    "BlockedChain",
    "SchedulerHealth",
    "StatusAggregator",
    "StatusSource",
    "StatusSummary",
]
