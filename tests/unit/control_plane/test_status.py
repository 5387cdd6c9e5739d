"""Status aggregation and health reporting."""

from __future__ import annotations

import pytest

from dag_orchestrator.control_plane.graph_store import TaskGraphStore
from dag_orchestrator.control_plane.status import (
    BlockedChain,
    SchedulerHealth,
    StatusAggregator,
)
from dag_orchestrator.domain.models import TaskStatus
from tests.support import FakeClock, descriptor, make_scheduler


class _StaticSource:
    def __init__(self, store: TaskGraphStore, health: SchedulerHealth) -> None:
        self._store = store
        self._health = health

    @property
    def store(self) -> TaskGraphStore:
        return self._store

    @property
    def health(self) -> SchedulerHealth:
        return self._health

    def in_flight(self) -> tuple[str, ...]:
        return ()


def test_summary_counts_every_status() -> None:
    scheduler, runtime, _ = make_scheduler(max_concurrency=1)
    scheduler.submit([descriptor("a"), descriptor("b"), descriptor("c", "a")])
    scheduler.tick()

    summary = scheduler.summarize()

    assert summary.counts[TaskStatus.RUNNING] == 1
    assert summary.counts[TaskStatus.READY] == 1
    assert summary.counts[TaskStatus.BLOCKED] == 1
    assert summary.counts.total == 3
    assert summary.in_flight == ("a",)
    assert summary.blocked_chains == (BlockedChain(task_id="c", outstanding=("a",)),)

    runtime.fail("a")
    scheduler.tick()
    scheduler.run_until_drained(
        before_tick=lambda: [runtime.complete(task_id, None) for task_id in runtime.live]
    )
    drained = scheduler.summarize()
    assert drained.drained
    assert drained.blocked_chains == ()
    assert drained.counts[TaskStatus.SKIPPED] == 1


def test_summary_to_dict_shape() -> None:
    scheduler, _, _ = make_scheduler()
    scheduler.submit([descriptor("a"), descriptor("b", "a")])

    payload = scheduler.summarize().to_dict()

    assert payload["total"] == 2
    assert payload["drained"] is False
    assert payload["counts"] == {
        "pending": 1,
        "blocked": 1,
        "ready": 0,
        "running": 0,
        "complete": 0,
        "failed": 0,
        "skipped": 0,
    }
    assert payload["blocked_chains"] == [{"task_id": "b", "outstanding": ["a"]}]
    assert payload["in_flight"] == []
    assert payload["health"] == {
        "state": "ok",
        "consecutive_persistence_failures": 0,
        "persistence_failure_threshold": 3,
        "last_persistence_error": None,
    }


def test_aggregator_reads_any_status_source() -> None:
    store = TaskGraphStore(clock=FakeClock())
    store.submit([descriptor("a")])
    health = SchedulerHealth(consecutive_persistence_failures=5, persistence_failure_threshold=3)

    summary = StatusAggregator(_StaticSource(store, health)).summarize()

    assert summary.health.degraded
    assert summary.health.state == "degraded"
    assert summary.counts[TaskStatus.PENDING] == 1


def test_aggregation_does_not_mutate_the_store() -> None:
    scheduler, _, _ = make_scheduler()
    scheduler.submit([descriptor("a"), descriptor("b", "a")])
    before = scheduler.store.transition_log()

    scheduler.summarize()
    scheduler.summarize()

    assert scheduler.store.transition_log() == before


@pytest.mark.parametrize(
    "kwargs",
    [
        {"consecutive_persistence_failures": -1},
        {"persistence_failure_threshold": 0},
    ],
)
def test_health_rejects_invalid_values(kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        SchedulerHealth(**kwargs)
