"""Scheduler loop behaviour driven through a scripted runtime and a manual clock."""

from __future__ import annotations

import pytest

from dag_orchestrator.control_plane.scheduler import SchedulerLoop
from dag_orchestrator.domain.errors import (
    CyclicDependencyError,
    InvalidTransitionError,
    InvariantViolationError,
    UnknownTaskError,
)
from dag_orchestrator.domain.models import (
    ErrorKind,
    TaskError,
    TaskStatus,
    TransitionRecord,
    is_allowed_transition,
)
from dag_orchestrator.persistence.durable import InMemoryDurableStore
from dag_orchestrator.workers.dispatcher import WorkerDispatcher
from tests.support import (
    FailingDurableStore,
    FakeClock,
    ScriptedRuntime,
    complete_all,
    descriptor,
    make_scheduler,
    statuses,
)


def test_injected_results_reach_the_dependent_once() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit(
        [
            descriptor("A"),
            descriptor("B"),
            descriptor("C", "A", "B", spec={"op": "join"}, inject=True),
        ]
    )

    first = scheduler.tick()
    assert first.dispatched == ("A", "B")

    complete_all(runtime, {"A": "1", "B": "2"})
    second = scheduler.tick()
    assert second.completed == ("A", "B")
    assert second.dispatched == ("C",)

    runtime.complete("C", "12")
    final = scheduler.tick()

    assert runtime.started_ids().count("C") == 1
    assert runtime.spec_for("C") == {
        "op": "join",
        "dependency_results": [
            {"task_id": "A", "output": "1"},
            {"task_id": "B", "output": "2"},
        ],
    }
    assert final.drained
    assert statuses(scheduler) == {"A": "complete", "B": "complete", "C": "complete"}
    assert scheduler.results.get("C") == "12"


def test_non_mapping_spec_is_wrapped_when_injecting() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit([descriptor("A"), descriptor("B", "A", spec=[1, 2], inject=True)])
    scheduler.tick()
    runtime.complete("A", {"rows": 3})

    scheduler.tick()

    assert runtime.spec_for("B") == {
        "spec": [1, 2],
        "dependency_results": [{"task_id": "A", "output": {"rows": 3}}],
    }


def test_spec_is_passed_through_without_injection() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit([descriptor("A"), descriptor("B", "A", spec={"x": 1})])
    scheduler.tick()
    runtime.complete("A", "ignored")

    scheduler.tick()

    assert runtime.spec_for("B") == {"x": 1}


def test_failure_skips_dependents_without_dispatching_them() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit([descriptor("A"), descriptor("B"), descriptor("C", "A", "B")])
    scheduler.tick()

    runtime.fail("A", "exit 1")
    runtime.complete("B", "ok")
    summary = scheduler.tick()

    assert summary.failed == ("A",)
    assert summary.completed == ("B",)
    assert summary.skipped == ("C",)
    assert summary.drained
    assert "C" not in runtime.started_ids()
    failed = scheduler.store.get("A")
    assert failed.error is not None
    assert failed.error.kind is ErrorKind.WORKER_FAILURE
    assert failed.error.message == "exit 1"


def test_skip_cascades_transitively_in_one_tick() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit(
        [descriptor("root"), descriptor("mid", "root"), descriptor("leaf", "mid")]
    )
    scheduler.tick()
    runtime.fail("root")

    summary = scheduler.tick()

    assert summary.skipped == ("mid", "leaf")
    assert statuses(scheduler) == {"root": "failed", "mid": "skipped", "leaf": "skipped"}


def test_cyclic_submission_is_rejected_and_nothing_is_stored() -> None:
    scheduler, runtime, durable = make_scheduler()

    with pytest.raises(CyclicDependencyError):
        scheduler.submit(
            [
                {"id": "X", "kind": "echo", "dependsOn": ["Y"]},
                {"id": "Y", "kind": "echo", "dependsOn": ["X"]},
            ]
        )

    assert len(scheduler.store) == 0
    assert durable.writes == 0
    assert scheduler.tick().dispatched == ()
    assert runtime.started == []


def test_concurrency_limit_one_dispatches_in_creation_order() -> None:
    clock = FakeClock()
    scheduler, runtime, _ = make_scheduler(clock=clock, max_concurrency=1)
    for task_id in ("t1", "t2", "t3"):
        scheduler.submit([descriptor(task_id)])
        clock.advance(1)

    order: list[str] = []
    for _ in range(3):
        summary = scheduler.tick()
        assert len(summary.dispatched) == 1
        assert len(scheduler.store.tasks_with_status(TaskStatus.RUNNING)) == 1
        order.extend(summary.dispatched)
        runtime.complete(summary.dispatched[0], summary.dispatched[0])

    final = scheduler.tick()
    assert order == ["t1", "t2", "t3"]
    assert runtime.started_ids() == ["t1", "t2", "t3"]
    assert final.drained


def test_equal_creation_times_dispatch_by_id() -> None:
    scheduler, runtime, _ = make_scheduler(max_concurrency=2)
    scheduler.submit([descriptor("c"), descriptor("a"), descriptor("b")])

    summary = scheduler.tick()

    assert summary.dispatched == ("a", "b")
    assert scheduler.store.get("c").status is TaskStatus.READY


def test_restart_fails_tasks_that_were_running() -> None:
    durable = InMemoryDurableStore()
    first, _, _ = make_scheduler(durable=durable)
    first.submit([descriptor("W"), descriptor("V", "W")])
    first.tick()
    assert first.store.get("W").status is TaskStatus.RUNNING

    second, runtime, _ = make_scheduler(durable=durable)
    report = second.bootstrap()

    assert report.restored
    assert report.tasks == 2
    assert report.interrupted == ("W",)
    restored = second.store.get("W")
    assert restored.status is TaskStatus.FAILED
    assert restored.error == TaskError.interrupted_by_restart()
    assert restored.worker_handle is None

    summary = second.tick()
    assert summary.skipped == ("V",)
    assert runtime.started == []


def test_bootstrap_marks_named_tasks_cancelled() -> None:
    durable = InMemoryDurableStore()
    first, _, _ = make_scheduler(durable=durable)
    first.submit([descriptor("a"), descriptor("b")])
    first.tick()

    second, _, _ = make_scheduler(durable=durable)
    report = second.bootstrap(cancelled=["b"])

    assert report.interrupted == ("a", "b")
    a_error = second.store.get("a").error
    b_error = second.store.get("b").error
    assert a_error is not None and a_error.kind is ErrorKind.INTERRUPTED_BY_RESTART
    assert b_error is not None and b_error.kind is ErrorKind.CANCELLED


def test_bootstrap_restores_results_and_keeps_scheduling() -> None:
    durable = InMemoryDurableStore()
    first, runtime, _ = make_scheduler(durable=durable)
    first.submit([descriptor("A"), descriptor("B", "A", inject=True)])
    first.tick()
    runtime.complete("A", {"n": 1})
    first.tick()
    runtime.complete("B", None)
    first.submit([descriptor("C", "A", inject=True)])

    second, second_runtime, _ = make_scheduler(durable=durable)
    report = second.bootstrap()

    assert report.results == 1
    assert report.interrupted == ("B",)
    assert second.results.get("A") == {"n": 1}

    summary = second.tick()
    assert summary.dispatched == ("C",)
    assert second_runtime.spec_for("C") == {
        "spec": None,
        "dependency_results": [{"task_id": "A", "output": {"n": 1}}],
    }


def test_bootstrap_without_snapshot_is_a_cold_start() -> None:
    scheduler, _, _ = make_scheduler()

    report = scheduler.bootstrap()

    assert not report.restored
    assert report.tasks == 0


def test_bootstrap_after_submission_is_rejected() -> None:
    scheduler, _, _ = make_scheduler()
    scheduler.submit([descriptor("a")])

    with pytest.raises(InvariantViolationError):
        scheduler.bootstrap()


def test_bootstrap_twice_is_rejected() -> None:
    scheduler, _, _ = make_scheduler()
    scheduler.bootstrap()

    with pytest.raises(InvariantViolationError):
        scheduler.bootstrap()


def test_dispatch_error_fails_task_and_skips_dependents() -> None:
    runtime = ScriptedRuntime()
    runtime.refuse("a", "no slots")
    scheduler, _, _ = make_scheduler(runtime)
    scheduler.submit([descriptor("a"), descriptor("b", "a"), descriptor("c")])

    summary = scheduler.tick()

    assert summary.failed == ("a",)
    assert summary.skipped == ("b",)
    assert summary.dispatched == ("c",)
    error = scheduler.store.get("a").error
    assert error is not None
    assert error.kind is ErrorKind.DISPATCH_ERROR
    assert "no slots" in error.message


def test_dispatch_error_does_not_consume_capacity() -> None:
    runtime = ScriptedRuntime()
    runtime.refuse("a")
    scheduler, _, _ = make_scheduler(runtime, max_concurrency=1)
    scheduler.submit([descriptor("a"), descriptor("b")])

    summary = scheduler.tick()

    assert summary.failed == ("a",)
    assert summary.dispatched == ("b",)


def test_poll_exception_becomes_worker_failure() -> None:
    runtime = ScriptedRuntime()
    scheduler, _, _ = make_scheduler(runtime)
    scheduler.submit([descriptor("a")])
    scheduler.tick()
    runtime.poll_errors["a"] = ConnectionError("worker vanished")

    summary = scheduler.tick()

    assert summary.failed == ("a",)
    error = scheduler.store.get("a").error
    assert error is not None
    assert error.kind is ErrorKind.WORKER_FAILURE
    assert "worker vanished" in error.message
    assert scheduler.in_flight() == ()


def test_running_task_stays_running_until_polled_done() -> None:
    scheduler, _, _ = make_scheduler()
    scheduler.submit([descriptor("a")])
    scheduler.tick()

    for _ in range(3):
        summary = scheduler.tick()
        assert not summary.changed
        assert not summary.persisted

    assert scheduler.store.get("a").status is TaskStatus.RUNNING
    assert scheduler.in_flight() == ("a",)


def test_late_dependent_of_failed_task_is_skipped_next_tick() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit([descriptor("a")])
    scheduler.tick()
    runtime.fail("a")
    scheduler.tick()

    scheduler.submit([descriptor("b", "a")])
    summary = scheduler.tick()

    assert summary.skipped == ("b",)


def test_late_dependent_of_complete_task_is_dispatched() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit([descriptor("a")])
    scheduler.tick()
    runtime.complete("a", 1)
    scheduler.tick()

    scheduler.submit([descriptor("b", "a")])
    summary = scheduler.tick()

    assert summary.dispatched == ("b",)


def test_cancel_task_fails_it_and_skips_dependents() -> None:
    scheduler, runtime, durable = make_scheduler()
    scheduler.submit([descriptor("a"), descriptor("b", "a")])
    scheduler.tick()
    writes = durable.writes

    cancelled = scheduler.cancel_task("a")

    assert cancelled.status is TaskStatus.FAILED
    assert cancelled.error == TaskError.cancelled()
    assert runtime.cancelled == ["a"]
    assert durable.writes == writes + 1
    assert scheduler.in_flight() == ()

    summary = scheduler.tick()
    assert summary.skipped == ("b",)
    assert summary.drained


@pytest.mark.parametrize("status", ["pending", "blocked", "complete"])
def test_cancel_rejects_tasks_that_are_not_running(status: str) -> None:
    scheduler, runtime, _ = make_scheduler(max_concurrency=1)
    scheduler.submit([descriptor("first"), descriptor("waiting", "first")])
    if status == "complete":
        scheduler.tick()
        runtime.complete("first", None)
        scheduler.tick()
        target = "first"
    elif status == "blocked":
        target = "waiting"
    else:
        target = "first"

    assert scheduler.store.get(target).status.value == status
    with pytest.raises(InvalidTransitionError):
        scheduler.cancel_task(target)


def test_cancel_unknown_task_raises() -> None:
    scheduler, _, _ = make_scheduler()

    with pytest.raises(UnknownTaskError):
        scheduler.cancel_task("ghost")


def test_cancel_all_and_shutdown() -> None:
    scheduler, runtime, durable = make_scheduler()
    scheduler.submit([descriptor("a"), descriptor("b"), descriptor("c", "a")])
    scheduler.tick()
    writes = durable.writes

    cancelled = scheduler.shutdown()

    assert cancelled == ("a", "b")
    assert sorted(runtime.cancelled) == ["a", "b"]
    assert scheduler.stopping
    assert durable.writes > writes
    assert scheduler.run_until_drained().skipped == ("c",)


def test_fail_running_records_the_given_error() -> None:
    scheduler, _, _ = make_scheduler()
    scheduler.submit([descriptor("slow")])
    scheduler.tick()

    updated = scheduler.fail_running("slow", TaskError.timeout())

    assert updated.error is not None
    assert updated.error.kind is ErrorKind.TIMEOUT


def test_lowering_the_limit_never_preempts() -> None:
    scheduler, runtime, _ = make_scheduler(max_concurrency=3)
    scheduler.submit([descriptor(name) for name in ("a", "b", "c", "d")])
    scheduler.tick()

    scheduler.set_concurrency_limit(1)
    runtime.complete("a", None)
    summary = scheduler.tick()

    assert summary.dispatched == ()
    assert len(scheduler.store.tasks_with_status(TaskStatus.RUNNING)) == 2
    assert runtime.cancelled == []


def test_raising_the_limit_dispatches_more_next_tick() -> None:
    scheduler, _, _ = make_scheduler(max_concurrency=1)
    scheduler.submit([descriptor(name) for name in ("a", "b", "c")])
    scheduler.tick()

    scheduler.set_concurrency_limit(3)
    summary = scheduler.tick()

    assert summary.dispatched == ("b", "c")
    assert scheduler.concurrency_limit == 3


@pytest.mark.parametrize("limit", [0, -1, True, 1.5])
def test_invalid_concurrency_limit_is_rejected(limit: object) -> None:
    scheduler, _, _ = make_scheduler()

    with pytest.raises(ValueError):
        scheduler.set_concurrency_limit(limit)  # type: ignore[arg-type]


def test_listeners_see_every_transition_in_order() -> None:
    scheduler, runtime, _ = make_scheduler()
    seen: list[TransitionRecord] = []
    scheduler.add_listener(seen.append)

    scheduler.submit([descriptor("a")])
    scheduler.tick()
    runtime.complete("a", 1)
    scheduler.tick()

    assert [(r.from_status, r.to_status) for r in seen] == [
        (None, TaskStatus.PENDING),
        (TaskStatus.PENDING, TaskStatus.READY),
        (TaskStatus.READY, TaskStatus.RUNNING),
        (TaskStatus.RUNNING, TaskStatus.COMPLETE),
    ]

    scheduler.remove_listener(seen.append)
    scheduler.submit([descriptor("b")])
    assert len(seen) == 4


def test_failing_listener_does_not_break_the_tick() -> None:
    scheduler, _, _ = make_scheduler()
    seen: list[str] = []

    def explode(record: TransitionRecord) -> None:
        raise RuntimeError("listener bug")

    scheduler.add_listener(explode)
    scheduler.add_listener(lambda record: seen.append(record.task_id))
    scheduler.submit([descriptor("a")])

    summary = scheduler.tick()

    assert summary.dispatched == ("a",)
    assert seen == ["a", "a", "a"]


def test_persistence_failures_degrade_then_recover() -> None:
    durable = FailingDurableStore()
    scheduler, runtime, _ = make_scheduler(durable=durable, persistence_failure_threshold=2)
    durable.failing = True

    scheduler.submit([descriptor("a"), descriptor("b", "a")])
    assert scheduler.health.consecutive_persistence_failures == 1
    assert not scheduler.health.degraded

    summary = scheduler.tick()
    assert not summary.persisted
    assert summary.dispatched == ("a",)
    health = scheduler.health
    assert health.degraded
    assert health.last_persistence_error == "disk full"
    assert scheduler.summarize().health.state == "degraded"

    durable.failing = False
    runtime.complete("a", "done")
    recovered = scheduler.tick()

    assert recovered.persisted
    assert scheduler.health.state == "ok"
    assert scheduler.health.last_persistence_error is None
    assert durable.writes == 1


def test_scheduler_without_persistence_never_persists() -> None:
    runtime = ScriptedRuntime()
    scheduler = SchedulerLoop(WorkerDispatcher(runtime), clock=FakeClock())
    scheduler.submit([descriptor("a")])

    summary = scheduler.tick()

    assert summary.dispatched == ("a",)
    assert not summary.persisted
    assert not scheduler.health.degraded


def test_run_until_drained_honours_max_ticks_and_interval() -> None:
    scheduler, _, _ = make_scheduler()
    scheduler.submit([descriptor("forever")])
    sleeps: list[float] = []

    summary = scheduler.run_until_drained(
        interval_seconds=0.5, max_ticks=3, sleep=sleeps.append
    )

    assert summary.tick == 3
    assert not summary.drained
    assert sleeps == [0.5, 0.5]


def test_run_until_drained_calls_before_tick() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit([descriptor("a"), descriptor("b", "a")])

    def finish_live() -> None:
        for task_id in runtime.live:
            runtime.complete(task_id, task_id.upper())

    summary = scheduler.run_until_drained(before_tick=finish_live)

    assert summary.drained
    assert scheduler.results.to_dict() == {"a": "A", "b": "B"}


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [({"interval_seconds": -1}, "interval_seconds"), ({"max_ticks": 0}, "max_ticks")],
)
def test_run_until_drained_validates_arguments(kwargs: dict[str, float], message: str) -> None:
    scheduler, _, _ = make_scheduler()

    with pytest.raises(ValueError, match=message):
        scheduler.run_until_drained(**kwargs)  # type: ignore[arg-type]


def test_drained_tick_changes_nothing() -> None:
    scheduler, runtime, durable = make_scheduler()
    scheduler.submit([descriptor("a")])
    scheduler.tick()
    runtime.complete("a", None)
    scheduler.tick()
    writes = durable.writes

    summary = scheduler.tick()

    assert summary.drained
    assert not summary.changed
    assert durable.writes == writes


def test_transition_log_only_contains_allowed_edges() -> None:
    runtime = ScriptedRuntime()
    runtime.refuse("r")
    scheduler, _, _ = make_scheduler(runtime, max_concurrency=2)
    scheduler.submit(
        [
            descriptor("a"),
            descriptor("b", "a"),
            descriptor("r"),
            descriptor("s", "r"),
            descriptor("c"),
            descriptor("d", "c", "a"),
        ]
    )
    scheduler.tick()
    runtime.complete("a", 1)
    runtime.fail("c")
    scheduler.tick()
    scheduler.run_until_drained(
        before_tick=lambda: [runtime.complete(task_id, None) for task_id in runtime.live]
    )

    log = scheduler.store.transition_log()
    for record in log:
        if record.from_status is not None:
            assert is_allowed_transition(record.from_status, record.to_status)
    assert [record.at for record in log] == sorted(record.at for record in log)
    assert statuses(scheduler) == {
        "a": "complete",
        "b": "complete",
        "r": "failed",
        "s": "skipped",
        "c": "failed",
        "d": "skipped",
    }


def test_identical_runs_dispatch_identically() -> None:
    def run() -> list[str]:
        scheduler, runtime, _ = make_scheduler(max_concurrency=2)
        scheduler.submit(
            [
                descriptor("m"),
                descriptor("k"),
                descriptor("z", "k"),
                descriptor("b", "m", "k"),
                descriptor("q"),
            ]
        )
        scheduler.run_until_drained(
            before_tick=lambda: [runtime.complete(task_id, None) for task_id in runtime.live]
        )
        return runtime.started_ids()

    assert run() == run()
    assert run() == ["k", "m", "b", "q", "z"]


def test_summarize_reports_blocked_chains() -> None:
    scheduler, _, _ = make_scheduler()
    scheduler.submit([descriptor("a"), descriptor("b", "a"), descriptor("c", "b")])
    scheduler.tick()

    summary = scheduler.summarize()

    assert summary.in_flight == ("a",)
    assert [(chain.task_id, chain.outstanding) for chain in summary.blocked_chains] == [
        ("b", ("a",)),
        ("c", ("a", "b")),
    ]
    assert not summary.drained


def test_ticking_after_drain_is_a_no_op() -> None:
    scheduler, runtime, durable = make_scheduler()
    scheduler.submit([descriptor("a")])
    scheduler.tick()
    runtime.complete("a", "done")
    drained = scheduler.tick()
    writes = durable.writes

    again = scheduler.tick()
    once_more = scheduler.tick()

    assert drained.drained
    assert again == once_more
    assert again.tick == drained.tick == scheduler.tick_count == 2
    assert again.counts == drained.counts
    assert not again.changed
    assert durable.writes == writes


def test_tick_without_dispatch_records_outcomes_only() -> None:
    scheduler, runtime, _ = make_scheduler()
    scheduler.submit([descriptor("a"), descriptor("b", "a"), descriptor("c")])
    scheduler.set_concurrency_limit(1)
    scheduler.tick()
    runtime.complete("a", 1)

    summary = scheduler.tick(dispatch=False)

    assert summary.completed == ("a",)
    assert summary.dispatched == ()
    assert runtime.started_ids() == ["a"]
    assert statuses(scheduler, ["b", "c"]) == {"b": "blocked", "c": "ready"}
