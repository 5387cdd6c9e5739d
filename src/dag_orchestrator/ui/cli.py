"""
dag-orchestrator — command-line interface.

File: src/dag_orchestrator/ui/cli.py

Purpose
- Expose submission, ticking, timer-hosted runs, status and cancellation as ``dagorch`` subcommands.

Functional requirements
- Every command loads the effective config and rebuilds scheduler state from the durable snapshot.
- ``--json`` switches any command to one deterministic JSON object on stdout.
- Input and config errors exit 2; a run that ends with failed or skipped tasks exits 1.
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import importlib
import itertools
import json
import signal
import sys
import time
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import Any

import yaml

from dag_orchestrator.config.loader import ConfigLoadError, dump_effective_config, load_config
from dag_orchestrator.config.schema import ConfigValidationError, redact_config
from dag_orchestrator.control_plane.graph_store import TaskGraphStore
from dag_orchestrator.control_plane.scheduler import BootstrapReport, SchedulerLoop, TickSummary
from dag_orchestrator.control_plane.status import SchedulerHealth, StatusAggregator, StatusSummary
from dag_orchestrator.control_plane.watchdog import RunningTaskWatchdog
from dag_orchestrator.domain.errors import StructuralError
from dag_orchestrator.domain.ids import generate_run_id
from dag_orchestrator.domain.models import TaskDescriptor, TaskStatus
from dag_orchestrator.observability.logging import (
    StructuredLoggingHandle,
    correlation_scope,
    setup_logging,
)
from dag_orchestrator.persistence.durable import open_durable_store
from dag_orchestrator.persistence.manager import PersistenceManager
from dag_orchestrator.ui.render import CLIRenderer, create_renderer
from dag_orchestrator.workers.base import WorkerRuntime
from dag_orchestrator.workers.dispatcher import WorkerDispatcher
from dag_orchestrator.workers.subprocess_runtime import (
    RUNTIME_NAME as SUBPROCESS_RUNTIME,
    SubprocessWorkerRuntime,
    terminate_orphan,
)
from dag_orchestrator.workers.thread_runtime import TaskHandler, ThreadPoolWorkerRuntime

_HANDLERS_ATTRIBUTE = "HANDLERS"
_SETTLE_POLL_SECONDS = 0.05


class CLIError(RuntimeError):
    """User-facing CLI error with deterministic exit code."""

    def __init__(self, message: str, *, exit_code: int = 2) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dagorch",
        description=(
            "dag-orchestrator: run dependency-ordered task graphs.\n\n"
            "Common workflows:\n"
            "  dagorch submit tasks.yaml    Add a batch of tasks to the persisted graph\n"
            "  dagorch run                  Tick until every task is terminal\n"
            "  dagorch status               Show counts, blocked chains and health\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to dagorch TOML config (default: ./dagorch.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--max-concurrency",
        dest="max_concurrency",
        type=int,
        default=None,
        help="Override scheduler.max_concurrency.",
    )
    common.add_argument(
        "--handlers",
        default=None,
        help=(
            "Module exposing a HANDLERS mapping of kind -> callable; "
            "selects the threads runtime."
        ),
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit one JSON object instead of text.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    submit_parser = subparsers.add_parser(
        "submit",
        parents=[common],
        help="Submit a YAML or JSON batch of task descriptors.",
    )
    submit_parser.add_argument("tasks_file", help="File holding a list of tasks or {tasks: [...]}.")
    submit_parser.set_defaults(handler=_cmd_submit)

    tick_parser = subparsers.add_parser(
        "tick",
        parents=[common],
        help="Run one tick and wait for the workers it started.",
    )
    tick_parser.set_defaults(handler=_cmd_tick)

    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Tick on a timer until every task is terminal.",
    )
    run_parser.add_argument(
        "--max-ticks",
        type=int,
        default=None,
        help="Stop after this many ticks even if tasks remain.",
    )
    run_parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between ticks (default: scheduler.tick_interval_seconds).",
    )
    run_parser.set_defaults(handler=_cmd_run)

    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Summarize the persisted graph without changing it.",
    )
    status_parser.set_defaults(handler=_cmd_status)

    cancel_parser = subparsers.add_parser(
        "cancel",
        parents=[common],
        help="Stop running tasks recorded in the persisted graph.",
    )
    cancel_parser.add_argument("task_ids", nargs="*", help="Running task ids to cancel.")
    cancel_parser.add_argument(
        "--all",
        dest="cancel_all",
        action="store_true",
        default=False,
        help="Cancel every running task.",
    )
    cancel_parser.set_defaults(handler=_cmd_cancel)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the redacted effective config.",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_submit(args: argparse.Namespace) -> int:
    descriptors = _load_descriptors(Path(args.tasks_file))
    config = _load_effective_config(args)
    with _open_session(args, config) as session:
        try:
            created = session.scheduler.submit(descriptors)
        except StructuralError as exc:
            raise CLIError(str(exc), exit_code=2) from exc
        health = session.scheduler.health

    payload: dict[str, object] = {
        "command": "submit",
        "submitted": [task.id for task in created],
        "statuses": {task.id: task.status.value for task in created},
        "health": health.to_dict(),
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Submitted", len(created))
    renderer.table(
        ["TASK", "KIND", "STATUS", "DEPENDS ON"],
        [
            [task.id, task.kind, renderer.status(task.status.value), ", ".join(task.depends_on)]
            for task in created
        ],
    )
    _render_health(renderer, health)
    renderer.next_steps(["dagorch run", "dagorch status"])
    return 0


def _cmd_tick(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    scheduler_cfg = _section(config, "scheduler")
    interval = float(scheduler_cfg["tick_interval_seconds"]) or _SETTLE_POLL_SECONDS
    with _open_session(args, config) as session:
        scheduler = session.scheduler
        watchdog = _build_watchdog(scheduler, scheduler_cfg)
        ticks = [scheduler.tick()]
        started = set(ticks[0].dispatched)
        # Workers do not outlive this process; record their outcomes before it exits.
        with _signal_latch() as latch:
            while started & set(scheduler.in_flight()):
                if latch.received is not None:
                    print(f"received {latch.received}, shutting down", file=sys.stderr)
                    scheduler.shutdown()
                    break
                if watchdog is not None:
                    watchdog.check()
                time.sleep(interval)
                ticks.append(scheduler.tick(dispatch=False))
        summary = _merge_ticks(ticks)
        health = scheduler.health

    payload: dict[str, object] = {
        "command": "tick",
        "tick": summary.to_dict(),
        "health": health.to_dict(),
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    _render_tick(renderer, summary)
    _render_health(renderer, health)
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    scheduler_cfg = _section(config, "scheduler")
    interval = args.interval
    if interval is None:
        interval = float(scheduler_cfg["tick_interval_seconds"])
    if interval < 0:
        raise CLIError("--interval must be >= 0", exit_code=2)
    max_ticks = args.max_ticks
    if max_ticks is not None and max_ticks <= 0:
        raise CLIError("--max-ticks must be > 0", exit_code=2)

    renderer = _get_renderer(args)
    json_mode = _flag(args, "json")
    with _open_session(args, config) as session:
        scheduler = session.scheduler
        watchdog = _build_watchdog(scheduler, scheduler_cfg)

        if _flag(args, "verbose") and not json_mode:
            scheduler.add_listener(
                lambda record: renderer.text(
                    f"  {record.task_id}: {record.from_status or '-'} -> "
                    f"{renderer.status(record.to_status.value)}"
                )
            )

        with _signal_latch() as latch:

            def before_tick() -> None:
                if latch.received is not None and not scheduler.stopping:
                    print(f"received {latch.received}, shutting down", file=sys.stderr)
                    scheduler.shutdown()
                elif watchdog is not None:
                    watchdog.check()

            final = scheduler.run_until_drained(
                interval_seconds=interval,
                max_ticks=max_ticks,
                before_tick=before_tick,
            )
        summary = scheduler.summarize()
        log_path = session.logging_handle.log_path

    unsuccessful = summary.counts[TaskStatus.FAILED] + summary.counts[TaskStatus.SKIPPED]
    exit_code = 1 if unsuccessful else 0
    payload: dict[str, object] = {
        "command": "run",
        "ticks": final.tick,
        "drained": summary.drained,
        "status": summary.to_dict(),
        "exit_code": exit_code,
    }
    if json_mode:
        _emit_json(payload)
        return exit_code

    renderer.kv("Ticks", final.tick)
    if _flag(args, "verbose"):
        renderer.kv("Log", log_path)
    renderer.kv("Drained", "yes" if summary.drained else "no")
    _render_summary(renderer, summary)
    if not summary.drained:
        renderer.next_steps(["dagorch run", "dagorch status"])
    return exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    manager = _persistence_manager(config)
    snapshot = manager.load()
    if snapshot is None:
        store = TaskGraphStore()
    else:
        store = TaskGraphStore.restore(snapshot.tasks)
    summary = StatusAggregator(_PersistedView(store)).summarize()

    payload: dict[str, object] = {
        "command": "status",
        "snapshot": manager.store.describe(),
        "status": summary.to_dict(),
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Snapshot", manager.store.describe())
    if snapshot is None:
        renderer.text("No tasks have been submitted.")
        renderer.next_steps(["dagorch submit tasks.yaml"])
        return 0
    _render_summary(renderer, summary)
    if _flag(args, "verbose"):
        renderer.table(
            ["TASK", "KIND", "STATUS", "ERROR"],
            [
                [
                    task.id,
                    task.kind,
                    renderer.status(task.status.value),
                    "" if task.error is None else f"{task.error.kind}: {task.error.message}",
                ]
                for task in store.tasks()
            ],
            title="Tasks:",
        )
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    requested = tuple(dict.fromkeys(args.task_ids))
    cancel_all = _flag(args, "cancel_all")
    if cancel_all == bool(requested):
        raise CLIError("pass task ids or --all, not both or neither", exit_code=2)

    config = _load_effective_config(args)
    manager = _persistence_manager(config)
    snapshot = manager.load()
    running = {
        task.id: task
        for task in (snapshot.tasks if snapshot is not None else ())
        if task.status is TaskStatus.RUNNING
    }
    if not cancel_all:
        missing = [task_id for task_id in requested if task_id not in running]
        if missing:
            raise CLIError(
                f"not running in the persisted graph: {', '.join(missing)}", exit_code=2
            )
    targets = tuple(running) if cancel_all else requested

    terminated: list[str] = []
    for task_id in targets:
        handle = running[task_id].worker_handle
        if handle is not None and handle.runtime == SUBPROCESS_RUNTIME and terminate_orphan(
            handle.ref
        ):
            terminated.append(task_id)

    with _open_session(args, config, cancelled=targets) as session:
        report = session.report

    cancelled = sorted(set(targets) & set(report.interrupted))
    interrupted = sorted(set(report.interrupted) - set(targets))
    payload: dict[str, object] = {
        "command": "cancel",
        "cancelled": cancelled,
        "terminated": sorted(terminated),
        "interrupted": interrupted,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    if not cancelled:
        renderer.text("No running tasks to cancel.")
    else:
        renderer.kv("Cancelled", ", ".join(cancelled))
    if terminated:
        renderer.kv("Worker processes signalled", ", ".join(sorted(terminated)))
    if interrupted:
        renderer.warning(f"interrupted by restart: {', '.join(interrupted)}")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "config",
                "active_profile": profile,
                "config": redact_config(config),
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Session wiring
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _Session:
    scheduler: SchedulerLoop
    report: BootstrapReport
    logging_handle: StructuredLoggingHandle


class _PersistedView:
    """Status source over a restored store; nothing is live in this process."""

    __slots__ = ("_store",)

    def __init__(self, store: TaskGraphStore) -> None:
        self._store = store

    @property
    def store(self) -> TaskGraphStore:
        return self._store

    @property
    def health(self) -> SchedulerHealth:
        return SchedulerHealth()

    def in_flight(self) -> tuple[str, ...]:
        return tuple(
            sorted(
                task.id
                for task in self._store.tasks_with_status(TaskStatus.RUNNING)
                if task.worker_handle is not None
            )
        )


@contextlib.contextmanager
def _open_session(
    args: argparse.Namespace,
    config: Mapping[str, Any],
    *,
    cancelled: Sequence[str] = (),
) -> Iterator[_Session]:
    runtime = _build_runtime(args, config)
    run_id = generate_run_id()
    handle = setup_logging(_section(config, "observability"), run_id=run_id)
    try:
        with correlation_scope(run_id=run_id):
            scheduler = build_scheduler(config, runtime)
            report = scheduler.bootstrap(cancelled=cancelled)
            yield _Session(
                scheduler=scheduler, report=report, logging_handle=handle
            )
    finally:
        close = getattr(runtime, "close", None)
        if callable(close):
            close()
        handle.shutdown()


def build_scheduler(config: Mapping[str, Any], runtime: WorkerRuntime) -> SchedulerLoop:
    """Wire a scheduler to ``runtime`` and the configured durable store."""

    scheduler_cfg = _section(config, "scheduler")
    dispatcher = WorkerDispatcher(
        runtime, start_warn_seconds=float(scheduler_cfg["start_warn_seconds"])
    )
    return SchedulerLoop(
        dispatcher,
        persistence=_persistence_manager(config),
        max_concurrency=int(scheduler_cfg["max_concurrency"]),
        persistence_failure_threshold=int(scheduler_cfg["persistence_failure_threshold"]),
    )


def _build_watchdog(
    scheduler: SchedulerLoop, scheduler_cfg: Mapping[str, Any]
) -> RunningTaskWatchdog | None:
    timeout_seconds = float(scheduler_cfg["task_timeout_seconds"])
    if timeout_seconds <= 0:
        return None
    return RunningTaskWatchdog(scheduler, timeout_seconds=timeout_seconds)


def _merge_ticks(ticks: Sequence[TickSummary]) -> TickSummary:
    """One summary for a dispatching tick and the ticks that settled it."""
    last = ticks[-1]
    return dataclasses.replace(
        last,
        dispatched=tuple(itertools.chain.from_iterable(t.dispatched for t in ticks)),
        completed=tuple(itertools.chain.from_iterable(t.completed for t in ticks)),
        failed=tuple(itertools.chain.from_iterable(t.failed for t in ticks)),
        skipped=tuple(itertools.chain.from_iterable(t.skipped for t in ticks)),
        persisted=any(t.persisted for t in ticks),
    )


def _persistence_manager(config: Mapping[str, Any]) -> PersistenceManager:
    persistence_cfg = _section(config, "persistence")
    try:
        store = open_durable_store(
            str(persistence_cfg["backend"]), persistence_cfg.get("path")
        )
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    return PersistenceManager(store)


def _build_runtime(args: argparse.Namespace, config: Mapping[str, Any]) -> WorkerRuntime:
    workers_cfg = _section(config, "workers")
    handlers_module = _optional_str(getattr(args, "handlers", None))
    if handlers_module is None and workers_cfg["runtime"] == SUBPROCESS_RUNTIME:
        return SubprocessWorkerRuntime()
    handlers = _import_handlers(handlers_module) if handlers_module is not None else {}
    return ThreadPoolWorkerRuntime(handlers, max_threads=int(workers_cfg["max_threads"]))


def _import_handlers(module_name: str) -> dict[str, TaskHandler]:
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise CLIError(f"cannot import handlers module {module_name!r}: {exc}") from exc
    handlers = getattr(module, _HANDLERS_ATTRIBUTE, None)
    if not isinstance(handlers, Mapping):
        raise CLIError(f"{module_name}.{_HANDLERS_ATTRIBUTE} must be a mapping of kind -> callable")
    resolved: dict[str, TaskHandler] = {}
    for kind, handler in handlers.items():
        if not isinstance(kind, str) or not callable(handler):
            raise CLIError(f"{module_name}.{_HANDLERS_ATTRIBUTE} has a bad entry for {kind!r}")
        resolved[kind] = handler
    return resolved


class _SignalLatch:
    __slots__ = ("received",)

    def __init__(self) -> None:
        self.received: str | None = None


@contextlib.contextmanager
def _signal_latch() -> Iterator[_SignalLatch]:
    """Record SIGINT/SIGTERM for the run loop; previous handlers restored after.

    The handler only records the signal name. Shutdown happens between ticks,
    never from inside a tick the signal interrupted.
    """
    latch = _SignalLatch()

    def _handle(signum: int, frame: FrameType | None) -> None:
        del frame
        latch.received = signal.Signals(signum).name

    previous = {sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield latch
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# ---------------------------------------------------------------------------
# Input loading
# ---------------------------------------------------------------------------


def _load_descriptors(path: Path) -> list[TaskDescriptor]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"unable to read tasks file {path}: {exc}") from exc

    try:
        if path.suffix.lower() == ".json":
            payload = json.loads(text)
        else:
            payload = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise CLIError(f"tasks file {path} is not valid {path.suffix or 'YAML'}: {exc}") from exc

    if isinstance(payload, Mapping) and set(payload) == {"tasks"}:
        payload = payload["tasks"]
    if not isinstance(payload, list):
        raise CLIError(f"tasks file {path} must hold a list of tasks or a 'tasks' list")

    descriptors: list[TaskDescriptor] = []
    for index, entry in enumerate(payload):
        try:
            descriptors.append(TaskDescriptor.from_dict(entry))
        except ValueError as exc:
            raise CLIError(f"{path}: tasks[{index}]: {exc}") from exc
    return descriptors


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _render_tick(renderer: CLIRenderer, summary: TickSummary) -> None:
    renderer.kv("Tick", summary.tick)
    renderer.counts(summary.counts.to_dict())
    for label, ids in (
        ("Dispatched", summary.dispatched),
        ("Completed", summary.completed),
        ("Failed", summary.failed),
        ("Skipped", summary.skipped),
    ):
        if ids:
            renderer.kv(label, ", ".join(ids))
    if summary.drained:
        renderer.text("All tasks are terminal.")


def _render_summary(renderer: CLIRenderer, summary: StatusSummary) -> None:
    renderer.kv("Tasks", summary.counts.total)
    renderer.counts(summary.counts.to_dict())
    if summary.in_flight:
        renderer.kv("In flight", ", ".join(summary.in_flight))
    renderer.table(
        ["TASK", "WAITING ON"],
        [[chain.task_id, ", ".join(chain.outstanding)] for chain in summary.blocked_chains],
        title="Blocked:",
    )
    _render_health(renderer, summary.health)


def _render_health(renderer: CLIRenderer, health: SchedulerHealth) -> None:
    if health.degraded:
        renderer.warning(
            f"persistence degraded after {health.consecutive_persistence_failures} "
            f"consecutive failures: {health.last_persistence_error}"
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    overrides: dict[str, object] = {
        "scheduler.max_concurrency": getattr(args, "max_concurrency", None)
    }
    try:
        return load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = config.get(name)
    if not isinstance(section, Mapping):
        raise CLIError(f"config section [{name}] is missing", exit_code=2)
    return section


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


__all__ = ["CLIError", "build_parser", "build_scheduler", "main", "run_cli"]
