"""Control-plane public API."""

from dag_orchestrator.control_plane.graph_store import TaskGraphStore
from dag_orchestrator.control_plane.results import ResultStore, build_injected_spec
from dag_orchestrator.control_plane.scheduler import (
    BootstrapReport,
    SchedulerLoop,
    TickSummary,
    TransitionListener,
)
from dag_orchestrator.control_plane.status import (
    BlockedChain,
    SchedulerHealth,
    StatusAggregator,
    StatusSummary,
)
from dag_orchestrator.control_plane.watchdog import RunningTaskWatchdog

__all__ = [
    "BlockedChain",
    "BootstrapReport",
    "ResultStore",
    "RunningTaskWatchdog",
    "SchedulerHealth",
    "SchedulerLoop",
    "StatusAggregator",
    "StatusSummary",
    "TaskGraphStore",
    "TickSummary",
    "TransitionListener",
    "build_injected_spec",
]
