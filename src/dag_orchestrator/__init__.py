"""
dag-orchestrator — dependency-aware task graph orchestration.

File: src/dag_orchestrator/__init__.py

Purpose
- Package root. Exposes the version and the handful of names needed to embed the scheduler.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Heavy submodules (CLI, workers) are imported by their own packages, not from here.
"""

from dag_orchestrator.control_plane.scheduler import SchedulerLoop, TickSummary
from dag_orchestrator.domain.models import Task, TaskDescriptor, TaskStatus

__version__ = "0.1.0"

__all__ = ["SchedulerLoop", "Task", "TaskDescriptor", "TaskStatus", "TickSummary", "__version__"]
