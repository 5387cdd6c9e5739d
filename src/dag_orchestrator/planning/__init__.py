"""Dependency graph utilities."""

from dag_orchestrator.planning.task_graph import TaskGraph

__all__ = ["TaskGraph"]
