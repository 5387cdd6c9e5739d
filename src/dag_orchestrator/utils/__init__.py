"""Small helpers shared across packages."""

from dag_orchestrator.utils.fs import atomic_write, ensure_parent

__all__ = ["atomic_write", "ensure_parent"]
