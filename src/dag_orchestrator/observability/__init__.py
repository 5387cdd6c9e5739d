"""Per-run structured logging."""

from dag_orchestrator.observability.logging import (
    StructuredLoggingHandle,
    correlation_scope,
    setup_logging,
    shutdown_logging,
)

__all__ = ["StructuredLoggingHandle", "correlation_scope", "setup_logging", "shutdown_logging"]
