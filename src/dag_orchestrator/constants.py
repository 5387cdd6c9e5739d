"""Stable constants shared across the orchestrator."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
SNAPSHOT_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_SNAPSHOT_FILE: Final[PurePosixPath] = STATE_DIR / "run.json"
LOGS_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Key under which upstream outputs are merged into an injected spec.
INJECTED_RESULTS_KEY: Final[str] = "dependency_results"
# Key wrapping a non-mapping spec when results are injected.
INJECTED_SPEC_KEY: Final[str] = "spec"

DEFAULT_MAX_CONCURRENCY: Final[int] = 4
DEFAULT_TICK_INTERVAL_SECONDS: Final[float] = 0.5
DEFAULT_PERSISTENCE_FAILURE_THRESHOLD: Final[int] = 3
DEFAULT_START_WARN_SECONDS: Final[float] = 2.0

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_MAX_CONCURRENCY",
    "DEFAULT_PERSISTENCE_FAILURE_THRESHOLD",
    "DEFAULT_SNAPSHOT_FILE",
    "DEFAULT_START_WARN_SECONDS",
    "DEFAULT_TICK_INTERVAL_SECONDS",
    "INJECTED_RESULTS_KEY",
    "INJECTED_SPEC_KEY",
    "LOGS_DIR",
    "SNAPSHOT_SCHEMA_VERSION",
    "STATE_DIR",
]
