"""Configuration: ``dagorch.toml`` loading, env/CLI overrides, strict validation."""

from dag_orchestrator.config.loader import ConfigLoadError, dump_effective_config, load_config
from dag_orchestrator.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    default_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "default_config",
    "dump_effective_config",
    "load_config",
    "validate_config",
]
