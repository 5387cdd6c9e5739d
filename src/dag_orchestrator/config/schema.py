"""
dag-orchestrator — configuration schema and validation.

File: src/dag_orchestrator/config/schema.py

Purpose
- Authoritative defaults and strict validation for ``dagorch.toml``.

Functional requirements
- Validation returns structured issues (dotted field path + message), never the first error only.
- Profile overlays are validated as partial sections and re-validated once applied.
- Redacted dumps hide anything that looks like a credential.

Non-functional requirements
- Deterministic: identical input yields identical issues and dumps.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from dag_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PERSISTENCE_FAILURE_THRESHOLD,
    DEFAULT_SNAPSHOT_FILE,
    DEFAULT_START_WARN_SECONDS,
    DEFAULT_TICK_INTERVAL_SECONDS,
    LOGS_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("serial", "wide")
PERSISTENCE_BACKENDS: Final[tuple[str, ...]] = ("file", "sqlite", "memory")
WORKER_RUNTIMES: Final[tuple[str, ...]] = ("subprocess", "threads")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")

_PROFILE_NAME_RE: Final[str] = r"^[a-z][a-z0-9_-]*$"
_PROFILE_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(_PROFILE_NAME_RE)
_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passwd",
    "api_key",
    "apikey",
    "private_key",
    "credential",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("persistence", "path"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class SchedulerConfig(TypedDict):
    max_concurrency: int
    tick_interval_seconds: float
    persistence_failure_threshold: int
    task_timeout_seconds: float
    start_warn_seconds: float


class PersistenceConfig(TypedDict):
    backend: Literal["file", "sqlite", "memory"]
    path: str


class WorkersConfig(TypedDict):
    runtime: Literal["subprocess", "threads"]
    max_threads: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    redact_secrets: bool
    log_to_stdout: bool


class ProfileOverlay(TypedDict, total=False):
    scheduler: dict[str, object]
    persistence: dict[str, object]
    workers: dict[str, object]
    observability: dict[str, object]


class DagOrchestratorConfig(TypedDict):
    meta: MetaConfig
    scheduler: SchedulerConfig
    persistence: PersistenceConfig
    workers: WorkersConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[DagOrchestratorConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "scheduler": {
        "max_concurrency": DEFAULT_MAX_CONCURRENCY,
        "tick_interval_seconds": DEFAULT_TICK_INTERVAL_SECONDS,
        "persistence_failure_threshold": DEFAULT_PERSISTENCE_FAILURE_THRESHOLD,
        "task_timeout_seconds": 0.0,
        "start_warn_seconds": DEFAULT_START_WARN_SECONDS,
    },
    "persistence": {
        "backend": "file",
        "path": str(DEFAULT_SNAPSHOT_FILE),
    },
    "workers": {
        "runtime": "subprocess",
        "max_threads": 4,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": f"{LOGS_DIR}/",
        "redact_secrets": True,
        "log_to_stdout": False,
    },
    "profiles": {
        "serial": {"scheduler": {"max_concurrency": 1}},
        "wide": {"scheduler": {"max_concurrency": 32}, "workers": {"max_threads": 32}},
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One problem found in a config, addressed by dotted path."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised by :func:`assert_valid_config`; ``issues`` lists every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


@dataclass(frozen=True, slots=True)
class _Field:
    kind: Literal["bool", "int", "float", "choice", "path"]
    minimum: float = 0
    choices: tuple[str, ...] = ()


_SECTIONS: Final[Mapping[str, Mapping[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", minimum=1)},
    "observability": {
        "log_dir": _Field("path"),
        "log_format": _Field("choice", choices=LOG_FORMATS),
        "log_level": _Field("choice", choices=LOG_LEVELS),
        "log_to_stdout": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
    "persistence": {
        "backend": _Field("choice", choices=PERSISTENCE_BACKENDS),
        "path": _Field("path"),
    },
    "scheduler": {
        "max_concurrency": _Field("int", minimum=1),
        "persistence_failure_threshold": _Field("int", minimum=1),
        "start_warn_seconds": _Field("float"),
        "task_timeout_seconds": _Field("float"),
        "tick_interval_seconds": _Field("float"),
    },
    "workers": {
        "max_threads": _Field("int", minimum=1),
        "runtime": _Field("choice", choices=WORKER_RUNTIMES),
    },
}
# Sections a profile may override.
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = ("observability", "persistence", "scheduler", "workers")

_Issues = list[ConfigValidationIssue]


def default_config() -> DagOrchestratorConfig:
    """Return a deep copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the dag-orchestrator runtime"
        )
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "rewrite dagorch.toml for the current schema"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; scalars and lists replace."""
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping):
            merged[key] = merge_config(current if isinstance(current, dict) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply the named profile overlay and re-validate the result."""
    selected = (profile or "").strip()
    if not selected:
        return merge_config({}, config)

    profiles = config.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError([_undefined_profile(selected)])
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay))


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate a full config and collect every issue with its dotted path.

    Issues come out in a stable order: unknown root keys, then each section
    alphabetically, then the schema version check, then profiles.
    """
    if not isinstance(config, Mapping):
        issue = ConfigValidationIssue("<root>", f"expected object, got {type(config).__name__}")
        return ConfigValidationResult(config=None, issues=(issue,))

    issues: _Issues = []
    _flag_unknown_keys(config, {*_SECTIONS, "profiles"}, "", issues)

    validated: dict[str, Any] = {}
    for section, fields in _SECTIONS.items():
        if config.get(section) is None:
            issues.append(ConfigValidationIssue(section, "missing required section"))
        else:
            validated[section] = _check_section(config[section], fields, section, issues)

    version = validated.get("meta", {}).get("schema_version")
    if isinstance(version, int) and version != ConfigSchemaVersion:
        issues.append(ConfigValidationIssue("meta.schema_version", migration_guidance(version)))

    profiles = config.get("profiles", {})
    if isinstance(profiles, Mapping):
        validated["profiles"] = _check_profiles(profiles, issues)
    else:
        issues.append(
            ConfigValidationIssue("profiles", f"expected object, got {type(profiles).__name__}")
        )

    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected and selected not in validated.get("profiles", {}):
        issues.append(_undefined_profile(selected))

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=validated, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a key-sorted copy with credential-looking values replaced."""
    if not isinstance(config, Mapping):
        return {}
    return _redacted_mapping(config)


def _check_section(
    raw: object,
    fields: Mapping[str, _Field],
    path: str,
    issues: _Issues,
    *,
    partial: bool = False,
) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(raw).__name__}"))
        return {}
    _flag_unknown_keys(raw, set(fields), path, issues)

    checked: dict[str, Any] = {}
    for key, spec in fields.items():
        field_path = f"{path}.{key}"
        if key not in raw:
            if not partial:
                issues.append(ConfigValidationIssue(field_path, "missing required field"))
            continue
        value, problem = _check_value(spec, raw[key])
        if problem is not None:
            issues.append(ConfigValidationIssue(field_path, problem))
        else:
            checked[key] = value
    return checked


def _check_value(spec: _Field, value: object) -> tuple[object, str | None]:
    """Return ``(normalized value, None)`` or ``(None, problem)``."""
    found = type(value).__name__
    if spec.kind == "bool":
        if isinstance(value, bool):
            return value, None
        return None, f"expected boolean, got {found}"

    if spec.kind in ("int", "float"):
        expected = (int,) if spec.kind == "int" else (int, float)
        if isinstance(value, bool) or not isinstance(value, expected):
            noun = "integer" if spec.kind == "int" else "number"
            return None, f"expected {noun}, got {found}"
        number = value if spec.kind == "int" else float(value)
        if not math.isfinite(number):
            return None, "must be finite"
        if number < spec.minimum:
            return None, f"must be >= {spec.minimum:g}"
        return number, None

    if not isinstance(value, str):
        return None, f"expected string, got {found}"
    text = value.strip()
    if not text:
        return None, "must not be empty"
    if spec.kind == "choice" and text not in spec.choices:
        allowed = ", ".join(sorted(spec.choices))
        return None, f"invalid value {text!r}; expected one of: {allowed}"
    if spec.kind == "path" and "\x00" in text:
        return None, "must not contain NUL bytes"
    return text, None


def _check_profiles(profiles: Mapping[object, object], issues: _Issues) -> dict[str, Any]:
    checked: dict[str, Any] = {}
    for name in sorted(profiles, key=str):
        path = f"profiles.{name}"
        overlay = profiles[name]
        if not isinstance(name, str) or not _PROFILE_NAME_PATTERN.fullmatch(name):
            message = f"profile name must match {_PROFILE_NAME_RE}"
            issues.append(ConfigValidationIssue(path, message))
        elif not isinstance(overlay, Mapping):
            issues.append(ConfigValidationIssue(path, "profile overlay must be an object"))
        else:
            _flag_unknown_keys(overlay, set(_OVERLAY_SECTIONS), path, issues)
            checked[name] = {
                section: _check_section(
                    overlay[section], _SECTIONS[section], f"{path}.{section}", issues, partial=True
                )
                for section in _OVERLAY_SECTIONS
                if section in overlay
            }
    return checked


def _flag_unknown_keys(
    payload: Mapping[object, object], known: set[str], path: str, issues: _Issues
) -> None:
    for key in sorted(payload, key=str):
        if key in known:
            continue
        key_path = f"{path}.{key}" if path else str(key)
        message = (
            "embedded secret values are forbidden" if _is_secret_key(str(key)) else "unknown field"
        )
        issues.append(ConfigValidationIssue(key_path, message))


def _undefined_profile(name: str) -> ConfigValidationIssue:
    return ConfigValidationIssue("profiles", f"profile {name!r} is not defined")


def _is_secret_key(key: str) -> bool:
    normalized = key.lower().replace("-", "_")
    return any(term in normalized for term in _SENSITIVE_KEY_TERMS)


def _redacted_mapping(payload: Mapping[object, object]) -> dict[str, Any]:
    return {
        str(key): "<redacted>" if _is_secret_key(str(key)) else _redacted(payload[key])
        for key in sorted(payload, key=str)
    }


def _redacted(value: object) -> object:
    if isinstance(value, Mapping):
        return _redacted_mapping(value)
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DagOrchestratorConfig",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PERSISTENCE_BACKENDS",
    "ProfileOverlay",
    "WORKER_RUNTIMES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
