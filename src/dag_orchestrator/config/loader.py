"""
dag-orchestrator — runtime config loader.

File: src/dag_orchestrator/config/loader.py

Purpose
- Build the effective config from defaults, ``dagorch.toml``, ``DAGORCH_*`` env vars and CLI overrides.

Functional requirements
- Layers apply in order: defaults, file, profile overlay, env, CLI.
- Env values are coerced to the type of the default they override.
- Path fields are normalized relative to the config file's directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from dag_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "dagorch.toml"
ENV_PREFIX: Final[str] = "DAGORCH_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"
CONFIG_ENV: Final[str] = f"{ENV_PREFIX}CONFIG"

# Sections that env vars never override.
_ENV_EXCLUDED_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})

_BOOLEAN_WORDS: Final[Mapping[str, bool]] = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
}


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective config.

    ``config_path`` defaults to ``$DAGORCH_CONFIG`` and then ``./dagorch.toml``;
    only an explicitly named file is required to exist. ``cli_overrides`` keys
    are dotted paths such as ``"scheduler.max_concurrency"``; ``None`` values
    are ignored so argparse defaults can be passed straight through.
    """
    env = os.environ if environ is None else environ
    named = config_path if config_path is not None else env.get(CONFIG_ENV)
    source = (
        Path(named).expanduser().resolve()
        if named is not None
        else (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    )

    file_layer = _read_toml(source, required=named is not None)
    config = assert_valid_config(merge_config(default_config(), file_layer))

    profile_name = (profile if profile is not None else env.get(PROFILE_ENV, "")).strip()
    if profile_name:
        config = apply_profile_overlay(config, profile_name)

    config = merge_config(config, _unflatten(_env_overrides(config, env)))
    config = merge_config(config, _unflatten(_cli_overrides(cli_overrides or {})))
    return normalize_paths(assert_valid_config(config), base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every path field made absolute against ``base_dir``."""
    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        table = normalized.get(section)
        if isinstance(table, dict) and isinstance(table.get(key), str):
            table[key] = _absolute_posix(table[key], base_dir)
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Deterministic, redacted JSON rendering of ``config``."""
    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_overrides(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for dotted, default in _flatten(config).items():
        if dotted.split(".", 1)[0] in _ENV_EXCLUDED_SECTIONS:
            continue
        env_name = ENV_PREFIX + dotted.replace(".", "_").upper()
        if env_name in env:
            overrides[dotted] = _coerce(env[env_name].strip(), type(default), env_name)
    return overrides


def _cli_overrides(overrides: Mapping[str, object]) -> dict[str, object]:
    dotted: dict[str, object] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if "." not in key.strip("."):
            raise ConfigLoadError(f"CLI override key must be a dotted path: {key!r}")
        dotted[key.strip(".")] = value
    return dotted


def _parse_bool(raw: str) -> bool:
    try:
        return _BOOLEAN_WORDS[raw.lower()]
    except KeyError:
        raise ValueError(raw) from None


_COERCIONS: Final[Mapping[type, tuple[Callable[[str], object], str]]] = {
    bool: (_parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
    int: (int, "an integer"),
    float: (float, "a number"),
}


def _coerce(raw: str, target: type, env_name: str) -> object:
    if target not in _COERCIONS:
        return raw
    parse, expected = _COERCIONS[target]
    try:
        return parse(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{env_name} must be {expected}") from exc


def _flatten(payload: Mapping[str, object], prefix: str = "") -> dict[str, object]:
    flat: dict[str, object] = {}
    for key in sorted(payload):
        value = payload[key]
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def _unflatten(flat: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for dotted in sorted(flat):
        *parents, leaf = dotted.split(".")
        table = nested
        for part in parents:
            table = table.setdefault(part, {})
        table[leaf] = flat[dotted]
    return nested


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    return Path(os.path.normpath(base_dir / candidate)).as_posix()


__all__ = [
    "CONFIG_ENV",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
