"""
dag-orchestrator — unit tests for config schema

File: tests/unit/config/test_config_schema.py

Purpose
- Validate structured issue reporting, profile overlays and redaction.
"""

from __future__ import annotations

import pytest

from dag_orchestrator.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def test_defaults_are_valid_and_copied() -> None:
    config = default_config()

    assert validate_config(config).is_valid
    config["scheduler"]["max_concurrency"] = 99
    assert default_config()["scheduler"]["max_concurrency"] == 4
    assert set(BUILTIN_PROFILE_NAMES) <= set(config["profiles"])


def test_every_issue_is_collected_with_its_path() -> None:
    config = default_config()
    broken = merge_config(
        config,
        {
            "scheduler": {"max_concurrency": 0, "tick_interval_seconds": "fast"},
            "persistence": {"backend": "s3"},
            "observability": {"redact_secrets": "yes"},
        },
    )

    result = validate_config(broken)

    assert not result.is_valid
    assert result.config is None
    assert [(issue.path, issue.message) for issue in result.issues] == [
        ("observability.redact_secrets", "expected boolean, got str"),
        ("persistence.backend", "invalid value 's3'; expected one of: file, memory, sqlite"),
        ("scheduler.max_concurrency", "must be >= 1"),
        ("scheduler.tick_interval_seconds", "expected number, got str"),
    ]


def test_missing_sections_and_fields_are_reported() -> None:
    config = default_config()
    del config["workers"]  # type: ignore[misc]
    del config["scheduler"]["start_warn_seconds"]  # type: ignore[misc]

    paths = {issue.path for issue in validate_config(config).issues}

    assert paths == {"workers", "scheduler.start_warn_seconds"}


def test_non_mapping_root_is_rejected() -> None:
    result = validate_config(["not", "a", "mapping"])

    assert [issue.path for issue in result.issues] == ["<root>"]


@pytest.mark.parametrize("value", [float("inf"), float("nan"), True])
def test_numbers_must_be_finite_and_not_boolean(value: object) -> None:
    config = merge_config(default_config(), {"scheduler": {"tick_interval_seconds": value}})

    with pytest.raises(ConfigValidationError, match="scheduler.tick_interval_seconds"):
        assert_valid_config(config)


def test_empty_and_nul_paths_are_rejected() -> None:
    config = merge_config(
        default_config(), {"persistence": {"path": "  "}, "observability": {"log_dir": "a\x00b"}}
    )

    messages = {issue.path: issue.message for issue in validate_config(config).issues}

    assert messages == {
        "observability.log_dir": "must not contain NUL bytes",
        "persistence.path": "must not be empty",
    }


def test_newer_schema_version_asks_for_a_runtime_upgrade() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 2}})

    issues = validate_config(config).issues

    assert issues[0].path == "meta.schema_version"
    assert "upgrade the dag-orchestrator runtime" in issues[0].message
    assert "older than supported" in migration_guidance(0)


def test_profile_overlays_are_partial_and_revalidated() -> None:
    config = merge_config(
        default_config(),
        {"profiles": {"tiny": {"scheduler": {"max_concurrency": 1}, "workers": {"max_threads": 1}}}},
    )

    applied = apply_profile_overlay(assert_valid_config(config), "tiny")

    assert applied["scheduler"]["max_concurrency"] == 1
    assert applied["workers"]["max_threads"] == 1
    assert applied["scheduler"]["tick_interval_seconds"] == 0.5
    assert apply_profile_overlay(config, None) == config


def test_invalid_profile_definitions_are_reported() -> None:
    config = merge_config(
        default_config(),
        {
            "profiles": {
                "Bad Name": {},
                "fast": {"scheduler": {"max_concurrency": -2}, "meta": {}},
            }
        },
    )

    messages = {issue.path: issue.message for issue in validate_config(config).issues}

    assert messages == {
        "profiles.Bad Name": "profile name must match ^[a-z][a-z0-9_-]*$",
        "profiles.fast.meta": "unknown field",
        "profiles.fast.scheduler.max_concurrency": "must be >= 1",
    }


def test_active_profile_must_exist() -> None:
    result = validate_config(default_config(), active_profile="ghost")

    assert [issue.path for issue in result.issues] == ["profiles"]


def test_merge_replaces_scalars_and_lists_but_merges_mappings() -> None:
    base = {"a": {"b": 1, "c": [1, 2]}, "d": 1}

    merged = merge_config(base, {"a": {"c": [3]}, "e": {"f": 2}})

    assert merged == {"a": {"b": 1, "c": [3]}, "d": 1, "e": {"f": 2}}
    assert base == {"a": {"b": 1, "c": [1, 2]}, "d": 1}


def test_redaction_hides_credential_keys() -> None:
    redacted = redact_config(
        {"workers": {"env": [{"API_KEY": "k", "name": "x"}]}, "db_password": "p", "plain": 1}
    )

    assert redacted == {
        "db_password": "<redacted>",
        "plain": 1,
        "workers": {"env": [{"API_KEY": "<redacted>", "name": "x"}]},
    }
    assert redact_config("nope") == {}
