"""Unit tests for config schema validation, merging and profile overlays."""

from __future__ import annotations

import pytest

from workflow_orchestrator.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    validate_config,
)


def test_default_config_is_valid_and_independent() -> None:
    first = default_config()
    second = default_config()
    first["safety"]["max_depth"] = 9

    result = validate_config(second)

    assert result.is_valid
    assert result.config is not None
    assert result.config["safety"]["max_depth"] == 3
    assert set(result.config["profiles"]) == set(BUILTIN_PROFILE_NAMES)


def test_merge_config_is_deep_and_leaves_inputs_untouched() -> None:
    base = {"engine": {"max_concurrency": None, "node_timeout_seconds": 300.0}}
    overlay = {"engine": {"max_concurrency": 4}, "budget": {"total": 2.0}}

    merged = merge_config(base, overlay)

    assert merged == {
        "engine": {"max_concurrency": 4, "node_timeout_seconds": 300.0},
        "budget": {"total": 2.0},
    }
    assert base["engine"]["max_concurrency"] is None


@pytest.mark.parametrize(
    ("section", "values", "path", "message"),
    [
        ("safety", {"max_depth": 0}, "safety.max_depth", "must be >= 1"),
        ("safety", {"timestamp_retention_ms": 10}, "safety.timestamp_retention_ms", "must be >="),
        ("budget", {"total": -1.0}, "budget.total", "must be >= 0.0"),
        ("budget", {"warning_ratio": 0.99}, "budget", "alert ratios"),
        ("budget", {"policy": True}, "budget.policy", "expected string"),
        ("recovery", {"timeout_multiplier": 0.5}, "recovery.timeout_multiplier", "must be >="),
        ("recovery", {"base_delay_seconds": 60.0}, "recovery.max_delay_seconds", "must be >="),
        ("engine", {"max_concurrency": 0}, "engine.max_concurrency", "must be >= 1"),
        ("engine", {"node_timeout_seconds": 0}, "engine.node_timeout_seconds", "must be > 0.0"),
        ("persistence", {"backend": "redis"}, "persistence.backend", "invalid value 'redis'"),
        ("observability", {"log_level": "TRACE"}, "observability.log_level", "invalid value"),
        ("analysis", {"thresholds": {"simple": 7}}, "analysis.thresholds", "simple < moderate"),
        ("planning", {"compose_hybrids": "yes"}, "planning.compose_hybrids", "expected boolean"),
    ],
)
def test_invalid_values_report_structured_issues(
    section: str, values: dict[str, object], path: str, message: str
) -> None:
    config = merge_config(default_config(), {section: values})

    result = validate_config(config)

    assert not result.is_valid
    assert any(issue.path == path and message in issue.message for issue in result.issues)


def test_unknown_and_missing_sections_are_reported() -> None:
    config = merge_config(default_config(), {"extras": {"x": 1}})
    del config["engine"]

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    issues = {(issue.path, issue.message) for issue in excinfo.value.issues}
    assert ("extras", "unknown field") in issues
    assert ("engine", "missing required field") in issues
    assert "invalid config:" in str(excinfo.value)


def test_null_is_only_accepted_for_nullable_fields() -> None:
    nullable = merge_config(default_config(), {"budget": {"total": None}})
    assert validate_config(nullable).is_valid

    config = default_config()
    config["recovery"]["max_retries"] = None  # type: ignore[typeddict-item]
    result = validate_config(config)
    assert [(issue.path, issue.message) for issue in result.issues] == [
        ("recovery.max_retries", "must not be null")
    ]


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})

    result = validate_config(config)

    assert [issue.path for issue in result.issues] == ["meta.schema_version"]
    assert "upgrade the workflow-orchestrator runtime" in result.issues[0].message
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_profile_overlays_are_validated_as_partial_sections() -> None:
    config = merge_config(
        default_config(),
        {"profiles": {"fast": {"engine": {"max_concurrency": 16}}}},
    )

    applied = apply_profile_overlay(assert_valid_config(config), "fast")
    assert applied["engine"]["max_concurrency"] == 16
    assert applied["engine"]["node_timeout_seconds"] == 300.0
    assert apply_profile_overlay(config, None) == config

    bad_name = merge_config(default_config(), {"profiles": {"Fast": {}}})
    assert any(issue.path == "profiles.Fast" for issue in validate_config(bad_name).issues)

    bad_section = merge_config(default_config(), {"profiles": {"fast": {"meta": {}}}})
    assert any(
        issue.path == "profiles.fast.meta" and issue.message == "unknown field"
        for issue in validate_config(bad_section).issues
    )

    with pytest.raises(ConfigValidationError, match="profile 'ghost' is not defined"):
        apply_profile_overlay(default_config(), "ghost")


def test_validate_config_rejects_non_mapping_root() -> None:
    result = validate_config(["not", "a", "mapping"])

    assert result.config is None
    assert result.issues[0].path == "<root>"
