"""
workflow-orchestrator - config defaults, schema and validation.

File: src/workflow_orchestrator/config/schema.py

Every section is described by a table of ``_Rule`` entries. One walker applies
the table to a full config (all fields required) or to a profile overlay (any
subset of fields), then runs the cross-field checks registered for the section.
Issues carry a dotted field path so callers can point at the exact setting.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict, Union

from workflow_orchestrator.constants import CONFIG_SCHEMA_VERSION, MAX_COMPLEXITY, MIN_COMPLEXITY

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("economy", "balanced", "premium")

BUDGET_POLICIES: Final[tuple[str, ...]] = ("economy", "balanced", "premium", "performance")
PERSISTENCE_BACKENDS: Final[tuple[str, ...]] = ("none", "memory", "file", "sqlite")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_RE: Final[re.Pattern[str]] = re.compile(r"[a-z][a-z0-9_-]*")

# Resolved against the directory holding workflow.toml.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("planning", "executor_catalog"),
    ("persistence", "path"),
    ("observability", "log_dir"),
)

_SECTIONS: Final[tuple[str, ...]] = (
    "meta",
    "analysis",
    "planning",
    "safety",
    "budget",
    "scheduler",
    "engine",
    "recovery",
    "persistence",
    "observability",
)


class MetaConfig(TypedDict):
    schema_version: int


class AnalysisConfig(TypedDict):
    thresholds: dict[str, int]
    weights: dict[str, float]


class PlanningConfig(TypedDict):
    executor_catalog: str | None
    compose_hybrids: bool


class SafetyConfig(TypedDict):
    max_depth: int
    max_agents_per_parent: int
    max_total_agents: int
    rate_window_ms: int
    max_creations_per_window: int
    timestamp_retention_ms: int


class BudgetConfig(TypedDict):
    total: float | None
    policy: Literal["economy", "balanced", "premium", "performance"]
    warning_ratio: float
    critical_ratio: float


class SchedulerConfig(TypedDict):
    alpha: float
    beta: float
    gamma: float


class EngineSettings(TypedDict):
    max_concurrency: int | None
    node_timeout_seconds: float
    checkpoint_each_level: bool


class RecoveryConfig(TypedDict):
    max_retries: int
    base_delay_seconds: float
    max_delay_seconds: float
    timeout_multiplier: float


class PersistenceConfig(TypedDict):
    backend: Literal["none", "memory", "file", "sqlite"]
    path: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_events: bool
    event_buffer_size: int


class ProfileOverlay(TypedDict, total=False):
    analysis: dict[str, Any]
    planning: dict[str, Any]
    safety: dict[str, Any]
    budget: dict[str, Any]
    scheduler: dict[str, Any]
    engine: dict[str, Any]
    recovery: dict[str, Any]
    persistence: dict[str, Any]
    observability: dict[str, Any]


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    analysis: AnalysisConfig
    planning: PlanningConfig
    safety: SafetyConfig
    budget: BudgetConfig
    scheduler: SchedulerConfig
    engine: EngineSettings
    recovery: RecoveryConfig
    persistence: PersistenceConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "analysis": {
        "thresholds": {"simple": 3, "moderate": 6, "complex": 8},
        "weights": {
            "technical": 1.0,
            "integration": 0.8,
            "security": 0.6,
            "coordination": 0.7,
            "timeline": 0.5,
        },
    },
    "planning": {
        "executor_catalog": None,
        "compose_hybrids": True,
    },
    "safety": {
        "max_depth": 3,
        "max_agents_per_parent": 10,
        "max_total_agents": 50,
        "rate_window_ms": 60_000,
        "max_creations_per_window": 10,
        "timestamp_retention_ms": 300_000,
    },
    "budget": {
        "total": None,
        "policy": "balanced",
        "warning_ratio": 0.8,
        "critical_ratio": 0.95,
    },
    "scheduler": {"alpha": 0.3, "beta": 0.4, "gamma": 0.3},
    "engine": {
        "max_concurrency": None,
        "node_timeout_seconds": 300.0,
        "checkpoint_each_level": True,
    },
    "recovery": {
        "max_retries": 3,
        "base_delay_seconds": 2.0,
        "max_delay_seconds": 30.0,
        "timeout_multiplier": 2.0,
    },
    "persistence": {
        "backend": "none",
        "path": "state/",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": True,
        "redact_events": True,
        "event_buffer_size": 512,
    },
    "profiles": {
        "economy": {
            "budget": {"policy": "economy"},
            "recovery": {"max_retries": 1},
        },
        "balanced": {},
        "premium": {
            "budget": {"policy": "premium"},
            "engine": {"node_timeout_seconds": 600.0},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized payload, or ``None`` when any issue was found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


_Issues = list[ConfigValidationIssue]
_Kind = Literal["int", "float", "bool", "path", "choice"]


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: _Kind
    minimum: float | None = None
    maximum: float | None = None
    exclusive: bool = False
    choices: tuple[str, ...] = ()
    nullable: bool = False

    def apply(self, value: object, path: str, issues: _Issues) -> object | None:
        """Return the normalized value, or record an issue and return ``None``."""
        problem: str | None
        if self.kind == "bool":
            problem = None if isinstance(value, bool) else _expected("boolean", value)
        elif self.kind in ("int", "float"):
            value, problem = self._number(value)
        else:
            value, problem = self._text(value)
        if problem is not None:
            _flag(issues, path, problem)
            return None
        return value

    def _number(self, value: object) -> tuple[object, str | None]:
        if isinstance(value, bool):
            return value, _expected("integer" if self.kind == "int" else "number", value)
        if self.kind == "int":
            if not isinstance(value, int):
                return value, _expected("integer", value)
        elif isinstance(value, (int, float)):
            value = float(value)
            if not math.isfinite(value):
                return value, "must be finite"
        else:
            return value, _expected("number", value)

        if self.minimum is not None:
            if self.exclusive and value <= self.minimum:
                return value, f"must be > {self.minimum}"
            if value < self.minimum:
                return value, f"must be >= {self.minimum}"
        if self.maximum is not None and value > self.maximum:
            return value, f"must be <= {self.maximum}"
        return value, None

    def _text(self, value: object) -> tuple[object, str | None]:
        if not isinstance(value, str):
            return value, _expected("string", value)
        text = value.strip()
        if not text:
            return text, "must not be empty"
        if self.kind == "path" and "\x00" in text:
            return text, "must not contain NUL bytes"
        if self.kind == "choice" and text not in self.choices:
            expected = ", ".join(sorted(self.choices))
            return text, f"invalid value {text!r}; expected one of: {expected}"
        return text, None


_Schema = Mapping[str, Union[_Rule, "_Schema"]]

_COUNT = _Rule("int", minimum=1)
_RATE = _Rule("float", minimum=0.0)
_POSITIVE = _Rule("float", minimum=0.0, exclusive=True)
_FLAG = _Rule("bool")
_PATH = _Rule("path")

_SECTION_SCHEMAS: Final[dict[str, _Schema]] = {
    "meta": {"schema_version": _COUNT},
    "analysis": {
        "thresholds": dict.fromkeys(
            ("simple", "moderate", "complex"),
            _Rule("int", minimum=MIN_COMPLEXITY, maximum=MAX_COMPLEXITY),
        ),
        "weights": dict.fromkeys(
            ("technical", "integration", "security", "coordination", "timeline"), _RATE
        ),
    },
    "planning": {
        "executor_catalog": _Rule("path", nullable=True),
        "compose_hybrids": _FLAG,
    },
    "safety": dict.fromkeys(
        (
            "max_depth",
            "max_agents_per_parent",
            "max_total_agents",
            "rate_window_ms",
            "max_creations_per_window",
            "timestamp_retention_ms",
        ),
        _COUNT,
    ),
    "budget": {
        "total": _Rule("float", minimum=0.0, nullable=True),
        "policy": _Rule("choice", choices=BUDGET_POLICIES),
        "warning_ratio": _POSITIVE,
        "critical_ratio": _POSITIVE,
    },
    "scheduler": dict.fromkeys(("alpha", "beta", "gamma"), _RATE),
    "engine": {
        "max_concurrency": _Rule("int", minimum=1, nullable=True),
        "node_timeout_seconds": _POSITIVE,
        "checkpoint_each_level": _FLAG,
    },
    "recovery": {
        "max_retries": _Rule("int", minimum=0),
        "base_delay_seconds": _RATE,
        "max_delay_seconds": _RATE,
        "timeout_multiplier": _Rule("float", minimum=1.0),
    },
    "persistence": {
        "backend": _Rule("choice", choices=PERSISTENCE_BACKENDS),
        "path": _PATH,
    },
    "observability": {
        "log_level": _Rule("choice", choices=LOG_LEVELS),
        "log_dir": _PATH,
        "log_to_stdout": _FLAG,
        "redact_events": _FLAG,
        "event_buffer_size": _COUNT,
    },
}
_OVERLAY_SCHEMA: Final[dict[str, _Schema]] = {
    name: schema for name, schema in _SECTION_SCHEMAS.items() if name != "meta"
}


_CrossCheck = Callable[[dict[str, Any], str, _Issues], None]


def _check_schema_version(values: dict[str, Any], path: str, issues: _Issues) -> None:
    version = values.get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        _flag(issues, _join(path, "schema_version"), migration_guidance(version))


def _check_threshold_order(values: dict[str, Any], path: str, issues: _Issues) -> None:
    bands = [values.get(name) for name in ("simple", "moderate", "complex")]
    if None not in bands and not bands[0] < bands[1] < bands[2]:
        _flag(issues, path, "thresholds must satisfy simple < moderate < complex")


def _check_alert_ratios(values: dict[str, Any], path: str, issues: _Issues) -> None:
    warning, critical = values.get("warning_ratio"), values.get("critical_ratio")
    if warning is not None and critical is not None and not 0 < warning < critical <= 1:
        _flag(issues, path, "alert ratios must satisfy 0 < warning_ratio < critical_ratio <= 1")


def _at_least(field_name: str, floor_name: str) -> _CrossCheck:
    def check(values: dict[str, Any], path: str, issues: _Issues) -> None:
        value, floor = values.get(field_name), values.get(floor_name)
        if value is not None and floor is not None and value < floor:
            _flag(issues, _join(path, field_name), f"must be >= {floor_name}")

    return check


# Keyed by the schema-relative section path, so overlays get the same checks.
_CROSS_CHECKS: Final[dict[str, _CrossCheck]] = {
    "meta": _check_schema_version,
    "analysis.thresholds": _check_threshold_order,
    "budget": _check_alert_ratios,
    "safety": _at_least("timestamp_retention_ms", "rate_window_ms"),
    "recovery": _at_least("max_delay_seconds", "base_delay_seconds"),
}


def default_config() -> OrchestratorConfig:
    """A fresh deep copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade workflow.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the workflow-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; non-mapping values replace."""
    merged = _plain_copy(base)
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _plain_copy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile over ``config`` and validate the result.

    ``None`` or a blank name returns an unvalidated copy of ``config``.
    """
    selected = (profile or "").strip()
    if not selected:
        return merge_config({}, config)

    profiles = config.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", "profiles section is required")]
        )
    overlay = profiles.get(selected)
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {selected!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    issues: _Issues = []
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    profiles_raw = root.pop("profiles", None)
    normalized = _walk(root, _SECTION_SCHEMAS, "", "", issues, partial=False)
    if profiles_raw is not None:
        normalized["profiles"] = _validate_profiles(profiles_raw, issues)

    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected and selected not in normalized.get("profiles", {}):
        _flag(issues, "profiles", f"profile {selected!r} is not defined")

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Return the normalized config or raise ``ConfigValidationError``."""
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _walk(
    payload: Mapping[str, object],
    schema: _Schema,
    path: str,
    scope: str,
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    for key in sorted(payload.keys() - schema.keys()):
        _flag(issues, _join(path, key), "unknown field")
    if not partial:
        for key in sorted(schema.keys() - payload.keys()):
            _flag(issues, _join(path, key), "missing required field")

    out: dict[str, Any] = {}
    for key in sorted(schema.keys() & payload.keys()):
        rule, raw, field_path = schema[key], payload[key], _join(path, key)
        if isinstance(rule, Mapping):
            nested = _as_object(raw, field_path, issues)
            if nested is not None:
                out[key] = _walk(
                    nested, rule, field_path, _join(scope, key), issues, partial=partial
                )
        elif raw is None:
            if rule.nullable:
                out[key] = None
            else:
                _flag(issues, field_path, "must not be null")
        else:
            value = rule.apply(raw, field_path, issues)
            if value is not None:
                out[key] = value

    cross_check = _CROSS_CHECKS.get(scope)
    if cross_check is not None:
        cross_check(out, path, issues)
    return out


def _validate_profiles(raw: object, issues: _Issues) -> dict[str, Any]:
    profiles = _as_object(raw, "profiles", issues)
    if profiles is None:
        return {}
    out: dict[str, Any] = {}
    for name in sorted(profiles):
        path = _join("profiles", name)
        if _PROFILE_NAME_RE.fullmatch(name) is None:
            _flag(issues, path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(profiles[name], path, issues)
        if overlay is not None:
            out[name] = _walk(overlay, _OVERLAY_SCHEMA, path, "", issues, partial=True)
    return out


def _as_object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        _flag(issues, path, _expected("object", value))
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if isinstance(key, str):
            out[key] = item
        else:
            _flag(issues, path, f"object key must be string, got {type(key).__name__}")
    return out


def _flag(issues: _Issues, path: str, message: str) -> None:
    issues.append(ConfigValidationIssue(path, message))


def _expected(kind: str, value: object) -> str:
    return f"expected {kind}, got {type(value).__name__}"


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _plain_copy(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain_copy(value[key]) for key in sorted(value) if isinstance(key, str)}
    if isinstance(value, list):
        return [_plain_copy(item) for item in value]
    return copy.deepcopy(value)


__all__ = [
    "BUDGET_POLICIES",
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "PERSISTENCE_BACKENDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
