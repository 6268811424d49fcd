"""
workflow-orchestrator config package public API.

File: src/workflow_orchestrator/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``workflow.toml`` + ``WORKFLOW_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from workflow_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLayer,
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
    load_config_file,
    load_config_layers,
    normalize_paths,
)
from workflow_orchestrator.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    OrchestratorConfig,
    ProfileOverlay,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLayer",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "load_config_file",
    "load_config_layers",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "validate_config",
]
