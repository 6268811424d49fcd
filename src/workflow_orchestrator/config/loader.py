"""
workflow-orchestrator - runtime config loader.

File: src/workflow_orchestrator/config/loader.py

Purpose
- Build the effective orchestrator config from layered sources.

Layers, lowest precedence first
- built-in defaults
- ``workflow.toml`` (explicit path or the current directory)
- the selected profile overlay
- ``WORKFLOW_*`` environment variables, typed from the field they target
- dotted CLI overrides such as ``{"engine.max_concurrency": 4}``

Every layer is validated after merging; relative path fields are resolved
against the directory of the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from workflow_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "workflow.toml"
ENV_PREFIX: Final[str] = "WORKFLOW_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_UNSET: Final[frozenset[str]] = frozenset({"", "none", "null"})
_UNBOUND_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class ConfigLayer:
    """One named source of config values, in the order it was applied."""

    name: str
    values: Mapping[str, Any]


def _parse_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigLoadError("must be an integer") from exc


def _parse_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigLoadError("must be a number") from exc


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigLoadError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _parse_str(raw: str) -> str:
    return raw


_Parser = Callable[[str], object]


@dataclass(frozen=True, slots=True)
class _EnvField:
    path: tuple[str, ...]
    parse: _Parser
    nullable: bool = False

    def coerce(self, env_name: str, raw: str) -> object:
        value = raw.strip()
        if self.nullable and value.lower() in _UNSET:
            return None
        try:
            return self.parse(value)
        except ConfigLoadError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(self.path)} {exc}") from exc


# Defaults of None carry no type, so these fields are declared explicitly.
_NULLABLE_FIELDS: Final[tuple[_EnvField, ...]] = (
    _EnvField(("budget", "total"), _parse_float, nullable=True),
    _EnvField(("engine", "max_concurrency"), _parse_int, nullable=True),
    _EnvField(("planning", "executor_catalog"), _parse_str, nullable=True),
)


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with deterministic precedence: CLI > env > file > defaults."""
    config, _ = load_config_layers(
        config_path, profile=profile, cli_overrides=cli_overrides, environ=environ
    )
    return config


def load_config_layers(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[dict[str, Any], tuple[ConfigLayer, ...]]:
    """Like ``load_config`` but also return the non-empty layers that were applied."""
    source = _config_file_path(config_path)
    env = dict(os.environ) if environ is None else dict(environ)
    overrides = dict(cli_overrides or {})
    selected = _selected_profile(profile, overrides, env)

    layers: list[ConfigLayer] = []
    file_values = _read_toml(source, required=config_path is not None)
    if file_values:
        layers.append(ConfigLayer(f"file:{source}", file_values))
    config = assert_valid_config(merge_config(default_config(), file_values))

    if selected is not None:
        before = config
        config = apply_profile_overlay(config, selected)
        if config != before:
            layers.append(ConfigLayer(f"profile:{selected}", config["profiles"][selected]))

    env_values = _environment_layer(config, env)
    if env_values:
        layers.append(ConfigLayer("env", env_values))
    cli_values = _cli_layer(overrides)
    if cli_values:
        layers.append(ConfigLayer("cli", cli_values))

    config = merge_config(merge_config(config, env_values), cli_values)
    config = assert_valid_config(config, active_profile=selected)
    config = normalize_paths(config, base_dir=source.parent)
    return assert_valid_config(config, active_profile=selected), tuple(layers)


def load_config_file(path: str | Path) -> dict[str, Any]:
    return load_config(path)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative path fields against ``base_dir``; absolute paths are only normalized."""
    resolved = merge_config({}, config)
    for field_path in PATH_FIELDS:
        *parents, leaf = field_path
        section: object = resolved
        for part in parents:
            section = section.get(part) if isinstance(section, dict) else None
        if isinstance(section, dict) and isinstance(section.get(leaf), str):
            section[leaf] = _resolve_path(section[leaf], base_dir)
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Deterministic JSON dump of the effective config."""
    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _config_file_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _selected_profile(
    explicit: str | None,
    cli_overrides: Mapping[str, object],
    environ: Mapping[str, str],
) -> str | None:
    candidate: object
    if explicit is not None:
        candidate = explicit
    elif "profile" in cli_overrides and cli_overrides["profile"] is not None:
        candidate = cli_overrides["profile"]
        if not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    else:
        candidate = environ.get(PROFILE_ENV)
    if not isinstance(candidate, str):
        return None
    return candidate.strip() or None


def _environment_layer(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    fields = _env_fields(config)
    layer: dict[str, Any] = {}
    for env_name in sorted(fields.keys() & environ.keys()):
        env_field = fields[env_name]
        _assign(layer, env_field.path, env_field.coerce(env_name, environ[env_name]))
    return layer


def _env_fields(config: Mapping[str, object]) -> dict[str, _EnvField]:
    """Map every scalar config field to its ``WORKFLOW_*`` variable."""
    parsers: dict[type, _Parser] = {
        bool: _parse_bool,
        int: _parse_int,
        float: _parse_float,
        str: _parse_str,
    }
    fields: dict[str, _EnvField] = {}
    pending: list[tuple[tuple[str, ...], Mapping[str, object]]] = [((), config)]
    while pending:
        prefix, section = pending.pop()
        for key, value in section.items():
            path = (*prefix, key)
            if path[0] in _UNBOUND_SECTIONS:
                continue
            if isinstance(value, Mapping):
                pending.append((path, value))
            elif type(value) in parsers:
                fields[env_name_for_path(path)] = _EnvField(path, parsers[type(value)])
    for nullable in _NULLABLE_FIELDS:
        fields[env_name_for_path(nullable.path)] = nullable
    return fields


def _cli_layer(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        if key == "profile":
            continue
        value = cli_overrides[key]
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    *parents, leaf = path
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[leaf] = value


def _resolve_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLayer",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "load_config_file",
    "load_config_layers",
    "normalize_paths",
]
