"""Configuration loader for ghoslerctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/ghoslerctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``GHOSLERCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GHOSLERCTL_SETTLE_DELAY=5
    export GHOSLERCTL_BACKUPS__COMPRESSION=gzip

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load ghoslerctl configuration. Install with "
        "`pip install ghoslerctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "GHOSLERCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ReleaseConfig:
    """Where Ghosler source archives and release metadata live."""

    api_url: str = "https://api.github.com/repos/itznotabug/ghosler/releases/latest"
    tag_url: str = "https://github.com/itznotabug/ghosler/archive/refs/tags/{version}.zip"
    branch_url: str = "https://github.com/ItzNotABug/ghosler/archive/refs/heads/{branch}.zip"
    timeout: float = 30.0


@dataclass(frozen=True)
class BackupConfig:
    """Backup compression defaults."""

    compression: str = "auto"
    level: int | None = None


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ghoslerctl."""

    config_file: Path
    logs_dir: Path
    base_name: str
    legacy_name: str
    marker: str
    default_port: int
    settle_delay: float
    pm2_bin: str
    npm_bin: str
    release: ReleaseConfig
    backups: BackupConfig


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/ghoslerctl/config.yml",
    "logs_dir": "~/.local/state/ghoslerctl/logs",
    "base_name": "ghosler-app",
    "legacy_name": "ghosler-app",
    "marker": "--ghoslerctl-managed",
    "default_port": 2369,
    "settle_delay": 10.0,
    "pm2_bin": "pm2",
    "npm_bin": "npm",
    "release": {
        "api_url": ReleaseConfig.api_url,
        "tag_url": ReleaseConfig.tag_url,
        "branch_url": ReleaseConfig.branch_url,
        "timeout": 30.0,
    },
    "backups": {
        "compression": "auto",
        "level": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BACKUP_COMPRESSION = {"auto", "zstd", "gzip", "none"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for key in ("base_name", "legacy_name", "marker", "pm2_bin", "npm_bin"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{key} must be a non-empty string.")

    release = _as_dict(raw.get("release"), "release")
    unknown = set(release.keys()) - {"api_url", "tag_url", "branch_url", "timeout"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown release configuration keys: {joined}.")
    if "{version}" not in str(release.get("tag_url", "")):
        raise ConfigError("release.tag_url must contain a '{version}' placeholder.")
    if "{branch}" not in str(release.get("branch_url", "")):
        raise ConfigError("release.branch_url must contain a '{branch}' placeholder.")

    backups = _as_dict(raw.get("backups"), "backups")
    unknown = set(backups.keys()) - {"compression", "level"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown backups configuration keys: {joined}.")
    algorithm = str(backups.get("compression", "auto"))
    if algorithm not in ALLOWED_BACKUP_COMPRESSION:
        allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(f"Unsupported backup compression '{algorithm}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    default_port = _expect_int(raw.get("default_port"), "default_port", default=2369)
    if not 0 < default_port < 65536:
        raise ConfigError(f"default_port must be a valid TCP port. Got {default_port}.")

    settle_delay = _expect_float(raw.get("settle_delay"), "settle_delay", default=10.0)
    if settle_delay < 0:
        raise ConfigError("settle_delay must not be negative.")

    release_mapping = _as_dict(raw.get("release"), "release")
    timeout = _expect_float(release_mapping.get("timeout"), "release.timeout", default=30.0)
    if timeout <= 0:
        raise ConfigError("release.timeout must be greater than zero.")
    release = ReleaseConfig(
        api_url=str(release_mapping.get("api_url", ReleaseConfig.api_url)),
        tag_url=str(release_mapping.get("tag_url", ReleaseConfig.tag_url)),
        branch_url=str(release_mapping.get("branch_url", ReleaseConfig.branch_url)),
        timeout=timeout,
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    level_raw = backups_mapping.get("level")
    level: int | None = None
    if level_raw is not None:
        level = _expect_int(level_raw, "backups.level", default=1)
        if level <= 0:
            raise ConfigError("backups.level must be greater than zero when specified.")
    backups = BackupConfig(
        compression=str(backups_mapping.get("compression", "auto")),
        level=level,
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        base_name=str(raw["base_name"]).strip(),
        legacy_name=str(raw["legacy_name"]).strip(),
        marker=str(raw["marker"]).strip(),
        default_port=default_port,
        settle_delay=settle_delay,
        pm2_bin=str(raw["pm2_bin"]),
        npm_bin=str(raw["npm_bin"]),
        release=release,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ALLOWED_BACKUP_COMPRESSION",
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "ReleaseConfig",
    "load_config",
]
