"""Configuration loading for procdaemon.

The YAML file has three optional sections::

    defaults:            # settings shared by every daemon
      sleep: 5
      memory_limit: 256MB
    daemons:             # per-daemon overrides, keyed by identity
      reports.export:
        multi_instance: true
        max_child_processes: 4
    watch:               # daemons supervised by the built-in watcher
      - name: reports.export
        enabled: true
      - name: mailer
        enabled: false
        hard_kill: true
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from procdaemon.core.pidfile import process_name
from procdaemon.models import (
    DEFAULT_BASE_DIR,
    DaemonSettings,
    Job,
    ProcDaemonConfig,
    parse_watch_list,
)

DEFAULT_CONFIG_FILE = DEFAULT_BASE_DIR / "procdaemon.yaml"
CONFIG_ENV_VAR = "PROCDAEMON_CONFIG"


class ConfigError(Exception):
    """Configuration error."""

    pass


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1), "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)
    return os.path.expandvars(value)


def expand_path(path: str | Path | None) -> Path | None:
    """Expand a path with ~ and environment variables."""
    if path is None:
        return None
    return Path(expand_env_vars(os.path.expanduser(str(path))))


def resolve_config_path(config_path: Path | None = None) -> Path:
    """Explicit path, else $PROCDAEMON_CONFIG, else the default file."""
    if config_path is not None:
        return config_path
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return expand_path(env_path)
    return DEFAULT_CONFIG_FILE


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> ProcDaemonConfig:
    """Load the procdaemon configuration file."""
    path = resolve_config_path(config_path)

    if not path.exists():
        logger.debug(f"Config file not found at {path}, using defaults")
        return ProcDaemonConfig()

    data = load_yaml_file(path)

    try:
        config = ProcDaemonConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
        return config
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def settings_for(config: ProcDaemonConfig, route: str, **overrides: Any) -> DaemonSettings:
    """Resolve the settings of one daemon.

    Later sources win: config defaults, the daemon's own section, then
    explicit overrides (CLI options). Overrides set to None are ignored.
    """
    name = process_name(route)
    data: dict[str, Any] = dict(config.defaults)
    data.update(config.daemons.get(name, {}))
    data.update({k: v for k, v in overrides.items() if v is not None})

    for key in ("pid_dir", "log_dir"):
        if key in data:
            data[key] = expand_path(data[key])

    try:
        return DaemonSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings for daemon '{name}': {e}") from e


def load_watch_list(config_path: Path | None = None) -> list[Job]:
    """Read the watcher's daemon list straight from the YAML file."""
    path = resolve_config_path(config_path)
    data = load_yaml_file(path)
    return parse_watch_list(data.get("watch"), str(path))


def save_config(config: ProcDaemonConfig, config_path: Path | None = None) -> None:
    """Write a configuration back to YAML."""
    path = resolve_config_path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(
            config.model_dump(mode="json", exclude_defaults=True),
            f,
            default_flow_style=False,
            sort_keys=False,
        )

    logger.info(f"Saved config to {path}")
