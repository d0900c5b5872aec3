"""Project configuration for kest runs.

Loads ``.kest/config.yaml`` and applies environment variable overrides.
Environment variables take precedence over YAML config.

File format:

    active_env: dev
    log_enabled: true
    defaults:
      timeout: 30                 # seconds, default HTTP timeout
      headers:
        Accept: application/json
    environments:
      dev:
        base_url: http://localhost:8080
        variables:
          user: admin

Lookup order (first hit wins):
    1. explicit path (``kest run --config``)
    2. ``.kest/config.yaml`` in the nearest ancestor holding a ``.kest`` dir
    3. ``~/.kest/config.yaml``
    4. built-in defaults

Environment overrides:
    KEST_ENV            active environment
    KEST_HTTP_TIMEOUT   default HTTP timeout in seconds
    KEST_LOG_LEVEL      log level for the CLI (read by kest.cli)

Usage:
    from kest.config import load_settings

    settings = load_settings()
    env = settings.active_environment()
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from kest.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".kest"
CONFIG_FILE_NAME = "config.yaml"
DEFAULT_ENV_NAME = "default"
DEFAULT_TIMEOUT_S = 30.0

ENV_ACTIVE_ENV = "KEST_ENV"
ENV_HTTP_TIMEOUT = "KEST_HTTP_TIMEOUT"
ENV_LOG_LEVEL = "KEST_LOG_LEVEL"


@dataclass
class Environment:
    """One named target environment."""

    name: str = DEFAULT_ENV_NAME
    base_url: str = ""
    variables: Dict[str, str] = field(default_factory=dict)


@dataclass
class Defaults:
    timeout_s: float = DEFAULT_TIMEOUT_S
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class KestSettings:
    """Resolved configuration.

    Attributes:
        active_env: Name of the environment requests run against.
        project_id: Name of the project root directory ("" when unknown).
        project_root: Directory containing ``.kest`` (None when unknown).
        log_enabled: Write a session log under ``.kest/logs``.
        defaults: Default timeout and headers.
        environments: Environments by name.
        source: Config file the settings came from (None for defaults).
    """

    active_env: str = DEFAULT_ENV_NAME
    project_id: str = ""
    project_root: Optional[Path] = None
    log_enabled: bool = False
    defaults: Defaults = field(default_factory=Defaults)
    environments: Dict[str, Environment] = field(default_factory=dict)
    source: Optional[Path] = None

    def active_environment(self) -> Environment:
        return self.environments.get(self.active_env, Environment(name=self.active_env))

    @property
    def log_dir(self) -> Optional[Path]:
        if self.project_root is None:
            return None
        return self.project_root / CONFIG_DIR_NAME / "logs"


# =============================================================================
# Lookup
# =============================================================================


def find_project_root(start: Optional[Path] = None) -> Optional[Path]:
    """Nearest ancestor of `start` (inclusive) holding a ``.kest`` directory."""
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        if (directory / CONFIG_DIR_NAME).is_dir():
            return directory
    return None


def _find_config_file(start: Optional[Path]) -> Optional[Path]:
    root = find_project_root(start)
    if root is not None:
        candidate = root / CONFIG_DIR_NAME / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    home_candidate = Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    if home_candidate.is_file():
        return home_candidate
    return None


# =============================================================================
# Parsing
# =============================================================================


def _string_map(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _parse_timeout(value: Any, where: str) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where} must be a number of seconds, got {value!r}") from exc
    if timeout <= 0:
        raise ConfigError(f"{where} must be positive, got {value!r}")
    return timeout


def settings_from_dict(data: Mapping[str, Any]) -> KestSettings:
    """Build KestSettings from a decoded YAML mapping."""
    settings = KestSettings()
    settings.active_env = str(data.get("active_env") or DEFAULT_ENV_NAME)
    settings.log_enabled = bool(data.get("log_enabled", False))

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ConfigError("defaults must be a mapping")
    if defaults.get("timeout") is not None:
        settings.defaults.timeout_s = _parse_timeout(defaults["timeout"], "defaults.timeout")
    settings.defaults.headers = _string_map(defaults.get("headers"), "defaults.headers")

    environments = data.get("environments") or {}
    if not isinstance(environments, dict):
        raise ConfigError("environments must be a mapping")
    for name, body in environments.items():
        body = body or {}
        if not isinstance(body, dict):
            raise ConfigError(f"environments.{name} must be a mapping")
        settings.environments[str(name)] = Environment(
            name=str(name),
            base_url=str(body.get("base_url") or ""),
            variables=_string_map(body.get("variables"), f"environments.{name}.variables"),
        )
    return settings


def apply_env_overrides(settings: KestSettings, env: Mapping[str, str]) -> KestSettings:
    active = env.get(ENV_ACTIVE_ENV)
    if active:
        settings.active_env = active
    timeout = env.get(ENV_HTTP_TIMEOUT)
    if timeout:
        settings.defaults.timeout_s = _parse_timeout(timeout, ENV_HTTP_TIMEOUT)
    return settings


def load_settings(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    start: Optional[Path] = None,
) -> KestSettings:
    """Load configuration, falling back to defaults when no file exists.

    Args:
        path: Explicit config file. Must exist when given.
        env: Environment mapping for overrides (defaults to os.environ).
        start: Directory to begin the project-root search from.

    Raises:
        ConfigError: The file is missing (explicit path), unreadable, or
            not valid YAML of the expected shape.
    """
    env = os.environ if env is None else env

    if path is not None and not Path(path).is_file():
        raise ConfigError(f"config file not found: {path}")
    config_path = Path(path) if path is not None else _find_config_file(start)

    data: Dict[str, Any] = {}
    if config_path is not None:
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {config_path}: {exc}") from exc
        except OSError as exc:
            raise ConfigError(f"cannot read {config_path}: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        data = loaded or {}
        logger.debug("Loaded config from %s", config_path)
    else:
        logger.debug("No config file found, using defaults")

    settings = settings_from_dict(data)
    settings.source = config_path

    if config_path is not None and config_path.parent.name == CONFIG_DIR_NAME:
        settings.project_root = config_path.parent.parent
    else:
        settings.project_root = find_project_root(start)
    if settings.project_root is not None:
        settings.project_id = settings.project_root.name

    return apply_env_overrides(settings, env)
