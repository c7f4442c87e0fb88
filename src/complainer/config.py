"""
Configuration management for complainer.

This module handles loading and merging configuration from multiple sources:
1. Built-in defaults (lowest priority)
2. Config file (complainer.yaml)
3. Environment variables
4. CLI arguments (highest priority, handled at CLI level)

Environment Variables:
    COMPLAINER_CONFIG: Path to config file (default: ./complainer.yaml)
    COMPLAINER_NAME: Complainer identity used to namespace task labels
    COMPLAINER_DEFAULT: Whether reporters get an implicit default instance
    COMPLAINER_MASTERS: Comma-separated list of Mesos master URLs
    COMPLAINER_UPLOADER: Uploader type (noop, s3)
    COMPLAINER_REPORTERS: Comma-separated list of enabled reporters
    COMPLAINER_LISTEN: Health check listen address (host:port)
    COMPLAINER_INTERVAL: Seconds between polls
    COMPLAINER_LOG_LEVEL: Logging level name
"""

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


# =============================================================================
# Default Configuration
# =============================================================================

DEFAULT_CONFIG = {
    # Identity used as label namespace: complainer_<name>_<reporter>_...
    "name": "default",

    # Route failures without instance labels to the "default" instance
    "implicit_defaults": True,

    # Mesos masters, tried in order until the leader answers
    "masters": [],

    # Health check address, empty disables the HTTP endpoint
    "listen": "",

    "interval_seconds": 5,
    "timeout_seconds": 30,

    # Framework name regexes
    "filter": {
        "allow": [],
        "deny": [],
    },

    "uploader": {
        "type": "noop",
    },

    # Channel name -> settings. "type" defaults to the channel name.
    "reporters": {},

    "logging": {
        "level": "INFO",
        "file": None,
    },
}

DEFAULT_CONFIG_FILENAME = "complainer.yaml"

# Mapping of environment variables to config paths
ENV_VAR_MAP = {
    "COMPLAINER_CONFIG": None,  # Special: path to config file itself
    "COMPLAINER_NAME": "name",
    "COMPLAINER_DEFAULT": "implicit_defaults",
    "COMPLAINER_MASTERS": "masters",
    "COMPLAINER_UPLOADER": "uploader.type",
    "COMPLAINER_REPORTERS": "enabled_reporters",
    "COMPLAINER_LISTEN": "listen",
    "COMPLAINER_INTERVAL": "interval_seconds",
    "COMPLAINER_LOG_LEVEL": "logging.level",
}

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(ValueError):
    """Raised when configuration is invalid."""


# =============================================================================
# Configuration Class
# =============================================================================

class Config:
    """
    Configuration manager for complainer.

    Loads configuration from multiple sources and provides access to settings.
    Configuration precedence (highest to lowest):
    1. Explicit overrides (applied with set())
    2. Environment variables
    3. Config file
    4. Built-in defaults

    Example:
        >>> config = Config()
        >>> config.get("name")
        'default'
        >>> config.get("uploader.type")
        'noop'
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """
        Initialize configuration.

        Args:
            config_path: Explicit path to config file. If None, uses
                $COMPLAINER_CONFIG or ./complainer.yaml.
        """
        if config_path:
            self.config_path = Path(config_path)
        else:
            env_config = os.environ.get("COMPLAINER_CONFIG")
            if env_config:
                self.config_path = Path(env_config)
            else:
                self.config_path = Path.cwd() / DEFAULT_CONFIG_FILENAME

        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load and merge configuration from all sources."""
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            with open(self.config_path, "r") as f:
                file_config = yaml.safe_load(f) or {}
            if not isinstance(file_config, dict):
                raise ConfigError(f"Config file {self.config_path} must contain a mapping.")
            config = _deep_merge(config, file_config)

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to config."""
        for env_var, config_path in ENV_VAR_MAP.items():
            if config_path is None:
                continue

            value = os.environ.get(env_var)
            if value is not None:
                if config_path == "implicit_defaults":
                    value = to_bool(value, True)
                _set_nested(config, config_path, value)

        return config

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by dot-separated key path.

        Example:
            >>> config.get("filter.allow")
            []
            >>> config.get("nonexistent", "fallback")
            'fallback'
        """
        return _get_nested(self._config, key, default)

    def set(self, key: str, value: Any) -> None:
        """Override a configuration value by dot-separated key path."""
        _set_nested(self._config, key, value)

    def get_masters(self) -> List[str]:
        """Get master URLs as a list, accepting a comma-separated string."""
        return split_list(self.get("masters"))

    def get_reporter_settings(self) -> Dict[str, Dict[str, Any]]:
        """
        Get settings of every enabled reporter, keyed by channel name.

        A reporter is enabled unless its section sets ``enabled: false``.
        When ``enabled_reporters`` is set (COMPLAINER_REPORTERS or --reporters)
        only the named channels are kept; a named channel without a section
        gets empty settings. ``${VAR}`` placeholders are resolved.

        Raises:
            ConfigError: If the reporters section is malformed or an
                interpolated environment variable is missing.
        """
        sections = self.get("reporters") or {}
        if not isinstance(sections, dict):
            raise ConfigError("'reporters' must be a mapping of channel name to settings.")

        selected = self.get("enabled_reporters")
        if selected is not None:
            names = split_list(selected)
        else:
            names = [
                name for name, section in sections.items()
                if to_bool((section or {}).get("enabled", True), True)
            ]

        settings: Dict[str, Dict[str, Any]] = {}
        for name in names:
            section = sections.get(name) or {}
            if not isinstance(section, dict):
                raise ConfigError(f"Reporter '{name}' settings must be a mapping.")
            section = interpolate_env(section)
            section.pop("enabled", None)
            settings[name] = section

        return settings

    def get_uploader_settings(self) -> Dict[str, Any]:
        """Get uploader settings with ``${VAR}`` placeholders resolved."""
        section = self.get("uploader") or {}
        if isinstance(section, str):
            section = {"type": section}
        return interpolate_env(dict(section))

    def as_dict(self) -> Dict[str, Any]:
        """Return the full configuration as a dictionary."""
        return copy.deepcopy(self._config)

    def __repr__(self) -> str:
        return f"Config(config_path={self.config_path})"


def init_config(
    path: Optional[Union[str, Path]] = None,
    overwrite: bool = False,
    **kwargs: Any,
) -> Path:
    """
    Write a starter configuration file.

    Args:
        path: Destination path. Defaults to ./complainer.yaml.
        overwrite: If True, overwrite an existing file.
        **kwargs: Configuration values to set (e.g., name="sre").

    Returns:
        Path to created config file.

    Raises:
        FileExistsError: If config file exists and overwrite=False.
    """
    config_path = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_FILENAME

    if config_path.exists() and not overwrite:
        raise FileExistsError(
            f"Config file already exists: {config_path}. "
            "Use overwrite=True to replace."
        )

    config_data = copy.deepcopy(DEFAULT_CONFIG)
    for key, value in kwargs.items():
        if isinstance(value, dict) and isinstance(config_data.get(key), dict):
            config_data[key] = _deep_merge(config_data[key], value)
        else:
            config_data[key] = value

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(config_data, f, default_flow_style=False, sort_keys=False)

    return config_path


# =============================================================================
# Value Helpers
# =============================================================================

def split_list(value: Any) -> List[str]:
    """Normalize a list or comma-separated string into trimmed entries."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = [str(value)]
    return [item.strip() for item in items if item.strip()]


def to_bool(value: Any, default: bool) -> bool:
    """Convert common scalar values to bool with default fallback."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return default


def to_positive_float(value: Any, default: float) -> float:
    """Convert value to positive float with default fallback."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _interpolate_env_string(value: str) -> str:
    """Resolve ${VAR} placeholders from environment variables."""

    def replace(match: re.Match) -> str:
        var_name = match.group(1)
        var_value = os.environ.get(var_name)
        if var_value is None:
            raise ConfigError(
                f"Missing environment variable '{var_name}' required by configuration."
            )
        return var_value

    return _ENV_PATTERN.sub(replace, value)


def interpolate_env(value: Any) -> Any:
    """Recursively resolve ${VAR} placeholders for strings/dicts/lists."""
    if isinstance(value, str):
        return _interpolate_env_string(value)
    if isinstance(value, list):
        return [interpolate_env(item) for item in value]
    if isinstance(value, dict):
        return {str(key): interpolate_env(item) for key, item in value.items()}
    return value


# =============================================================================
# Helper Functions
# =============================================================================

def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries, with override taking precedence.

    Args:
        base: Base dictionary.
        override: Dictionary with values to override.

    Returns:
        Merged dictionary.
    """
    result = copy.deepcopy(base)

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _get_nested(d: Dict[str, Any], key: str, default: Any = None) -> Any:
    """Get a nested dictionary value using dot notation."""
    value: Any = d

    for k in key.split("."):
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return default

    return value


def _set_nested(d: Dict[str, Any], key: str, value: Any) -> None:
    """Set a nested dictionary value using dot notation."""
    keys = key.split(".")

    for k in keys[:-1]:
        if not isinstance(d.get(k), dict):
            d[k] = {}
        d = d[k]

    d[keys[-1]] = value
