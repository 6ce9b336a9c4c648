"""
Layered YAML configuration for txsession.

Layers, lowest precedence first:
- config/default.yaml shipped with the project
- a deployment file passed to Config(config_file=...)
- TXSESSION_* environment variables (and LOG_LEVEL)
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "default.yaml"


def _server_list(value: str) -> Union[str, List[str]]:
    if "," not in value:
        return value
    return [server.strip() for server in value.split(",") if server.strip()]


# Environment variable -> (dotted key, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "TXSESSION_BOOTSTRAP_SERVERS": ("session.bootstrap_servers", _server_list),
    "TXSESSION_TRANSACTIONAL_ID": ("session.transactional_id", str),
    "TXSESSION_ISOLATION_LEVEL": ("session.isolation_level", str),
    "TXSESSION_TRANSACTION_TIMEOUT_MS": ("session.transaction_timeout_ms", int),
    "TXSESSION_CLOSE_TIMEOUT_MS": ("session.close_timeout_ms", int),
    "LOG_LEVEL": ("logging.level", str),
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge ``override`` into a copy of ``base``; nested mappings merge key by key.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read a YAML mapping.

    Raises:
        ValueError: If the document is not a mapping
    """
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return data


class Config:
    """Configuration manager for txsession."""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to a YAML file merged over the defaults
        """
        self._config: Dict[str, Any] = {}

        if DEFAULT_CONFIG_PATH.exists():
            self._config = load_yaml(DEFAULT_CONFIG_PATH)

        if config_file:
            self._config = deep_merge(self._config, load_yaml(config_file))

        for env_name, (key, parse) in ENV_OVERRIDES.items():
            if value := os.getenv(env_name):
                self.set(key, parse(value))

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., "session.transactional_id")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        node: Any = self._config
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in dot notation
            value: Value to set
        """
        *parents, leaf = key.split(".")
        node = self._config
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value

    def section(self, name: str) -> Dict[str, Any]:
        """Return a copy of a top-level section (empty dict if missing)."""
        value = self._config.get(name)
        return dict(value) if isinstance(value, dict) else {}

    def to_dict(self) -> Dict[str, Any]:
        return deep_merge({}, self._config)


# Global configuration instance
_config: Optional[Config] = None


def get_config(config_file: Optional[str] = None) -> Config:
    """
    Get global configuration instance.

    Args:
        config_file: Optional configuration file path

    Returns:
        Configuration instance
    """
    global _config
    if _config is None:
        _config = Config(config_file)
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
