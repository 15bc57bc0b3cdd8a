"""
Hierarchical configuration management.

Loads configuration from multiple sources with this precedence (highest wins):
    1. Environment variables (PREFIX_SECTION__KEY)
    2. Config file (YAML or JSON)
    3. Built-in defaults

The gateway never reads this module directly; ``create_gateway()`` pulls the
values it needs and passes them in as plain constructor arguments.

Usage:
    config = Config(config_file="~/.confidant/config.yaml")

    config.get("llm.endpoint")          # dot-notation access
    config.get("llm.rate_limit_rpm")    # 60 unless overridden
    config.validated().llm.server_type  # typed, validated view
"""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING, Any

import yaml

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .config_schema import ConfidantConfig

_DEFAULT_ENV_PREFIX = "CONFIDANT_"
_DEFAULT_DATA_DIR_NAME = ".confidant"

DEFAULT_ENDPOINT = "http://localhost:1234/v1/chat/completions"


class Config:
    """
    Central configuration manager.

    Loads and merges configuration from defaults, a config file, and
    environment variables. Env vars use double-underscore to denote nesting:
    CONFIDANT_LLM__SERVER_TYPE=ollama -> config["llm"]["server_type"] = "ollama"
    """

    def __init__(
        self,
        config_file: str | None = None,
        env_prefix: str = _DEFAULT_ENV_PREFIX,
        data_dir: str | None = None,
        defaults: dict[str, Any] | None = None,
    ):
        """
        Args:
            config_file: Path to YAML or JSON configuration file.
            env_prefix: Prefix for environment variable overrides.
            data_dir: Base directory for data storage. Defaults to ~/.confidant.
            defaults: Additional default values to merge (consumer-specific).
        """
        self.config_file = os.path.expanduser(config_file) if config_file else None
        self.env_prefix = env_prefix or ""
        self._data_dir = data_dir or os.path.join("~", _DEFAULT_DATA_DIR_NAME)
        self._extra_defaults = defaults or {}
        self.config_data: dict[str, Any] = {}

        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from all sources."""
        self.config_data = self._get_default_config()

        if self._extra_defaults:
            self._update_dict(self.config_data, self._extra_defaults)

        if self.config_file and os.path.exists(self.config_file):
            file_config = self._load_file(self.config_file)
            self._update_dict(self.config_data, file_config)

        # Env vars override everything
        self._load_from_env()

    def _get_default_config(self) -> dict[str, Any]:
        """Build default configuration for a single local inference server."""
        data_dir = os.path.expanduser(self._data_dir)
        return {
            "paths": {
                "data_dir": data_dir,
                "preferences_file": os.path.join(data_dir, "llm_preferences.json"),
            },
            "llm": {
                "endpoint": DEFAULT_ENDPOINT,
                "server_type": "lmstudio",
                "api_key": "",
                "default_model": "meta-llama-3.1-8b-instruct",
                "temperature": 0.7,
                "max_tokens": 2048,
                "timeout": 30.0,
                "rate_limit_rpm": 60,
                "queue_backoff": 1.0,
                "max_context_messages": 5,
                "models_cache_ttl": 300.0,
                "log_malformed_stream_lines": False,
            },
            "logging": {
                "level": "WARNING",
                "file": None,
            },
        }

    @staticmethod
    def _load_file(path: str) -> dict[str, Any]:
        """Load a YAML or JSON config file."""
        ext = os.path.splitext(path)[1].lower()
        with open(path) as f:
            if ext in (".yaml", ".yml"):
                return yaml.safe_load(f) or {}
            elif ext == ".json":
                return json.load(f)
        return {}

    def _update_dict(self, target: dict, source: dict) -> None:
        """Recursively merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._update_dict(target[key], value)
            else:
                target[key] = value

    def _load_from_env(self) -> None:
        """Override config values from environment variables."""
        if not self.env_prefix:
            return
        for env_key, env_value in os.environ.items():
            if not env_key.startswith(self.env_prefix):
                continue
            config_key = env_key[len(self.env_prefix) :].lower()
            key_parts = config_key.split("__")

            current = self.config_data
            for part in key_parts[:-1]:
                if part not in current or not isinstance(current[part], dict):
                    current[part] = {}
                current = current[part]
            current[key_parts[-1]] = env_value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get a config value by dot-notation path.

        Args:
            key_path: e.g. "llm.endpoint", "logging.level"
            default: Returned when key is not found.
        """
        parts = key_path.split(".")
        current = self.config_data
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        return current

    def set(self, key_path: str, value: Any) -> None:
        """Set a config value by dot-notation path, creating intermediate dicts."""
        parts = key_path.split(".")
        current = self.config_data
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value

    def validated(self) -> ConfidantConfig:
        """Return a typed, validated view of the merged configuration.

        Raises:
            ConfigurationError: If any value fails validation.
        """
        from pydantic import ValidationError as PydanticValidationError

        from .config_schema import ConfidantConfig

        try:
            return ConfidantConfig.model_validate(self.config_data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}", layer="config") from e

    def get_data_dir(self) -> str:
        """Return the resolved data directory path."""
        return os.path.expanduser(self.get("paths.data_dir", self._data_dir))


# Module-level singleton
_config_instance: Config | None = None


def get_config(
    config_file: str | None = None,
    env_prefix: str = _DEFAULT_ENV_PREFIX,
    data_dir: str | None = None,
) -> Config:
    """Get or create the global Config singleton."""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_file=config_file, env_prefix=env_prefix, data_dir=data_dir)
    return _config_instance


def reset_config() -> None:
    """Reset the global Config singleton (useful for testing)."""
    global _config_instance
    _config_instance = None
