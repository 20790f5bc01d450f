"""Configuration management - loads engine.yaml and environment overrides.

The engine never reads configuration on its own; hosts load an
``EngineConfig`` here and pass it into ``SubscriptionEngine``.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from entitlement_sync.models import EngineConfig


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Loader for engine.yaml.

    Resolves the file path, parses YAML, applies environment overrides and
    validates the result as an ``EngineConfig``.
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to engine.yaml. If not provided, uses the CONFIG_PATH
                        env var or defaults to ./config/engine.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._engine_config: Optional[EngineConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/engine.yaml")

    def _load_config(self) -> None:
        """Load, override and validate engine.yaml."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/engine.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")
        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self._config_path}")

        apply_env_overrides(raw_config)

        try:
            self._engine_config = EngineConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    @property
    def engine(self) -> EngineConfig:
        """Validated engine configuration."""
        if self._engine_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._engine_config

    @property
    def config_path(self) -> Path:
        return self._config_path

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


def apply_env_overrides(raw_config: dict[str, Any]) -> None:
    """Apply BACKEND_BASE_URL, RECONCILE_INTERVAL_SECONDS and USER_EMAIL overrides in place."""
    base_url = os.getenv("BACKEND_BASE_URL")
    if base_url:
        backend = raw_config.get("backend") or {}
        backend["base_url"] = base_url
        raw_config["backend"] = backend

    interval = os.getenv("RECONCILE_INTERVAL_SECONDS")
    if interval:
        try:
            interval_seconds = float(interval)
        except ValueError as e:
            raise ConfigurationError(
                f"RECONCILE_INTERVAL_SECONDS must be a number, got {interval!r}"
            ) from e
        reconciler = raw_config.get("reconciler") or {}
        reconciler["interval_seconds"] = interval_seconds
        raw_config["reconciler"] = reconciler

    user_email = os.getenv("USER_EMAIL")
    if user_email:
        raw_config["user_email"] = user_email


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """Load and validate engine configuration.

    Args:
        config_path: Optional path to engine.yaml

    Returns:
        EngineConfig instance
    """
    return Config(config_path).engine
