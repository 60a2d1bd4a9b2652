# src/onionrelay/config.py
"""
Configuration module for onionrelay.

Handles loading and validation of configuration from files and environment.
"""

import logging
import os
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .network import Addressing
from .robustness import ConfigError

logger = logging.getLogger(__name__)


class NetworkSettings(BaseModel):
    host: str = "127.0.0.1"
    registry_port: int = Field(8080, gt=0, le=65535)
    base_router_port: int = Field(4000, gt=0, le=65535)
    base_user_port: int = Field(3000, gt=0, le=65535)
    # single attempt per hop, bounded by this many seconds
    request_timeout: float = Field(10.0, gt=0)

    def addressing(self) -> Addressing:
        return Addressing(
            host=self.host,
            registry_port=self.registry_port,
            base_router_port=self.base_router_port,
            base_user_port=self.base_user_port,
        )


class RoutingSettings(BaseModel):
    circuit_length: int = Field(3, ge=1)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: str | None = None


class ConfigModel(BaseModel):
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class Config:
    """Configuration manager for onionrelay."""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or self._find_config_file()
        self.data: dict[str, Any] = {}
        self.settings = ConfigModel()
        self.load()

    def _find_config_file(self) -> str:
        """Find configuration file in standard locations."""
        candidates = [
            "onionrelay.yaml",
            "onionrelay.yml",
            os.path.expanduser("~/.onionrelay/config.yaml"),
            "/etc/onionrelay/config.yaml",
        ]
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return "onionrelay.yaml"  # Default

    def load(self):
        """Load configuration from file and environment."""
        if os.path.isfile(self.config_file):
            try:
                with open(self.config_file) as f:
                    file_config = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Failed to load config from {self.config_file}: {e}") from e
            if not isinstance(file_config, dict):
                raise ConfigError(f"Config file {self.config_file} must contain a mapping")
            self.data.update(file_config)
            logger.info(f"Loaded config from {self.config_file}")

        self._load_from_env()
        self.validate()

    def _load_from_env(self):
        """Load configuration from environment variables."""
        env_mappings = {
            "ONIONRELAY_HOST": ("network", "host"),
            "ONIONRELAY_REGISTRY_PORT": ("network", "registry_port"),
            "ONIONRELAY_BASE_ROUTER_PORT": ("network", "base_router_port"),
            "ONIONRELAY_BASE_USER_PORT": ("network", "base_user_port"),
            "ONIONRELAY_REQUEST_TIMEOUT": ("network", "request_timeout"),
            "ONIONRELAY_CIRCUIT_LENGTH": ("routing", "circuit_length"),
            "ONIONRELAY_LOG_LEVEL": ("logging", "level"),
            "ONIONRELAY_LOG_FILE": ("logging", "file"),
        }

        for env_var, config_path in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                self.set_nested(*config_path, value=value)
                logger.debug(f"Set {'.'.join(config_path)} = {value} from {env_var}")

    def set_nested(self, *keys, value):
        """Set a nested configuration value."""
        d = self.data
        for key in keys[:-1]:
            if key not in d:
                d[key] = {}
            elif not isinstance(d[key], dict):
                raise ConfigError(f"Config section {key!r} must be a mapping")
            d = d[key]
        d[keys[-1]] = value

    def get(self, *keys, default=None):
        """Get a nested value from the validated settings."""
        d = self.settings.model_dump()
        for key in keys:
            if isinstance(d, dict) and key in d:
                d = d[key]
            else:
                return default
        return d

    def validate(self) -> ConfigModel:
        """Validate configuration against schema."""
        try:
            self.settings = ConfigModel(**self.data)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigError(f"Invalid configuration: {e}") from e
        return self.settings

    def addressing(self) -> Addressing:
        return self.settings.network.addressing()

    def save(self):
        """Save configuration to file."""
        directory = os.path.dirname(self.config_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_file, "w") as f:
            yaml.dump(self.data, f, default_flow_style=False)
        logger.info(f"Saved config to {self.config_file}")
