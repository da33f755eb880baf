# src/mcsocks/config.py
"""
Configuration module for mcsocks.

Merges an optional YAML file, environment variables and command-line
overrides (in that order of increasing precedence) into one immutable,
validated ForwarderConfig.
"""

import logging
import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .network import (
    DEFAULT_LISTEN_HOST,
    DEFAULT_LISTEN_PORT,
    MINECRAFT_PORT,
    RELAY_BUFFER_SIZE,
    parse_host_port,
)
from .robustness import ConfigError

logger = logging.getLogger(__name__)


class ForwarderConfig(BaseModel):
    """Process-wide settings; frozen once built."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    server: str = Field(min_length=1)
    proxy: str
    username: Optional[str] = None
    password: Optional[str] = None
    listen_host: str = DEFAULT_LISTEN_HOST
    listen_port: int = Field(DEFAULT_LISTEN_PORT, ge=0, le=65535)
    target_port: int = Field(MINECRAFT_PORT, gt=0, le=65535)
    connect_timeout: Optional[float] = Field(30.0, gt=0)
    dns_timeout: float = Field(5.0, gt=0)
    nameservers: tuple[str, ...] = ()
    buffer_size: int = Field(RELAY_BUFFER_SIZE, gt=0)

    @field_validator("server")
    @classmethod
    def _strip_server(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("server must not be empty")
        return v

    @field_validator("proxy")
    @classmethod
    def _check_proxy(cls, v: str) -> str:
        parse_host_port(v)
        return v.strip()

    @property
    def uses_auth(self) -> bool:
        return self.username is not None or self.password is not None


class ConfigLoader:
    """Builds a ForwarderConfig from file, environment and overrides."""

    ENV_MAPPINGS = {
        "MCSOCKS_SERVER": "server",
        "MCSOCKS_PROXY": "proxy",
        "MCSOCKS_USERNAME": "username",
        "MCSOCKS_PASSWORD": "password",
        "MCSOCKS_LISTEN_HOST": "listen_host",
        "MCSOCKS_LISTEN_PORT": "listen_port",
    }

    def __init__(self, config_file: str | None = None, environ: dict[str, str] | None = None):
        self.explicit_file = config_file is not None
        self.config_file = config_file or self._find_config_file()
        self.environ = os.environ if environ is None else environ
        self.data: dict[str, Any] = {}

    def _find_config_file(self) -> str | None:
        """Find configuration file in standard locations."""
        candidates = [
            "mcsocks.yaml",
            "mcsocks.yml",
            os.path.expanduser("~/.mcsocks/config.yaml"),
            "/etc/mcsocks/config.yaml",
        ]
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return None

    def _load_file(self):
        if self.config_file is None:
            return
        if not os.path.isfile(self.config_file):
            if self.explicit_file:
                raise ConfigError(f"Config file not found: {self.config_file}", {"file": self.config_file})
            return
        try:
            with open(self.config_file) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {self.config_file}: {e}", {"file": self.config_file}) from e
        if not isinstance(file_config, dict):
            raise ConfigError(f"Config file {self.config_file} must contain a mapping", {"file": self.config_file})
        self.data.update(file_config)
        logger.info(f"Loaded config from {self.config_file}")

    def _load_from_env(self):
        """Load configuration from environment variables."""
        for env_var, key in self.ENV_MAPPINGS.items():
            value = self.environ.get(env_var)
            if value is not None:
                self.data[key] = value
                logger.debug(f"Set {key} from {env_var}")

    def load(self, overrides: dict[str, Any] | None = None) -> ForwarderConfig:
        """Merge all sources and validate. Overrides whose value is None are ignored."""
        self.data = {}
        self._load_file()
        self._load_from_env()
        for key, value in (overrides or {}).items():
            if value is not None:
                self.data[key] = value

        try:
            config = ForwarderConfig(**self.data)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigError(f"Invalid configuration: {e}") from e
        logger.debug("Configuration validated successfully")
        return config


def load_config(
    config_file: str | None = None,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> ForwarderConfig:
    return ConfigLoader(config_file, environ).load(overrides)
