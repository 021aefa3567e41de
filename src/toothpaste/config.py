# src/toothpaste/config.py
"""
Configuration module for toothpaste.

Handles loading and validation of configuration from files and environment.
"""

import logging
import os
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .codec import PACKET_OVERHEAD
from .errors import ConfigError, ErrorType
from . import robustness
from .robustness import handle_exception

logger = logging.getLogger(__name__)


class KDFConfig(BaseModel):
    time_cost: int = Field(3, ge=3, description="Argon2 time cost")
    memory_cost_kib: int = Field(65536, ge=65536, description="Argon2 memory (KiB)")
    parallelism: int = Field(4, ge=1, description="Argon2 parallelism")
    salt_length: int = Field(16, ge=16)


class StoreConfig(BaseModel):
    path: str = Field("~/.toothpaste/keystore.json")


class LinkConfig(BaseModel):
    mtu: int = Field(247, description="Largest write the link accepts, in bytes")
    ready_timeout: Optional[float] = Field(None, gt=0)
    slow_mode: bool = False

    @model_validator(mode="after")
    def _room_for_payload(self):
        if self.mtu <= PACKET_OVERHEAD:
            raise ValueError(f"link mtu must exceed the {PACKET_OVERHEAD}-byte packet overhead")
        return self


class AuthConfig(BaseModel):
    timeout: float = Field(60.0, gt=0)
    rp_id: str = Field("toothpaste.local")
    challenge_length: int = Field(32, ge=16)


class TransportConfig(BaseModel):
    session_kdf: Literal["raw", "hkdf"] = "raw"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


class ConfigModel(BaseModel):
    kdf: KDFConfig = Field(default_factory=KDFConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    link: LinkConfig = Field(default_factory=LinkConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class Config:
    """Configuration manager for toothpaste."""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or self._find_config_file()
        self.data: dict[str, Any] = {}
        self.model: ConfigModel = ConfigModel()
        self.load()

    def _find_config_file(self) -> str:
        """Find configuration file in standard locations."""
        candidates = [
            "toothpaste.yaml",
            "toothpaste.yml",
            os.path.expanduser("~/.toothpaste/config.yaml"),
        ]
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return "toothpaste.yaml"

    def load(self):
        """Load configuration from file and environment."""
        if os.path.isfile(self.config_file):
            try:
                with open(self.config_file) as f:
                    file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Failed to parse config {self.config_file}: {e}") from e
            if not isinstance(file_config, dict):
                raise ConfigError(f"Config {self.config_file} must contain a mapping")
            self.data.update(file_config)
            logger.info(f"Loaded config from {self.config_file}")

        self._load_from_env()
        self.validate()

    def _load_from_env(self):
        """Load configuration from environment variables."""
        env_mappings = {
            'TOOTHPASTE_STORE_PATH': ('store', 'path'),
            'TOOTHPASTE_LINK_MTU': ('link', 'mtu'),
            'TOOTHPASTE_READY_TIMEOUT': ('link', 'ready_timeout'),
            'TOOTHPASTE_AUTH_TIMEOUT': ('auth', 'timeout'),
            'TOOTHPASTE_LOG_LEVEL': ('logging', 'level'),
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
            d = d[key]
        existed, previous = keys[-1] in d, d.get(keys[-1])
        d[keys[-1]] = value
        try:
            self.validate()
        except ConfigError:
            if existed:
                d[keys[-1]] = previous
            else:
                del d[keys[-1]]
            raise

    def get(self, *keys, default=None):
        """Get a nested configuration value.

        Validated (typed) values win; keys outside the schema are read from
        the raw data.
        """
        d = self.model
        for key in keys:
            if isinstance(d, BaseModel) and key in type(d).model_fields:
                d = getattr(d, key)
            else:
                break
        else:
            return d

        d = self.data
        for key in keys:
            if isinstance(d, dict) and key in d:
                d = d[key]
            else:
                return default
        return d

    def validate(self):
        """Validate configuration against schema."""
        try:
            self.model = ConfigModel(**self.data)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigError(f"Invalid configuration: {e}") from e
        logger.debug("Configuration validated successfully")

    def setup_logging(self) -> logging.Logger:
        """Install log handlers from the `logging` section."""
        return robustness.setup_logging(self.get("logging", "level"), self.get("logging", "file"))

    @handle_exception(error_type=ErrorType.CONFIG)
    def save(self):
        """Save configuration to file."""
        directory = os.path.dirname(self.config_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_file, 'w') as f:
            yaml.safe_dump(self.data, f, default_flow_style=False)
        logger.info(f"Saved config to {self.config_file}")

    def __getitem__(self, key):
        return self.data[key]

    def __setitem__(self, key, value):
        self.data[key] = value

    def __contains__(self, key):
        return key in self.data
