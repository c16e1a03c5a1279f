# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Melody Configuration System

Centralized configuration management supporting:
- Environment variables (MELODY_*)
- Config files (~/.melody/config.yaml, ./.melody.yaml)
- Programmatic defaults
- Pydantic validation
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from melody.core.exceptions import ConfigError

logger = logging.getLogger("melody.config")


# ============================================================================
# Configuration Models
# ============================================================================


class PathsConfig(BaseModel):
    """Path configuration"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    home: Path = Field(
        default_factory=lambda: Path.home() / ".melody",
        description="Melody home directory",
    )
    state_dir: Optional[Path] = Field(default=None, description="Snapshot store (default: <home>/state)")
    log_dir: Optional[Path] = Field(default=None, description="Log files directory (default: <home>/logs)")
    key_file: Optional[Path] = Field(default=None, description="Machine key file (default: <home>/machine.key)")
    temp_dir: Optional[Path] = Field(default=None, description="Elevation channel directory (default: system temp)")

    @field_validator("*", mode="before")
    @classmethod
    def ensure_path(cls, v):
        """Convert strings to Path objects"""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @model_validator(mode="after")
    def fill_from_home(self):
        if self.state_dir is None:
            self.state_dir = self.home / "state"
        if self.log_dir is None:
            self.log_dir = self.home / "logs"
        if self.key_file is None:
            self.key_file = self.home / "machine.key"
        return self


class SecurityConfig(BaseModel):
    """Encryption and capture safety settings"""

    kdf_iterations: int = Field(default=600_000, description="PBKDF2 iterations", ge=1)
    exclude_patterns: List[str] = Field(
        default_factory=list, description="Extra transient-file patterns for directory items"
    )
    machine_key: bool = Field(default=True, description="Allow machine-bound keys (key_source: machine)")


class ElevationConfig(BaseModel):
    """Relaunch settings"""

    launcher: Literal["auto", "runas", "sudo", "pkexec", "direct"] = Field(
        default="auto", description="How the elevated worker is started"
    )
    python_executable: Optional[str] = Field(
        default=None, description="Interpreter for the elevated worker (default: current)"
    )


class ObservabilityConfig(BaseModel):
    """Logging configuration"""

    log_level: str = Field(default="INFO", description="Logging level")
    file_logging: bool = Field(default=True, description="Write rotating log files")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper


class MelodyConfig(BaseModel):
    """Complete Melody configuration"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    paths: PathsConfig = Field(default_factory=PathsConfig, description="Path configuration")
    security: SecurityConfig = Field(default_factory=SecurityConfig, description="Security configuration")
    elevation: ElevationConfig = Field(default_factory=ElevationConfig, description="Elevation configuration")
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig, description="Observability configuration"
    )


# ============================================================================
# Configuration Loader
# ============================================================================

# env var -> (section, key)
ENV_VARS = {
    "MELODY_HOME": ("paths", "home"),
    "MELODY_STATE_DIR": ("paths", "state_dir"),
    "MELODY_LOG_DIR": ("paths", "log_dir"),
    "MELODY_KEY_FILE": ("paths", "key_file"),
    "MELODY_TEMP_DIR": ("paths", "temp_dir"),
    "MELODY_KDF_ITERATIONS": ("security", "kdf_iterations"),
    "MELODY_LAUNCHER": ("elevation", "launcher"),
    "MELODY_PYTHON": ("elevation", "python_executable"),
    "MELODY_LOG_LEVEL": ("observability", "log_level"),
}


def env_flag(value: Optional[str]) -> bool:
    """Boolean environment switch; 1, true and yes (any case) turn it on."""
    return value is not None and value.strip().lower() in ("1", "true", "yes")


class ConfigLoader:
    """Load configuration from multiple sources"""

    @staticmethod
    def load_from_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        environ = os.environ if environ is None else environ
        config: Dict[str, Any] = {}

        for name, (section, key) in ENV_VARS.items():
            value = environ.get(name)
            if value:
                config.setdefault(section, {})[key] = value

        no_file_logs = environ.get("MELODY_NO_FILE_LOGS")
        if no_file_logs:
            config.setdefault("observability", {})["file_logging"] = not env_flag(no_file_logs)

        return config

    @staticmethod
    def load_from_file(file_path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file"""
        if not file_path.exists():
            return {}

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config file {file_path}: {e}", cause=e)

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {file_path} must contain a mapping")
        return data

    @staticmethod
    def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple configuration dictionaries"""
        result: Dict[str, Any] = {}
        for config in configs:
            for key, value in config.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = ConfigLoader.merge_configs(result[key], value)
                else:
                    result[key] = value
        return result


# ============================================================================
# Global Configuration Instance
# ============================================================================

_config: Optional[MelodyConfig] = None


def get_config() -> MelodyConfig:
    """
    Get global Melody configuration

    Configuration is loaded from (in order of precedence):
    1. Environment variables (MELODY_*)
    2. .melody.yaml in current directory
    3. ~/.melody/config.yaml
    4. Default values
    """
    global _config

    if _config is None:
        _config = load_config()

    return _config


def load_config(
    config_file: Optional[Path] = None,
    env_override: bool = True,
    environ: Optional[Dict[str, str]] = None,
) -> MelodyConfig:
    """
    Load configuration from all sources

    Args:
        config_file: Optional specific config file to load
        env_override: Whether environment variables override file config
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: a config file is unreadable or the merged values are invalid
    """
    configs = []

    default_locations = [
        Path.home() / ".melody" / "config.yaml",
        Path.cwd() / ".melody.yaml",
    ]

    for location in default_locations:
        file_config = ConfigLoader.load_from_file(location)
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {location}")

    if config_file:
        config_file = Path(config_file)
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
        configs.append(ConfigLoader.load_from_file(config_file))
        logger.debug(f"Loaded config from {config_file}")

    if env_override:
        env_config = ConfigLoader.load_from_env(environ)
        if env_config:
            configs.append(env_config)
            logger.debug("Loaded config from environment")

    merged = ConfigLoader.merge_configs(*configs) if configs else {}

    try:
        return MelodyConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed: {e}", details={"errors": e.errors(include_url=False)}, cause=e)


def reload_config() -> MelodyConfig:
    """Reload global configuration"""
    global _config
    _config = load_config()
    logger.info("Configuration reloaded")
    return _config


def ensure_directories(config: Optional[MelodyConfig] = None):
    """Ensure all configured directories exist"""
    if config is None:
        config = get_config()

    directories = [config.paths.home, config.paths.state_dir, config.paths.log_dir]
    if config.paths.temp_dir is not None:
        directories.append(config.paths.temp_dir)

    for directory in directories:
        try:
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Ensured directory: {directory}")
        except OSError as e:
            raise ConfigError(f"Failed to create directory {directory}: {e}", cause=e)
