"""
Configuration management for disk uploads.

This module loads the host-side settings (tool paths, helper script
location, timeouts, SELinux labels) from YAML files and environment variables.
"""

import os
import yaml
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict

from .exceptions import ConfigurationError
from .logging import logger


DEFAULT_CONFIG_PATHS = [
    os.path.expanduser("~/.config/rhv-upload/config.yaml"),
    "/etc/rhv-upload/config.yaml",
    "config.yaml",
]

PRECHECK_SCRIPT = "rhv-upload-precheck.py"
VMCHECK_SCRIPT = "rhv-upload-vmcheck.py"
PLUGIN_SCRIPT = "rhv-upload-plugin.py"
CREATEVM_SCRIPT = "rhv-upload-createvm.py"
DELETEDISKS_SCRIPT = "rhv-upload-deletedisks.py"


class AppConfig(BaseModel):
    """Application configuration with Pydantic validation.

    Environment variables (highest priority):
    - RHV_UPLOAD_PYTHON: Python interpreter used to run helper scripts
    - RHV_UPLOAD_NBDKIT: nbdkit binary
    - RHV_UPLOAD_SCRIPTS_DIR: Directory holding the rhv-upload-*.py helpers
    - RHV_UPLOAD_NBDKIT_THREADS: Worker threads per nbdkit instance
    - RHV_UPLOAD_FINALIZATION_TIMEOUT: Seconds to wait for each disk to finish
    - RHV_UPLOAD_POLL_INTERVAL: Seconds between completion marker checks
    - RHV_UPLOAD_TMPDIR: Parent directory for the session working directory
    - RHV_UPLOAD_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    model_config = ConfigDict(extra="forbid")

    python: str = "python3"
    nbdkit: str = "nbdkit"
    nbdkit_python_plugin: str = "python"
    scripts_dir: str = "/usr/share/rhv-upload"

    # Matches the number of parallel coroutines in qemu-img convert
    nbdkit_threads: int = Field(default=8, gt=0)
    finalization_timeout: float = Field(
        default=5 * 60, gt=0, description="Seconds to wait for a disk to finish"
    )
    pidfile_timeout: float = Field(
        default=30, gt=0, description="Seconds to wait for nbdkit to start"
    )
    poll_interval: float = Field(default=2.0, gt=0)

    selinux_socket_label: str = "system_u:object_r:svirt_socket_t:s0"
    selinux_file_label: str = "system_u:object_r:svirt_image_t:s0"

    tmpdir: Optional[str] = None
    log_level: str = Field(default="INFO", description="Logging level")
    verbose: bool = False

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v

    def script_path(self, name: str) -> str:
        """Return the full path of a helper script."""
        return str(Path(self.scripts_dir) / name)


class ConfigLoader:
    """Loads and validates configuration."""

    ENV_MAPPINGS = {
        "RHV_UPLOAD_PYTHON": "python",
        "RHV_UPLOAD_NBDKIT": "nbdkit",
        "RHV_UPLOAD_SCRIPTS_DIR": "scripts_dir",
        "RHV_UPLOAD_NBDKIT_THREADS": ("nbdkit_threads", int),
        "RHV_UPLOAD_FINALIZATION_TIMEOUT": ("finalization_timeout", float),
        "RHV_UPLOAD_POLL_INTERVAL": ("poll_interval", float),
        "RHV_UPLOAD_TMPDIR": "tmpdir",
        "RHV_UPLOAD_LOG_LEVEL": "log_level",
    }

    def __init__(self) -> None:
        self.logger = logger

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load configuration from file and environment variables.

        Priority (highest to lowest):
        1. Environment variables
        2. Config file (explicit path or first default location found)
        3. Default values
        """
        if config_path:
            config_data = self._load_data_from_file(config_path)
        else:
            config_data = {}
            for path in DEFAULT_CONFIG_PATHS:
                if os.path.exists(path):
                    self.logger.info(f"Loading configuration from {path}", path=path)
                    config_data = self._load_data_from_file(path)
                    break
            else:
                self.logger.debug(
                    "No configuration file found, using defaults and environment"
                )

        config_data = self._apply_env_overrides(config_data)

        try:
            return AppConfig(**config_data)
        except ValueError as e:
            self.logger.error(f"Invalid configuration: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        for env_var, mapping in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue

            if isinstance(mapping, tuple):
                config_key, converter = mapping
                try:
                    config_data[config_key] = converter(env_value)
                except (ValueError, TypeError) as e:
                    raise ConfigurationError(
                        f"Invalid value for {env_var}: {env_value!r} ({e})"
                    ) from e
            else:
                config_data[mapping] = env_value
            self.logger.debug(f"Applied environment override: {env_var}={env_value}")

        return config_data

    def _load_data_from_file(self, path: str) -> dict:
        """Load configuration data from a specific file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(
                f"Failed to parse configuration file {path}: {e}", path=path
            )
            raise ConfigurationError(f"Failed to parse configuration file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        if data is None:
            return {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration format in {path}")

        return data


config_loader = ConfigLoader()
