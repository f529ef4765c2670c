"""
Configuration management for MCP Installer.

Settings are loaded hierarchically from toml files, then environment
variables (``MCP_INSTALLER_`` prefix, ``__`` for nested sections), then
explicit overrides, and validated with Pydantic.
"""

import os
import platform
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import toml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_installer.core.models import CollisionPolicy
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


def _default_install_root() -> str:
    if platform.system() == "Windows":
        return "C:\\MCP\\Servers"
    return "/opt/mcp/servers"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    enabled: bool = Field(default=True, description="Enable logging completely")
    level: str = Field(default="INFO", description="File logging level")
    console_level: str = Field(default="WARNING", description="Console logging level")
    format_type: str = Field(default="text", description="Log format (text/json)")
    file: Optional[str] = Field(default="mcp-installer.log", description="Log file path")
    enable_rich: bool = Field(default=True, description="Enable Rich console output")
    max_bytes: int = Field(default=10 * 1024 * 1024, description="Max log file size")
    backup_count: int = Field(default=5, description="Number of rotated files")

    @field_validator("level", "console_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("format_type")
    @classmethod
    def validate_format_type(cls, v: str) -> str:
        """Validate format type."""
        if v not in ["text", "json"]:
            raise ValueError(f"Invalid format type: {v}")
        return v


class PathsConfig(BaseModel):
    """Filesystem locations."""

    state_dir: str = Field(default="~/.config/mcp-installer", description="Installer state directory")
    backup_root: Optional[str] = Field(default=None, description="Backup store root (default <state_dir>/backups)")
    install_root: str = Field(default_factory=_default_install_root, description="Parent of server install paths")
    desktop_config: Optional[str] = Field(default=None, description="Override for the desktop config path")


class ExecutionConfig(BaseModel):
    """Step execution settings."""

    step_timeout: float = Field(default=600.0, description="Per-step timeout in seconds")
    terminate_grace: float = Field(default=5.0, description="Seconds between terminate and kill")
    config_lock_timeout: float = Field(default=5.0, description="Config lock wait in seconds")
    running_poll_window: float = Field(default=60.0, description="Deadline for reaching running")
    collision_policy: CollisionPolicy = Field(
        default=CollisionPolicy.RENAME,
        description="How name collisions are recovered",
    )

    @field_validator("step_timeout", "terminate_grace", "config_lock_timeout", "running_poll_window")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts must be positive")
        return v


class RuntimeConfig(BaseModel):
    """Container engine settings."""

    engine: str = Field(default="docker", description="Container engine executable")
    poll_initial: float = Field(default=0.1, description="First status poll delay")
    poll_factor: float = Field(default=2.0, description="Backoff factor")
    poll_cap: float = Field(default=2.0, description="Maximum poll delay")
    command_timeout: float = Field(default=120.0, description="Timeout for engine commands")


class BackupConfig(BaseModel):
    """Backup settings."""

    large_file_threshold: int = Field(default=100 * 1024 * 1024, description="Bytes above which a file is large")
    large_file_patterns: List[str] = Field(default_factory=lambda: ["*.bin", "*.dat", "*.db"])


class UpdatesConfig(BaseModel):
    """Update checker settings."""

    check_ttl: float = Field(default=300.0, description="Seconds an update check stays valid for update()")


class Settings(BaseSettings):
    """Main configuration class."""

    debug: bool = Field(default=False, description="Enable debug mode")
    history_limit: int = Field(default=50, description="Config versions kept per config file")
    event_capacity: int = Field(default=256, description="Per-consumer event channel size")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    updates: UpdatesConfig = Field(default_factory=UpdatesConfig)

    model_config = SettingsConfigDict(
        env_prefix="MCP_INSTALLER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    def get_state_dir(self) -> Path:
        """Get installer state directory."""
        return Path(os.path.expanduser(self.paths.state_dir))

    def get_backup_root(self) -> Path:
        """Get backup store root."""
        if self.paths.backup_root:
            return Path(os.path.expanduser(self.paths.backup_root))
        return self.get_state_dir() / "backups"

    def get_registry_path(self) -> Path:
        return self.get_state_dir() / "servers.json"

    def get_log_file(self) -> Optional[Path]:
        """Get log file path."""
        if self.logging.file:
            log_path = Path(os.path.expanduser(self.logging.file))
            if not log_path.is_absolute():
                log_path = self.get_state_dir() / log_path
            return log_path
        return None


class ConfigManager:
    """Configuration manager with hierarchical loading."""

    def __init__(self):
        self._settings: Optional[Settings] = None

    def load_config(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> Settings:
        """
        Load configuration from multiple sources.

        Args:
            config_files: List of configuration files to load
            **overrides: Configuration overrides

        Returns:
            Loaded settings
        """
        if self._settings is not None:
            return self._settings

        if config_files is None:
            config_files = [
                "/etc/mcp-installer/config.toml",
                "~/.config/mcp-installer/config.toml",
                "./.mcp-installer.toml",
            ]

        config_data: Dict[str, Any] = {}

        for config_file in config_files:
            file_path = Path(os.path.expanduser(str(config_file)))
            if file_path.exists():
                try:
                    _merge(config_data, toml.load(file_path))
                    logger.debug(f"Loaded configuration from {file_path}")
                except (toml.TomlDecodeError, OSError) as e:
                    logger.warning(f"Failed to load config from {file_path}: {e}")

        _merge(config_data, overrides)

        self._settings = Settings(**config_data)
        return self._settings

    def get_config(self) -> Settings:
        """Get current settings."""
        if self._settings is None:
            return self.load_config()
        return self._settings

    def reload_config(self, **overrides: Any) -> Settings:
        """Reload settings."""
        self._settings = None
        return self.load_config(**overrides)


def _merge(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    """Merge nested tables so later files override single keys, not whole sections."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value


_config_manager = ConfigManager()

load_config = _config_manager.load_config
get_settings = _config_manager.get_config
reload_config = _config_manager.reload_config
