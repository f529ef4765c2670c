"""Utility modules for MCP Installer."""

from mcp_installer.utils.logging import get_logger, setup_logging
from mcp_installer.utils.config import Settings, get_settings
from mcp_installer.utils.ports import default_https_port
from mcp_installer.utils.validators import parse_github_url, validate_server_name

__all__ = [
    "get_logger",
    "setup_logging",
    "Settings",
    "get_settings",
    "default_https_port",
    "parse_github_url",
    "validate_server_name",
]
