"""
MCP Installer - installation and lifecycle orchestration for MCP servers.

Fetches, installs, configures, starts, backs up and updates the helper
servers a desktop AI assistant launches, and keeps the assistant's
``claude_desktop_config.json`` in step with what is installed.
"""

__version__ = "1.0.0"
__description__ = "Installation and lifecycle orchestrator for MCP servers"

# Public API
from mcp_installer.core.exceptions import ErrorKind, InstallerError
from mcp_installer.core.models import ContainerState, InstallOptions, ServerKind, ServerRecord

__all__ = [
    "__version__",
    "__description__",
    "ErrorKind",
    "InstallerError",
    "ContainerState",
    "InstallOptions",
    "ServerKind",
    "ServerRecord",
]
