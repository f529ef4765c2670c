"""Core MCP Installer functionality."""

from mcp_installer.core.exceptions import ErrorKind, InstallerError, PreconditionFailedError
from mcp_installer.core.models import ContainerState, Plan, ServerKind, ServerRecord, Step

__all__ = [
    "ErrorKind",
    "InstallerError",
    "PreconditionFailedError",
    "ContainerState",
    "Plan",
    "ServerKind",
    "ServerRecord",
    "Step",
]
