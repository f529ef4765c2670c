"""
CLI command modules for MCP Installer.
"""

from .backup import backup_commands
from .config import config_commands
from .update import update_commands

__all__ = [
    'backup_commands',
    'config_commands',
    'update_commands',
]
