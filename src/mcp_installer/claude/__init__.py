"""Desktop assistant config file handling."""

from mcp_installer.claude.config_store import ConfigStore
from mcp_installer.claude.history import ConfigHistory
from mcp_installer.claude.paths import desktop_config_path
from mcp_installer.claude.reconciler import Reconciler, drop_entry, put_entry

__all__ = ["ConfigStore", "ConfigHistory", "Reconciler", "desktop_config_path", "drop_entry", "put_entry"]
