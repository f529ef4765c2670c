"""Server backup and restore."""

from mcp_installer.backup.engine import BackupEngine
from mcp_installer.backup.index import BackupIndex
from mcp_installer.backup.statistics import BackupStatistics, calculate_statistics

__all__ = ["BackupEngine", "BackupIndex", "BackupStatistics", "calculate_statistics"]
