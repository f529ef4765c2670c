"""Backup usage statistics."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from mcp_installer.core.models import BackupRecord, BackupStatus

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


class BackupStatistics(BaseModel):
    """Aggregate view over a set of backups."""

    server_id: Optional[str] = None
    backup_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    total_size: int = 0
    oldest_backup: Optional[datetime] = None
    newest_backup: Optional[datetime] = None
    by_day: Dict[str, int] = Field(default_factory=lambda: {day: 0 for day in WEEKDAYS})
    by_hour: Dict[int, int] = Field(default_factory=lambda: {hour: 0 for hour in range(24)})


def calculate_statistics(records: List[BackupRecord], server_id: Optional[str] = None) -> BackupStatistics:
    """
    Summarize backups.

    Args:
        records: Backup records to summarize
        server_id: Restrict to one server

    Returns:
        BackupStatistics with counts, sizes and day-of-week / hour-of-day frequency
    """
    if server_id is not None:
        records = [r for r in records if r.server_id == server_id]

    stats = BackupStatistics(server_id=server_id, backup_count=len(records))
    if not records:
        return stats

    for record in records:
        if record.status == BackupStatus.COMPLETED:
            stats.completed_count += 1
            stats.total_size += record.size
        elif record.status == BackupStatus.FAILED:
            stats.failed_count += 1
        stats.by_day[WEEKDAYS[record.created_at.weekday()]] += 1
        stats.by_hour[record.created_at.hour] += 1

    created = sorted(r.created_at for r in records)
    stats.oldest_backup = created[0]
    stats.newest_backup = created[-1]
    return stats
