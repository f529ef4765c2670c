"""
Backup index.

``<backup_root>/index.json`` lists every backup record. All reads and writes
go through a process-local lock and the file is replaced atomically, so a
backup is either listed or absent, never half-recorded.
"""

import asyncio
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from mcp_installer.core.exceptions import CorruptBackupError
from mcp_installer.core.models import BackupRecord
from mcp_installer.tools.system import read_json, write_json_atomic
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class BackupIndex:
    """Persistent list of BackupRecords."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.path = self.root / "index.json"
        self._lock = asyncio.Lock()

    def _load(self) -> List[BackupRecord]:
        try:
            data = read_json(self.path, default={"backups": []})
        except (ValueError, UnicodeDecodeError) as e:
            raise CorruptBackupError(f"Backup index {self.path} is unreadable: {e}") from e
        if not isinstance(data, dict):
            logger.warning(f"Backup index {self.path} is not an object, treating as empty")
            return []

        records = []
        for raw in data.get("backups", []):
            try:
                records.append(BackupRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping invalid backup index entry: {e}")
        return records

    def _save(self, records: List[BackupRecord]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        write_json_atomic(self.path, {"backups": [r.model_dump(mode="json") for r in records]})

    async def add(self, record: BackupRecord) -> None:
        async with self._lock:
            records = [r for r in self._load() if r.backup_id != record.backup_id]
            records.append(record)
            self._save(records)

    async def update(self, record: BackupRecord) -> None:
        """Replace the stored record with the same id (or append it)."""
        await self.add(record)

    async def remove(self, backup_id: str) -> bool:
        async with self._lock:
            records = self._load()
            remaining = [r for r in records if r.backup_id != backup_id]
            if len(remaining) == len(records):
                return False
            self._save(remaining)
            return True

    async def get(self, backup_id: str) -> Optional[BackupRecord]:
        async with self._lock:
            for record in self._load():
                if record.backup_id == backup_id:
                    return record
        return None

    async def list(self, server_id: Optional[str] = None) -> List[BackupRecord]:
        """Records newest first, optionally for one server."""
        async with self._lock:
            records = self._load()
        if server_id is not None:
            records = [r for r in records if r.server_id == server_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)
