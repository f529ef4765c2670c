"""
Persistent index of installed servers.

Records are kept in memory and written to ``servers.json`` in the state
directory after every change. Reads never wait on the write lock.
"""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from mcp_installer.core.exceptions import CorruptConfigError, PreconditionFailedError, ServerNotFoundError
from mcp_installer.core.models import ServerRecord
from mcp_installer.tools.system import read_json, write_json_atomic
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class ServerRegistry:
    """Server records keyed by ``server_id``."""

    def __init__(self, path: Optional[Path] = None):
        """
        Initialize the registry.

        Args:
            path: JSON file to persist to; None keeps records in memory only
        """
        self.path = Path(path) if path is not None else None
        self._records: Dict[str, ServerRecord] = {}
        self._lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        if self.path is None:
            return
        try:
            data = read_json(self.path, default={"servers": []})
        except (ValueError, UnicodeDecodeError) as e:
            raise CorruptConfigError(f"Server registry {self.path} is unreadable: {e}") from e

        for raw in (data or {}).get("servers", []):
            try:
                record = ServerRecord.model_validate(raw)
            except ValidationError as e:
                logger.error(f"Skipping invalid server record: {e}")
                continue
            self._records[record.server_id] = record
        logger.debug(f"Loaded {len(self._records)} server records from {self.path}")

    def _save(self) -> None:
        if self.path is None:
            return
        write_json_atomic(self.path, {
            "version": "1.0",
            "servers": [r.model_dump(mode="json") for r in self._records.values()],
        })

    def get(self, server_id: str) -> Optional[ServerRecord]:
        return self._records.get(server_id)

    def require(self, server_id: str) -> ServerRecord:
        record = self._records.get(server_id)
        if record is None:
            raise ServerNotFoundError(f"Server not found: {server_id}", details={"server_id": server_id})
        return record

    def find_by_name(self, name: str) -> Optional[ServerRecord]:
        for record in self._records.values():
            if record.name == name:
                return record
        return None

    def resolve(self, key: str) -> ServerRecord:
        """Look a server up by id, falling back to its name."""
        record = self._records.get(key) or self.find_by_name(key)
        if record is None:
            raise ServerNotFoundError(f"Server not found: {key}", details={"server_id": key})
        return record

    def list(self) -> List[ServerRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at)

    def allocate_id(self, name: str) -> str:
        """``name``, or ``name-2``, ``name-3``... if taken."""
        candidate = name
        counter = 1
        while candidate in self._records:
            counter += 1
            candidate = f"{name}-{counter}"
        return candidate

    async def add(self, record: ServerRecord) -> None:
        async with self._lock:
            if record.server_id in self._records:
                raise PreconditionFailedError(f"Server id already registered: {record.server_id}")
            self._records[record.server_id] = record
            self._save()
        logger.info(f"Registered server {record.server_id}")

    async def update(self, record: ServerRecord) -> None:
        async with self._lock:
            if record.server_id not in self._records:
                raise ServerNotFoundError(f"Server not found: {record.server_id}")
            self._records[record.server_id] = record
            self._save()

    async def remove(self, server_id: str) -> ServerRecord:
        async with self._lock:
            record = self._records.pop(server_id, None)
            if record is None:
                raise ServerNotFoundError(f"Server not found: {server_id}")
            self._save()
        logger.info(f"Unregistered server {server_id}")
        return record
