"""
Config version history.

Keeps a bounded list of changes per config file so users can see which
server entries each write added, modified or removed.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from mcp_installer.core.models import utcnow
from mcp_installer.tools.system import read_json, write_json_atomic
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class ConfigChanges(BaseModel):
    """Server entry keys touched by one write."""

    added: List[str] = Field(default_factory=list)
    modified: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.modified or self.removed)


class ConfigVersion(BaseModel):
    """One recorded write."""

    version: int
    timestamp: datetime = Field(default_factory=utcnow)
    description: Optional[str] = None
    changes: ConfigChanges


def calculate_changes(old: Dict[str, Any], new: Dict[str, Any]) -> ConfigChanges:
    """Compare the ``mcpServers`` maps of two documents."""
    old_servers = old.get("mcpServers") or {}
    new_servers = new.get("mcpServers") or {}
    return ConfigChanges(
        added=[name for name in new_servers if name not in old_servers],
        modified=[
            name for name in new_servers
            if name in old_servers and old_servers[name] != new_servers[name]
        ],
        removed=[name for name in old_servers if name not in new_servers],
    )


class ConfigHistory:
    """Per-config-path version list, optionally persisted to a JSON file."""

    def __init__(self, store_path: Optional[Path] = None, max_versions: int = 50):
        self.store_path = store_path
        self.max_versions = max_versions
        self._versions: Dict[str, List[ConfigVersion]] = {}
        if store_path is not None:
            self._load()

    def _load(self) -> None:
        try:
            raw = read_json(self.store_path, default={})
        except ValueError as e:
            logger.warning(f"Ignoring unreadable config history {self.store_path}: {e}")
            return
        for key, versions in raw.items():
            self._versions[key] = [ConfigVersion.model_validate(v) for v in versions]

    def _save(self) -> None:
        if self.store_path is None:
            return
        data = {
            key: [v.model_dump(mode="json") for v in versions]
            for key, versions in self._versions.items()
        }
        write_json_atomic(self.store_path, data)

    def record(
        self,
        config_path: Path,
        old: Dict[str, Any],
        new: Dict[str, Any],
        description: Optional[str] = None,
    ) -> Optional[ConfigVersion]:
        """Record a write. Writes that touch no server entry are not recorded."""
        changes = calculate_changes(old, new)
        if changes.empty:
            return None
        key = str(config_path)
        versions = self._versions.setdefault(key, [])
        version = ConfigVersion(
            version=(versions[-1].version + 1) if versions else 1,
            description=description,
            changes=changes,
        )
        versions.append(version)
        del versions[:-self.max_versions]
        self._save()
        return version

    def versions(self, config_path: Path) -> List[ConfigVersion]:
        return list(self._versions.get(str(config_path), []))
