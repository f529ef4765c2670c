"""
Desktop config file storage.

Reads and writes ``claude_desktop_config.json`` with corruption recovery:
an unparseable file is copied to a timestamped ``.backup`` sibling and
replaced by the default document. Writes are atomic.
"""

import copy
import json
import shutil
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from mcp_installer.tools.system import Clock, LockFile, iso_stamp, unique_path, write_json_atomic
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DOCUMENT: Dict[str, Any] = {
    "mcpServers": {},
    "theme": "light",
    "apiKeys": {},
    "settings": {
        "autoStart": True,
        "notifications": True,
    },
}


def default_document() -> Dict[str, Any]:
    """Fresh copy of the default config document."""
    return copy.deepcopy(DEFAULT_DOCUMENT)


class ConfigStore:
    """Atomic JSON storage for the desktop config."""

    def __init__(self, lock_timeout: float = 5.0, clock: Optional[Clock] = None):
        self.lock_timeout = lock_timeout
        self.clock = clock or Clock()

    def lock(self, path: Union[str, Path]) -> LockFile:
        """Cross-process lock guarding ``path``."""
        return LockFile(path, timeout=self.lock_timeout)

    def backup_file(self, path: Union[str, Path]) -> Path:
        """
        Copy ``path`` to ``<path>.<timestamp>.backup``.

        Colliding timestamps get a ``-1``, ``-2``... counter.
        """
        path = Path(path)
        stamp = iso_stamp(self.clock.now())
        backup_path = unique_path(Path(f"{path}.{stamp}"), ".backup")
        shutil.copy2(path, backup_path)
        logger.warning(f"Backed up unreadable config {path} to {backup_path}")
        return backup_path

    def load(self, path: Union[str, Path]) -> Tuple[Dict[str, Any], bool]:
        """
        Read the document. Callers must hold the lock.

        Returns:
            ``(document, recovered)`` where ``recovered`` is True when the file
            was corrupt and the returned document is a reset one
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"Config {path} does not exist, using defaults")
            return default_document(), False

        try:
            with open(path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Config {path} is not valid JSON: {e}")
            self.backup_file(path)
            return default_document(), True

        if not isinstance(doc, dict):
            logger.warning(f"Config {path} root is not an object")
            self.backup_file(path)
            return default_document(), True

        servers = doc.get("mcpServers")
        if servers is None:
            doc["mcpServers"] = {}
        elif not isinstance(servers, dict):
            logger.warning(f"Config {path} has a non-object mcpServers, resetting it")
            self.backup_file(path)
            doc["mcpServers"] = {}
            return doc, True

        return doc, False

    def write(self, path: Union[str, Path], doc: Dict[str, Any]) -> None:
        """Write the document atomically with 2-space indentation."""
        write_json_atomic(path, doc)
        logger.debug(f"Wrote config {path}")
