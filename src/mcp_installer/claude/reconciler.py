"""
Config reconciler.

All reads and writes of the shared desktop config go through here. Callers
supply a mutator over the parsed document; the reconciler takes the
cross-process lock, recovers corrupt files, and writes atomically so that
every key the mutator does not touch keeps its value and position.
"""

import copy
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from mcp_installer.claude.config_store import ConfigStore, default_document
from mcp_installer.claude.history import ConfigHistory
from mcp_installer.claude.templates import get_template
from mcp_installer.core.exceptions import PreconditionFailedError
from mcp_installer.core.models import ServerEntry, VerifyReport
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)

Document = Dict[str, Any]
Mutator = Callable[[Document], Document]


def put_entry(name: str, entry: ServerEntry) -> Mutator:
    """Mutator adding or replacing one server entry."""

    def mutate(doc: Document) -> Document:
        doc["mcpServers"][name] = entry.to_config()
        return doc

    return mutate


def drop_entry(name: str) -> Mutator:
    """Mutator removing one server entry if present."""

    def mutate(doc: Document) -> Document:
        doc["mcpServers"].pop(name, None)
        return doc

    return mutate


class Reconciler:
    """Serializes and applies mutations to the desktop config."""

    def __init__(self, store: ConfigStore, history: Optional[ConfigHistory] = None):
        self.store = store
        self.history = history

    async def apply(
        self,
        path: Union[str, Path],
        mutator: Mutator,
        description: Optional[str] = None,
    ) -> Document:
        """
        Apply ``mutator`` to the document at ``path``.

        Args:
            path: Config file path
            mutator: Function from document to new document
            description: Optional note stored in the version history

        Returns:
            The document as written

        Raises:
            ConfigBusyError: If the lock cannot be taken within the timeout
            PreconditionFailedError: If the mutator returns something that is not a config document
        """
        path = Path(path)
        async with self.store.lock(path):
            doc, _ = self.store.load(path)
            before = copy.deepcopy(doc)
            updated = mutator(doc)
            if not isinstance(updated, dict) or not isinstance(updated.get("mcpServers"), dict):
                raise PreconditionFailedError("Config mutator must return a document with an mcpServers map")
            self.store.write(path, updated)

        if self.history is not None:
            self.history.record(path, before, updated, description)
        return updated

    async def read(self, path: Union[str, Path]) -> Document:
        """Locked read of the current document. A corrupt file is reset on disk."""
        path = Path(path)
        async with self.store.lock(path):
            doc, recovered = self.store.load(path)
            if recovered:
                self.store.write(path, doc)
        return doc

    async def verify(self, path: Union[str, Path], required: Iterable[str]) -> VerifyReport:
        """
        Report which required server names have no entry.

        A corrupt file is backed up and reset to the default document first.
        """
        doc = await self.read(path)
        servers = doc.get("mcpServers", {})
        missing = {name for name in required if name not in servers}
        if missing:
            logger.info(f"Config {path} is missing servers: {sorted(missing)}")
        return VerifyReport(missing=missing)

    async def repair(
        self,
        path: Union[str, Path],
        required: Iterable[str],
        modules_path: str = "node_modules",
    ) -> List[str]:
        """
        Add template entries for every required server that is missing.

        Returns:
            Names that were added
        """
        required = list(required)
        added: List[str] = []

        def mutate(doc: Document) -> Document:
            for name in required:
                if name not in doc["mcpServers"]:
                    doc["mcpServers"][name] = get_template(name).to_entry(modules_path).to_config()
                    added.append(name)
            return doc

        await self.apply(path, mutate, description="repair")
        if added:
            logger.info(f"Repaired config {path}: added {added}")
        return added

    async def reset(self, path: Union[str, Path]) -> Document:
        """Replace the document with the default one."""
        return await self.apply(path, lambda _doc: default_document(), description="reset")

    async def upsert(self, path: Union[str, Path], name: str, entry: ServerEntry) -> Document:
        return await self.apply(path, put_entry(name, entry), description=f"upsert {name}")

    async def remove(self, path: Union[str, Path], name: str) -> Document:
        return await self.apply(path, drop_entry(name), description=f"remove {name}")
