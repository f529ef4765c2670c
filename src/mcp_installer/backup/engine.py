"""
Backup and restore of installed servers.

A backup lives in ``<backup_root>/<backup_id>/`` and mirrors the server's
``config/``, ``data/`` and (optionally) ``logs/`` directories, plus a
``manifest.json`` listing every captured file. A backup is ``completed``
only once its manifest has been written.
"""

import asyncio
import fnmatch
import os
import shutil
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from mcp_installer.backup.index import BackupIndex
from mcp_installer.core.events import Emit, Event, EventType, null_emit
from mcp_installer.core.exceptions import (
    BackupNotFoundError,
    CorruptBackupError,
    InstallerError,
    OperationCancelled,
)
from mcp_installer.core.models import (
    BackupItem,
    BackupManifest,
    BackupOptions,
    BackupRecord,
    BackupStatus,
    BackupType,
    ItemType,
    RestoreOptions,
    ServerRecord,
)
from mcp_installer.runtime.lifecycle import ServerLifecycle
from mcp_installer.tools.runner import CancelToken
from mcp_installer.tools.system import Clock, IdGenerator, KeyedLock, iso_stamp, unique_path, write_json_atomic
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)

MANIFEST_NAME = "manifest.json"
DEFAULT_LARGE_FILE_THRESHOLD = 100 * 1024 * 1024

CATEGORY_DIRS: Dict[ItemType, str] = {
    ItemType.CONFIG: "config",
    ItemType.DATA: "data",
    ItemType.LOG: "logs",
}


def _walk(root: Path) -> Iterator[Tuple[Path, str]]:
    """Yield (file, '/'-separated path relative to root) in a stable order."""
    if not root.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            yield path, path.relative_to(root).as_posix()


def copy_file(source: Path, target: Path) -> int:
    """Copy one file's bytes to ``target``, creating parents. Returns the size."""
    target.parent.mkdir(parents=True, exist_ok=True)
    content = source.read_bytes()
    target.write_bytes(content)
    return len(content)


def matches_any(relative: str, patterns: List[str]) -> bool:
    """Glob match against the relative path or the bare file name."""
    relative = relative.replace("\\", "/")
    name = relative.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(relative, p) or fnmatch.fnmatch(name, p) for p in patterns)


class BackupEngine:
    """Creates, restores, lists and deletes server backups."""

    def __init__(
        self,
        root: Path,
        lifecycle: Optional[ServerLifecycle] = None,
        index: Optional[BackupIndex] = None,
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
        large_file_threshold: int = DEFAULT_LARGE_FILE_THRESHOLD,
        large_file_patterns: Optional[List[str]] = None,
    ):
        self.root = Path(root)
        self.lifecycle = lifecycle
        self.index = index or BackupIndex(self.root)
        self.clock = clock or Clock()
        self.ids = ids or IdGenerator()
        self.large_file_threshold = large_file_threshold
        self.large_file_patterns = list(large_file_patterns or [])
        # One backup or restore per server at a time
        self._locks = KeyedLock()

    def backup_dir(self, backup_id: str) -> Path:
        return self.root / backup_id

    def new_backup_id(self, server_id: str) -> str:
        return f"backup_{server_id}_{self.clock.unix_ms()}_{self.ids.token(8)}"

    def _progress(self, emit: Emit, event_type: EventType, backup_id: str, percent: int, message: str) -> None:
        emit(Event(type=event_type, payload={"backup_id": backup_id, "percent": percent, "message": message}))

    def _is_large(self, path: Path, relative: str) -> bool:
        if self.large_file_patterns and matches_any(relative, self.large_file_patterns):
            return True
        # Files exactly at the threshold are kept
        return path.stat().st_size > self.large_file_threshold

    def _select(self, record: ServerRecord, category: ItemType, opts: BackupOptions) -> List[Tuple[Path, str]]:
        source = Path(record.install_path) / CATEGORY_DIRS[category]
        selected = []
        for path, relative in _walk(source):
            if category == ItemType.LOG and not relative.endswith(".log"):
                continue
            if category == ItemType.DATA:
                if opts.exclude_patterns and matches_any(relative, opts.exclude_patterns):
                    logger.debug(f"Excluding {relative} (pattern)")
                    continue
                if opts.exclude_large_files and self._is_large(path, relative):
                    logger.debug(f"Excluding {relative} (large file)")
                    continue
            selected.append((path, relative))
        return selected

    async def _capture(
        self,
        record: ServerRecord,
        category: ItemType,
        opts: BackupOptions,
        destination: Path,
        token: CancelToken,
    ) -> List[BackupItem]:
        files = await asyncio.to_thread(self._select, record, category, opts)
        items = []
        folder = CATEGORY_DIRS[category]
        for source, relative in files:
            token.raise_if_cancelled()
            size = await asyncio.to_thread(copy_file, source, destination / folder / relative)
            items.append(BackupItem(
                type=category,
                path=f"{folder}/{relative}",
                original_path=str(source),
                size=size,
            ))
        return items

    async def create(
        self,
        record: ServerRecord,
        opts: Optional[BackupOptions] = None,
        emit: Emit = null_emit,
        token: Optional[CancelToken] = None,
    ) -> BackupRecord:
        """
        Snapshot a server's on-disk state.

        Args:
            record: Server to back up
            opts: What to include
            emit: Sink for ``backup.progress`` events (33/66/90/100 %)
            token: Cancellation token

        Returns:
            The completed BackupRecord

        Raises:
            OperationCancelled: If cancelled; the record is marked failed
            InstallerError: Any other failure; the record is marked failed
        """
        opts = opts or BackupOptions()
        token = token or CancelToken()

        async with self._locks.hold(record.server_id):
            backup = BackupRecord(
                backup_id=self.new_backup_id(record.server_id),
                server_id=record.server_id,
                server_name=record.name,
                server_kind=record.kind,
                name=opts.name,
                description=opts.description,
                type=opts.type,
                created_at=self.clock.now(),
            )
            await self.index.add(backup)
            logger.info(f"Creating {opts.type.value} backup {backup.backup_id} of {record.name}")

            try:
                backup = await self._create(record, backup, opts, emit, token)
            except (InstallerError, OSError) as e:
                backup.status = BackupStatus.FAILED
                backup.error = str(e)
                backup.items = []
                backup.completed_at = self.clock.now()
                await self.index.update(backup)
                if isinstance(e, OperationCancelled):
                    logger.warning(f"Backup {backup.backup_id} cancelled")
                else:
                    logger.error(f"Backup {backup.backup_id} failed: {e}")
                raise
            return backup

    async def _create(
        self,
        record: ServerRecord,
        backup: BackupRecord,
        opts: BackupOptions,
        emit: Emit,
        token: CancelToken,
    ) -> BackupRecord:
        destination = self.backup_dir(backup.backup_id)
        include_config = opts.type in (BackupType.FULL, BackupType.CONFIG)
        include_data = opts.type in (BackupType.FULL, BackupType.DATA)
        include_logs = opts.type == BackupType.FULL and opts.include_logs

        (destination / "config").mkdir(parents=True, exist_ok=True)
        (destination / "data").mkdir(parents=True, exist_ok=True)
        if include_logs:
            (destination / "logs").mkdir(parents=True, exist_ok=True)

        items: List[BackupItem] = []
        token.raise_if_cancelled()
        if include_config:
            items += await self._capture(record, ItemType.CONFIG, opts, destination, token)
        self._progress(emit, EventType.BACKUP_PROGRESS, backup.backup_id, 33, "Configuration captured")

        if include_data:
            items += await self._capture(record, ItemType.DATA, opts, destination, token)
        self._progress(emit, EventType.BACKUP_PROGRESS, backup.backup_id, 66, "Data captured")

        if include_logs:
            items += await self._capture(record, ItemType.LOG, opts, destination, token)
        self._progress(emit, EventType.BACKUP_PROGRESS, backup.backup_id, 90, "Logs captured")

        token.raise_if_cancelled()
        manifest = BackupManifest(
            id=backup.backup_id,
            server_id=record.server_id,
            created_at=backup.created_at,
            options=opts,
            items=items,
        )
        await asyncio.to_thread(write_json_atomic, destination / MANIFEST_NAME, manifest.model_dump(mode="json"))

        backup.items = items
        backup.size = sum(item.size for item in items)
        backup.status = BackupStatus.COMPLETED
        backup.completed_at = self.clock.now()
        await self.index.update(backup)
        self._progress(emit, EventType.BACKUP_PROGRESS, backup.backup_id, 100, "Backup completed")
        logger.info(f"Backup {backup.backup_id} completed: {len(items)} files, {backup.size} bytes")
        return backup

    def load_manifest(self, backup_id: str) -> BackupManifest:
        path = self.backup_dir(backup_id) / MANIFEST_NAME
        if not path.is_file():
            raise CorruptBackupError(f"Backup {backup_id} has no manifest", details={"path": str(path)})
        try:
            return BackupManifest.model_validate_json(path.read_bytes())
        except (ValidationError, ValueError) as e:
            raise CorruptBackupError(f"Manifest of backup {backup_id} is unparseable: {e}") from e

    async def _snapshot_current(self, record: ServerRecord, categories: List[ItemType]) -> List[Path]:
        """Copy live directories aside as ``<dir>_backup_<timestamp>`` before overwriting them."""
        stamp = iso_stamp(self.clock.now())
        snapshots = []
        for category in categories:
            live = Path(record.install_path) / CATEGORY_DIRS[category]
            if not live.is_dir():
                continue
            target = unique_path(Path(f"{live}_backup_{stamp}"))
            await asyncio.to_thread(shutil.copytree, live, target)
            snapshots.append(target)
            logger.info(f"Saved current {live.name}/ to {target}")
        return snapshots

    async def restore(
        self,
        backup_id: str,
        record: Optional[ServerRecord] = None,
        opts: Optional[RestoreOptions] = None,
        emit: Emit = null_emit,
        token: Optional[CancelToken] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> List[BackupItem]:
        """
        Write a backup's files back to their original locations.

        Args:
            backup_id: Backup to restore
            record: Server the backup belongs to; needed to stop/start it
            opts: Which categories to restore and what to do around it
            emit: Sink for ``restore.progress`` events (10/40/70/90/100 %)
            token: Cancellation token
            extra_env: Environment injected when the server is started again

        Returns:
            The items that were written back

        Raises:
            CorruptBackupError: If the manifest is missing or unparseable
        """
        opts = opts or RestoreOptions()
        token = token or CancelToken()
        manifest = self.load_manifest(backup_id)

        async with self._locks.hold(manifest.server_id):
            self._progress(emit, EventType.RESTORE_PROGRESS, backup_id, 10, "Manifest loaded")

            if record is not None and self.lifecycle is not None and opts.stop_server:
                await self.lifecycle.stop(record)

            enabled = []
            if opts.restore_config:
                enabled.append(ItemType.CONFIG)
            if opts.restore_data:
                enabled.append(ItemType.DATA)
            if opts.restore_logs:
                enabled.append(ItemType.LOG)

            if opts.create_backup_before_restore and record is not None:
                await self._snapshot_current(record, [c for c in enabled if c != ItemType.LOG])
            self._progress(emit, EventType.RESTORE_PROGRESS, backup_id, 40, "Current state saved")

            source_root = self.backup_dir(backup_id)
            restored = []
            for item in manifest.items:
                if item.type not in enabled:
                    continue
                token.raise_if_cancelled()
                source = source_root / item.path
                if not source.is_file():
                    raise CorruptBackupError(
                        f"Backup {backup_id} is missing {item.path}",
                        details={"path": str(source)},
                    )
                await asyncio.to_thread(copy_file, source, Path(item.original_path))
                restored.append(item)
            self._progress(emit, EventType.RESTORE_PROGRESS, backup_id, 70, f"Restored {len(restored)} files")

            if record is not None and self.lifecycle is not None and opts.start_server:
                await self.lifecycle.start(record, extra_env=extra_env, token=token)
            self._progress(emit, EventType.RESTORE_PROGRESS, backup_id, 90, "Server restarted")

            logger.info(f"Restored {len(restored)} files from {backup_id}")
            self._progress(emit, EventType.RESTORE_PROGRESS, backup_id, 100, "Restore completed")
            return restored

    async def delete_backup(self, backup_id: str) -> None:
        """Remove a backup's directory and its index entry."""
        directory = self.backup_dir(backup_id)
        existed = directory.exists()
        if existed:
            shutil.rmtree(directory)
        removed = await self.index.remove(backup_id)
        if not existed and not removed:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        logger.info(f"Deleted backup {backup_id}")

    async def list_backups(self, server_id: Optional[str] = None) -> List[BackupRecord]:
        return await self.index.list(server_id)

    async def get(self, backup_id: str) -> BackupRecord:
        record = await self.index.get(backup_id)
        if record is None:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        return record
