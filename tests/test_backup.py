"""
Test backup creation, restore, deletion and statistics.
"""

import asyncio
import json
import shutil
import time
from datetime import datetime, timezone

import pytest

from conftest import FakeRuntime, make_record
from mcp_installer.backup import engine as backup_engine
from mcp_installer.backup.engine import MANIFEST_NAME, BackupEngine, matches_any
from mcp_installer.backup.index import BackupIndex
from mcp_installer.backup.statistics import calculate_statistics
from mcp_installer.core.events import EventType
from mcp_installer.core.exceptions import BackupNotFoundError, CorruptBackupError, OperationCancelled
from mcp_installer.core.models import (
    BackupOptions,
    BackupRecord,
    BackupStatus,
    BackupType,
    ContainerState,
    ItemType,
    RestoreOptions,
    ServerKind,
)
from mcp_installer.runtime.lifecycle import ServerLifecycle
from mcp_installer.tools.runner import CancelToken


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def engine(tmp_path, runtime):
    lifecycle = ServerLifecycle(runtime, FakeRuntime(), poll_window=1.0)
    return BackupEngine(tmp_path / "backups", lifecycle=lifecycle)


@pytest.fixture
def record(server_tree, runtime):
    record = make_record(server_tree)
    runtime.add(record.runtime_id, record.image)
    return record


class TestMatching:
    """Test exclusion pattern matching."""

    @pytest.mark.parametrize("relative,patterns,expected", [
        ("y.bin", ["*.bin"], True),
        ("nested/y.bin", ["*.bin"], True),
        ("nested/y.bin", ["nested/*"], True),
        ("x.json", ["*.bin"], False),
        ("cache\\tmp.dat", ["cache/*"], True),
        ("x.json", [], False),
    ])
    def test_matches_any(self, relative, patterns, expected):
        assert matches_any(relative, patterns) is expected


class TestCreate:
    """Test BackupEngine.create."""

    @pytest.mark.asyncio
    async def test_full_backup(self, engine, record, server_tree):
        """Test a full backup captures config and data but not logs."""
        events = []
        backup = await engine.create(record, emit=events.append)

        assert backup.status == BackupStatus.COMPLETED
        assert backup.backup_id.startswith("backup_servers_")
        paths = {item.path: item for item in backup.items}
        assert set(paths) == {"config/server.json", "data/x.json", "data/nested/empty.txt"}
        assert paths["data/nested/empty.txt"].size == 0
        assert paths["data/x.json"].size == 12
        assert paths["data/x.json"].original_path == str(server_tree / "data" / "x.json")
        assert backup.size == 12 + len('{"port": 3000}')

        directory = engine.backup_dir(backup.backup_id)
        assert (directory / "data" / "nested" / "empty.txt").read_bytes() == b""
        assert not (directory / "logs").exists()
        manifest = json.loads((directory / MANIFEST_NAME).read_text())
        assert manifest["id"] == backup.backup_id
        assert len(manifest["items"]) == 3

        assert [e.payload["percent"] for e in events] == [33, 66, 90, 100]
        assert all(e.type == EventType.BACKUP_PROGRESS for e in events)

    @pytest.mark.asyncio
    async def test_logs_only_when_asked(self, engine, record):
        backup = await engine.create(record, BackupOptions(include_logs=True))

        logs = [item for item in backup.items if item.type == ItemType.LOG]
        assert [item.path for item in logs] == ["logs/server.log"]

    @pytest.mark.asyncio
    async def test_config_only(self, engine, record):
        backup = await engine.create(record, BackupOptions(type=BackupType.CONFIG))

        assert [item.path for item in backup.items] == ["config/server.json"]

    @pytest.mark.asyncio
    async def test_exclude_patterns(self, engine, record, server_tree):
        """Test pattern exclusion drops matching data files."""
        (server_tree / "data" / "x.json").write_bytes(b"0123456789")
        (server_tree / "data" / "y.bin").write_bytes(b"\0" * (1024 * 1024))

        backup = await engine.create(record, BackupOptions(exclude_patterns=["*.bin"]))

        data = [item for item in backup.items if item.type == ItemType.DATA]
        assert {item.path for item in data} == {"data/x.json", "data/nested/empty.txt"}
        assert sum(item.size for item in data) == 10
        assert not (engine.backup_dir(backup.backup_id) / "data" / "y.bin").exists()

    @pytest.mark.asyncio
    async def test_large_file_threshold_is_exclusive(self, tmp_path, record, server_tree):
        """Test a file exactly at the threshold is kept and one byte over is not."""
        (server_tree / "data" / "x.json").write_bytes(b"0123456789")
        (server_tree / "data" / "big.dat").write_bytes(b"01234567890")
        engine = BackupEngine(tmp_path / "backups", large_file_threshold=10)

        backup = await engine.create(record, BackupOptions(exclude_large_files=True))

        paths = {item.path for item in backup.items}
        assert "data/x.json" in paths
        assert "data/big.dat" not in paths

    @pytest.mark.asyncio
    async def test_large_file_patterns(self, tmp_path, record, server_tree):
        (server_tree / "data" / "model.ckpt").write_bytes(b"w")
        engine = BackupEngine(tmp_path / "backups", large_file_patterns=["*.ckpt"])

        backup = await engine.create(record, BackupOptions(exclude_large_files=True))

        assert "data/model.ckpt" not in {item.path for item in backup.items}

    @pytest.mark.asyncio
    async def test_missing_directories(self, engine, tmp_path):
        record = make_record(tmp_path / "nothing-here")

        backup = await engine.create(record)

        assert backup.status == BackupStatus.COMPLETED
        assert backup.items == []

    @pytest.mark.asyncio
    async def test_cancelled_backup_is_marked_failed(self, engine, record):
        token = CancelToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await engine.create(record, token=token)

        [backup] = await engine.list_backups()
        assert backup.status == BackupStatus.FAILED
        assert backup.items == []
        assert not (engine.backup_dir(backup.backup_id) / MANIFEST_NAME).exists()


class TestRestore:
    """Test BackupEngine.restore."""

    @pytest.mark.asyncio
    async def test_restore_round_trip(self, engine, record, runtime, server_tree):
        """Test restored files match the backup and the server runs again."""
        backup = await engine.create(record)
        (server_tree / "data" / "x.json").write_text('{"a": 0}')
        (server_tree / "config" / "server.json").write_text("{}")
        events = []

        restored = await engine.restore(backup.backup_id, record=record, emit=events.append)

        assert len(restored) == 3
        assert (server_tree / "data" / "x.json").read_bytes() == b'{"a": 12345}'
        assert (server_tree / "config" / "server.json").read_text() == '{"port": 3000}'
        snapshots = list(server_tree.parent.glob("data_backup_*"))
        assert len(snapshots) == 1
        assert (snapshots[0] / "x.json").read_text() == '{"a": 0}'
        assert runtime.containers[record.runtime_id].state == ContainerState.RUNNING
        assert [e.payload["percent"] for e in events] == [10, 40, 70, 90, 100]

    @pytest.mark.asyncio
    async def test_restore_without_restart(self, engine, record, runtime):
        backup = await engine.create(record)

        await engine.restore(backup.backup_id, record=record, opts=RestoreOptions(start_server=False))

        assert runtime.containers[record.runtime_id].state == ContainerState.EXITED

    @pytest.mark.asyncio
    async def test_restore_selected_categories(self, engine, record, server_tree):
        backup = await engine.create(record)
        (server_tree / "data" / "x.json").write_text("changed")
        (server_tree / "config" / "server.json").write_text("changed")

        await engine.restore(
            backup.backup_id,
            record=record,
            opts=RestoreOptions(restore_data=False, create_backup_before_restore=False),
        )

        assert (server_tree / "data" / "x.json").read_text() == "changed"
        assert (server_tree / "config" / "server.json").read_text() == '{"port": 3000}'
        assert not list(server_tree.parent.glob("*_backup_*"))

    @pytest.mark.asyncio
    async def test_unparseable_manifest(self, engine, record):
        backup = await engine.create(record)
        (engine.backup_dir(backup.backup_id) / MANIFEST_NAME).write_text("{not json")

        with pytest.raises(CorruptBackupError):
            await engine.restore(backup.backup_id, record=record)

    @pytest.mark.asyncio
    async def test_missing_manifest(self, engine):
        with pytest.raises(CorruptBackupError):
            await engine.restore("backup_servers_1_deadbeef")

    @pytest.mark.asyncio
    async def test_missing_item(self, engine, record, server_tree):
        backup = await engine.create(record)
        (engine.backup_dir(backup.backup_id) / "data" / "x.json").unlink()

        with pytest.raises(CorruptBackupError):
            await engine.restore(backup.backup_id, record=record, opts=RestoreOptions(stop_server=False))


class TestDelete:
    """Test backup deletion."""

    @pytest.mark.asyncio
    async def test_delete_backup(self, engine, record):
        backup = await engine.create(record)

        await engine.delete_backup(backup.backup_id)

        assert not engine.backup_dir(backup.backup_id).exists()
        assert await engine.list_backups() == []

    @pytest.mark.asyncio
    async def test_delete_unknown_backup(self, engine):
        with pytest.raises(BackupNotFoundError):
            await engine.delete_backup("backup_nope_1_00000000")


class TestIndex:
    """Test the persisted backup index."""

    @pytest.mark.asyncio
    async def test_index_survives_reload(self, engine, record, tmp_path):
        backup = await engine.create(record)

        reloaded = await BackupIndex(tmp_path / "backups").list("servers")

        assert [b.backup_id for b in reloaded] == [backup.backup_id]
        assert reloaded[0].status == BackupStatus.COMPLETED


class TestStatistics:
    """Test calculate_statistics."""

    def make(self, backup_id, server_id, created_at, status=BackupStatus.COMPLETED, size=100):
        return BackupRecord(
            backup_id=backup_id,
            server_id=server_id,
            server_name=server_id,
            server_kind=ServerKind.CONTAINER,
            status=status,
            created_at=created_at,
            size=size,
        )

    def test_statistics(self):
        records = [
            self.make("a", "servers", datetime(2025, 1, 6, 9, tzinfo=timezone.utc)),
            self.make("b", "servers", datetime(2025, 1, 7, 9, tzinfo=timezone.utc), size=50),
            self.make("c", "servers", datetime(2025, 1, 8, 23, tzinfo=timezone.utc), status=BackupStatus.FAILED),
            self.make("d", "other", datetime(2025, 1, 9, 1, tzinfo=timezone.utc)),
        ]

        stats = calculate_statistics(records, "servers")

        assert stats.backup_count == 3
        assert stats.completed_count == 2
        assert stats.failed_count == 1
        assert stats.total_size == 150
        assert stats.by_day["Monday"] == 1
        assert stats.by_day["Wednesday"] == 1
        assert stats.by_hour[9] == 2
        assert stats.oldest_backup == datetime(2025, 1, 6, 9, tzinfo=timezone.utc)
        assert stats.newest_backup == datetime(2025, 1, 8, 23, tzinfo=timezone.utc)

    def test_empty(self):
        stats = calculate_statistics([])

        assert stats.backup_count == 0
        assert stats.oldest_backup is None
        assert sum(stats.by_hour.values()) == 0


class TestOrchestratedBackup:
    """Test backups going through the orchestrator."""

    @pytest.mark.asyncio
    async def test_stop_waits_for_backup(self, harness, server_tree):
        """Test a stop submitted during a backup runs after it and sees its result."""
        await harness.register(make_record(server_tree))
        orchestrator = harness.orchestrator

        backup = orchestrator.submit("backup", "servers")
        await asyncio.sleep(0.01)
        stop = orchestrator.submit("stop", "servers")
        await stop.result()
        result = await backup.result()

        events = harness.recorder.events
        backup_done = next(i for i, e in enumerate(events)
                           if e.task_id == backup.task_id and e.type == EventType.DONE)
        stop_state = next(i for i, e in enumerate(events)
                          if e.task_id == stop.task_id and e.type == EventType.SERVER_STATE)
        assert backup_done < stop_state

        progress = [e.payload["percent"] for e in harness.recorder.of_task(backup.task_id)
                    if e.type == EventType.BACKUP_PROGRESS]
        assert progress == [33, 66, 90, 100]
        assert result.status == BackupStatus.COMPLETED
        assert {item.path for item in result.items} >= {"config/server.json", "data/x.json"}
        assert orchestrator.registry.get("servers").state == ContainerState.EXITED

    @pytest.mark.asyncio
    async def test_restore_after_delete_writes_files_only(self, harness, server_tree):
        await harness.register(make_record(server_tree))
        orchestrator = harness.orchestrator
        backup = await orchestrator.backup("servers")
        await orchestrator.delete("servers")
        (server_tree / "data" / "x.json").unlink()

        restored = await orchestrator.restore(backup.backup_id)

        assert len(restored) == 3
        assert (server_tree / "data" / "x.json").read_bytes() == b'{"a": 12345}'
        assert "mcp-servers" not in harness.runtime.containers


class TestRoundTrip:
    """Test restore into a clean tree."""

    @pytest.mark.asyncio
    async def test_excluded_files_stay_absent(self, engine, record, server_tree):
        (server_tree / "data" / "x.json").write_bytes(b"0123456789")
        (server_tree / "data" / "y.bin").write_bytes(b"\0" * (1024 * 1024))
        backup = await engine.create(record, BackupOptions(exclude_patterns=["*.bin"]))
        shutil.rmtree(server_tree)

        await engine.restore(backup.backup_id)

        assert (server_tree / "data" / "x.json").read_bytes() == b"0123456789"
        assert (server_tree / "data" / "nested" / "empty.txt").read_bytes() == b""
        assert not (server_tree / "data" / "y.bin").exists()

    @pytest.mark.asyncio
    async def test_backup_after_restore_has_same_items(self, engine, record, server_tree):
        first = await engine.create(record)
        shutil.rmtree(server_tree)
        await engine.restore(first.backup_id, record=record)

        second = await engine.create(record)

        assert {(i.path, i.size) for i in second.items} == {(i.path, i.size) for i in first.items}


class TestFileCopiesOffLoop:
    """Test file copies run in worker threads so the event loop keeps serving other tasks."""

    @pytest.fixture
    def slow_copies(self, monkeypatch):
        real_copy = backup_engine.copy_file

        def slow_copy(source, target):
            time.sleep(0.2)
            return real_copy(source, target)

        monkeypatch.setattr(backup_engine, "copy_file", slow_copy)

    async def count_ticks(self, operation) -> int:
        ticks = 0
        done = asyncio.Event()

        async def ticker():
            nonlocal ticks
            while not done.is_set():
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        try:
            await operation
        finally:
            done.set()
            await task
        return ticks

    @pytest.mark.asyncio
    async def test_backup(self, engine, record, slow_copies):
        ticks = await self.count_ticks(engine.create(record))

        # Three files at 0.2s each
        assert ticks >= 10

    @pytest.mark.asyncio
    async def test_restore(self, engine, record, slow_copies):
        backup = await engine.create(record)

        ticks = await self.count_ticks(engine.restore(backup.backup_id, record=record))

        assert ticks >= 10
