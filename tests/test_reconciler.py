"""
Test desktop config reconciliation.

Corrupt-file recovery, untouched-key preservation, atomic writes and
verify/repair.
"""

import json
from unittest.mock import patch

import pytest

from mcp_installer.claude.config_store import ConfigStore, default_document
from mcp_installer.claude.history import ConfigHistory
from mcp_installer.claude.paths import desktop_config_path
from mcp_installer.claude.reconciler import Reconciler
from mcp_installer.core.exceptions import ConfigBusyError, PreconditionFailedError
from mcp_installer.core.models import ServerEntry
from mcp_installer.tools.system import LockFile

REQUIRED = {"github", "redis", "time"}


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "Claude" / "claude_desktop_config.json"


@pytest.fixture
def reconciler(tmp_path):
    return Reconciler(ConfigStore(lock_timeout=0.2), ConfigHistory(tmp_path / "history.json"))


class TestCorruptConfig:
    """Repair of an unparseable config file."""

    @pytest.mark.asyncio
    async def test_verify_then_repair_corrupt_config(self, reconciler, config_path):
        """Test corrupt config is backed up, reset and repaired."""
        config_path.parent.mkdir(parents=True)
        config_path.write_text('{ "mcpServers": { "github": ,, }')

        report = await reconciler.verify(config_path, REQUIRED)
        assert report.missing == REQUIRED
        assert not report.ok

        backups = list(config_path.parent.glob("claude_desktop_config.json.*.backup"))
        assert len(backups) == 1
        assert backups[0].read_text() == '{ "mcpServers": { "github": ,, }'
        assert json.loads(config_path.read_text()) == default_document()

        added = await reconciler.repair(config_path, REQUIRED)
        assert sorted(added) == sorted(REQUIRED)

        doc = json.loads(config_path.read_text())
        assert set(doc["mcpServers"]) == REQUIRED
        assert doc["mcpServers"]["github"]["command"][0] == "node"

        report = await reconciler.verify(config_path, REQUIRED)
        assert report.missing == set()

    @pytest.mark.asyncio
    async def test_missing_file_uses_default_document(self, reconciler, config_path):
        """Test a missing config is synthesized from defaults on first write."""
        entry = ServerEntry(command=["node", "index.js"], cwd="/srv/x")

        doc = await reconciler.upsert(config_path, "x", entry)

        assert doc["theme"] == "light"
        assert doc["settings"] == {"autoStart": True, "notifications": True}
        assert doc["mcpServers"]["x"] == {
            "command": ["node", "index.js"],
            "cwd": "/srv/x",
            "env": {},
            "autoRestart": True,
        }

    @pytest.mark.asyncio
    async def test_non_object_servers_map_is_reset(self, reconciler, config_path):
        """Test a non-object mcpServers is replaced and the rest kept."""
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({"mcpServers": [1, 2], "theme": "dark"}))

        doc = await reconciler.read(config_path)

        assert doc == {"mcpServers": {}, "theme": "dark"}
        assert list(config_path.parent.glob("*.backup"))

    def test_backup_names_never_collide(self, tmp_path):
        """Test two backups within the same millisecond get distinct names."""
        path = tmp_path / "claude_desktop_config.json"
        path.write_text("garbage")
        store = ConfigStore()

        with patch.object(store.clock, "now", return_value=store.clock.now()):
            first = store.backup_file(path)
            second = store.backup_file(path)

        assert first != second
        assert first.exists() and second.exists()


class TestApply:
    """Mutations through the reconciler."""

    @pytest.mark.asyncio
    async def test_untouched_keys_keep_value_and_order(self, reconciler, config_path):
        """Test keys the mutator does not touch survive bit for bit."""
        original = {
            "zeta": {"nested": [1, 2, {"x": None}]},
            "mcpServers": {"keep": {"command": ["a"], "custom": 1}},
            "alpha": "value",
            "apiKeys": {"k": "v"},
        }
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps(original))

        await reconciler.upsert(config_path, "new", ServerEntry(command=["node", "x.js"]))

        doc = json.loads(config_path.read_text())
        assert list(doc) == list(original)
        for key in ("zeta", "alpha", "apiKeys"):
            assert doc[key] == original[key]
        assert doc["mcpServers"]["keep"] == {"command": ["a"], "custom": 1}
        assert "new" in doc["mcpServers"]

    @pytest.mark.asyncio
    async def test_written_with_two_space_indent(self, reconciler, config_path):
        """Test output is pretty-printed JSON."""
        await reconciler.upsert(config_path, "x", ServerEntry(command=["node"]))

        text = config_path.read_text()
        assert text.startswith('{\n  "mcpServers": {\n    "x"')

    @pytest.mark.asyncio
    async def test_crash_before_rename_keeps_old_document(self, reconciler, config_path):
        """Test a failed rename leaves the previous file intact."""
        config_path.parent.mkdir(parents=True)
        before = {"mcpServers": {"old": {"command": ["a"]}}, "theme": "dark"}
        config_path.write_text(json.dumps(before))

        with patch("mcp_installer.tools.system.os.replace", side_effect=OSError("disk gone")):
            with pytest.raises(OSError):
                await reconciler.upsert(config_path, "new", ServerEntry(command=["node"]))

        assert json.loads(config_path.read_text()) == before
        assert not LockFile(config_path).lock_path.exists()

    @pytest.mark.asyncio
    async def test_mutator_must_return_document(self, reconciler, config_path):
        """Test a mutator dropping mcpServers is refused."""
        with pytest.raises(PreconditionFailedError):
            await reconciler.apply(config_path, lambda doc: {"theme": "x"})

        assert not config_path.exists()

    @pytest.mark.asyncio
    async def test_busy_lock_times_out(self, reconciler, config_path):
        """Test a held lock makes apply fail with Busy."""
        config_path.parent.mkdir(parents=True)
        holder = LockFile(config_path)
        await holder.acquire()
        try:
            with pytest.raises(ConfigBusyError):
                await reconciler.upsert(config_path, "x", ServerEntry(command=["node"]))
        finally:
            holder.release()

    @pytest.mark.asyncio
    async def test_remove_entry(self, reconciler, config_path):
        """Test removing an entry leaves others alone."""
        await reconciler.upsert(config_path, "a", ServerEntry(command=["node", "a.js"]))
        await reconciler.upsert(config_path, "b", ServerEntry(command=["node", "b.js"]))

        doc = await reconciler.remove(config_path, "a")

        assert list(doc["mcpServers"]) == ["b"]

    @pytest.mark.asyncio
    async def test_history_records_changes(self, reconciler, config_path):
        """Test each server-changing write is versioned."""
        await reconciler.upsert(config_path, "a", ServerEntry(command=["node"]))
        await reconciler.upsert(config_path, "a", ServerEntry(command=["node", "v2.js"]))
        await reconciler.remove(config_path, "a")

        versions = reconciler.history.versions(config_path)
        assert [v.version for v in versions] == [1, 2, 3]
        assert versions[0].changes.added == ["a"]
        assert versions[1].changes.modified == ["a"]
        assert versions[2].changes.removed == ["a"]


class TestConfigPath:
    """Platform config locations."""

    @pytest.mark.parametrize("system,parts", [
        ("Darwin", ("Library", "Application Support", "Claude", "claude_desktop_config.json")),
        ("Linux", (".config", "claude", "claude_desktop_config.json")),
    ])
    def test_desktop_config_path(self, tmp_path, system, parts):
        """Test config path per OS."""
        path = desktop_config_path(system=system, home=tmp_path)
        assert path == tmp_path.joinpath(*parts)
