"""
Test the persistent server registry.
"""

import json

import pytest

from conftest import make_record
from mcp_installer.core.exceptions import CorruptConfigError, PreconditionFailedError, ServerNotFoundError
from mcp_installer.core.models import ContainerState
from mcp_installer.core.registry import ServerRegistry


@pytest.fixture
def registry_path(tmp_path):
    return tmp_path / "state" / "servers.json"


class TestServerRegistry:
    """Test ServerRegistry."""

    @pytest.mark.asyncio
    async def test_add_and_reload(self, registry_path, tmp_path):
        """Test records survive a reload from disk."""
        registry = ServerRegistry(registry_path)
        await registry.add(make_record(tmp_path / "servers"))

        reloaded = ServerRegistry(registry_path)

        record = reloaded.require("servers")
        assert record.image == "mcp-servers:v1.2.0"
        assert record.state == ContainerState.RUNNING
        assert json.loads(registry_path.read_text())["version"] == "1.0"

    @pytest.mark.asyncio
    async def test_duplicate_id(self, tmp_path):
        registry = ServerRegistry()
        await registry.add(make_record(tmp_path))

        with pytest.raises(PreconditionFailedError):
            await registry.add(make_record(tmp_path))

    @pytest.mark.asyncio
    async def test_resolve_by_name(self, tmp_path):
        registry = ServerRegistry()
        await registry.add(make_record(tmp_path, server_id="servers-2"))

        assert registry.resolve("servers").server_id == "servers-2"
        assert registry.resolve("servers-2").name == "servers"
        with pytest.raises(ServerNotFoundError):
            registry.resolve("missing")

    @pytest.mark.asyncio
    async def test_allocate_id(self, tmp_path):
        registry = ServerRegistry()
        assert registry.allocate_id("servers") == "servers"

        await registry.add(make_record(tmp_path))
        await registry.add(make_record(tmp_path, server_id="servers-2", name="other"))

        assert registry.allocate_id("servers") == "servers-3"

    @pytest.mark.asyncio
    async def test_update_and_remove(self, registry_path, tmp_path):
        registry = ServerRegistry(registry_path)
        record = make_record(tmp_path)
        await registry.add(record)

        await registry.update(record.model_copy(update={"state": ContainerState.EXITED}))
        assert ServerRegistry(registry_path).require("servers").state == ContainerState.EXITED

        removed = await registry.remove("servers")
        assert removed.server_id == "servers"
        assert ServerRegistry(registry_path).list() == []
        with pytest.raises(ServerNotFoundError):
            await registry.remove("servers")

    @pytest.mark.asyncio
    async def test_update_unknown(self, tmp_path):
        with pytest.raises(ServerNotFoundError):
            await ServerRegistry().update(make_record(tmp_path))

    def test_unreadable_file(self, registry_path):
        registry_path.parent.mkdir(parents=True)
        registry_path.write_text("{broken")

        with pytest.raises(CorruptConfigError):
            ServerRegistry(registry_path)

    def test_invalid_records_are_skipped(self, registry_path, tmp_path):
        registry_path.parent.mkdir(parents=True)
        valid = make_record(tmp_path).model_dump(mode="json")
        registry_path.write_text(json.dumps({"servers": [valid, {"name": "no-id"}]}))

        registry = ServerRegistry(registry_path)

        assert [r.server_id for r in registry.list()] == ["servers"]
