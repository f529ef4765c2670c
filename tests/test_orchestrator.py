"""
Test the orchestrator: installs, task events, serialization and policy.
"""

import asyncio
import json

import pytest

from conftest import make_record
from mcp_installer.core.capabilities import FileSecretStore, KeyringSecretStore, RolePolicy, SecretStoreError
from mcp_installer.core.events import EventType
from mcp_installer.core.exceptions import (
    ErrorKind,
    ExecError,
    InstallerError,
    OperationCancelled,
    PolicyDeniedError,
    PreconditionFailedError,
    ServerNotFoundError,
)
from mcp_installer.core.models import ContainerState, InstallOptions, ServerKind
from mcp_installer.core.orchestrator import Orchestrator
from mcp_installer.utils.config import Settings

SERVERS_REPO = "https://github.com/modelcontextprotocol/servers"


@pytest.fixture
def node_repo(tmp_path):
    repo = tmp_path / "src" / "weather"
    repo.mkdir(parents=True)
    (repo / "package.json").write_text(json.dumps({"scripts": {"start": "node index.js"}}))
    return repo


def read_config(harness):
    return json.loads(harness.config_path.read_text())


class TestInstall:
    """Test Orchestrator.install."""

    @pytest.mark.asyncio
    async def test_container_install(self, harness):
        """Test a container install ends running and registered with the desktop client."""
        orchestrator = harness.orchestrator
        handle = orchestrator.submit("install", SERVERS_REPO)
        record = await handle.result()

        assert record.kind == ServerKind.CONTAINER
        assert harness.runtime.containers["mcp-servers"].state == ContainerState.RUNNING
        assert orchestrator.registry.get(record.server_id) == record

        entry = read_config(harness)["mcpServers"]["servers"]
        assert entry["command"][:4] == ["docker", "run", "--name", "mcp-servers"]

        events = harness.recorder.of_task(handle.task_id)
        steps = [(e.payload["step_index"], e.payload["phase"]) for e in events if e.type == EventType.PLAN_PROGRESS]
        assert steps == [(i, phase) for i in range(4) for phase in ("start", "done")]
        assert [e.type for e in events][-2:] == [EventType.SERVER_STATE, EventType.DONE]
        assert events[-2].payload["state"] == "running"
        assert events[-1].payload["result"]["server_id"] == "servers"

    @pytest.mark.asyncio
    async def test_native_install_with_credentials(self, harness, node_repo):
        orchestrator = harness.orchestrator
        options = InstallOptions(credentials={"API_KEY": "s3cret"}, env={"UNITS": "metric"})

        record = await orchestrator.install(str(node_repo), options)

        assert record.kind == ServerKind.NODE
        assert harness.secrets.get("weather") == {"API_KEY": "s3cret"}
        entry = read_config(harness)["mcpServers"]["weather"]
        assert entry["command"] == ["npm", "start"]
        assert entry["env"] == {"UNITS": "metric"}
        assert "API_KEY" not in json.dumps(read_config(harness))

    @pytest.mark.asyncio
    async def test_duplicate_name(self, harness, node_repo):
        await harness.orchestrator.install(str(node_repo))

        with pytest.raises(PreconditionFailedError):
            await harness.orchestrator.install(str(node_repo))

        assert len(harness.orchestrator.list_servers()) == 1

    @pytest.mark.asyncio
    async def test_failed_install_leaves_no_record(self, harness, node_repo):
        harness.runner.on(["npm", "install"], (1, "", "npm ERR! peer dependency conflict"))
        handle = harness.orchestrator.submit("install", str(node_repo))

        with pytest.raises(ExecError):
            await handle.result()

        assert harness.orchestrator.list_servers() == []
        assert not harness.config_path.exists()
        terminal = [e for e in harness.recorder.of_task(handle.task_id) if e.terminal]
        assert [e.type for e in terminal] == [EventType.ERROR]
        assert terminal[0].payload["where"] == "install"
        assert terminal[0].payload["kind"] == ErrorKind.FATAL.value

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_one_fatal_event(self, harness, node_repo):
        """Test a failure outside the installer error hierarchy still ends the task with one error."""

        def broken(argv, **kwargs):
            raise ValueError("unexpected output")

        harness.runner.on(["npm", "install"], broken)
        handle = harness.orchestrator.submit("install", str(node_repo))

        with pytest.raises(ValueError):
            await handle.result()

        assert harness.orchestrator.list_servers() == []
        terminal = [e for e in harness.recorder.of_task(handle.task_id) if e.terminal]
        assert [e.type for e in terminal] == [EventType.ERROR]
        assert terminal[0].payload["kind"] == ErrorKind.FATAL.value
        assert terminal[0].payload["message"] == "unexpected output"
        assert terminal[0].payload["details"] == {"exception": "ValueError"}

    @pytest.mark.asyncio
    async def test_cancel_during_dependencies(self, harness, node_repo):
        """Test cancelling while dependencies install stops the plan without a record."""
        started = asyncio.Event()

        async def slow_install(argv, token=None, **kwargs):
            started.set()
            await token.wait()
            raise OperationCancelled("Operation cancelled: cancelled by user")

        harness.runner.on(["npm", "install"], slow_install)
        orchestrator = harness.orchestrator

        handle = orchestrator.submit("install", str(node_repo))
        await asyncio.wait_for(started.wait(), 5.0)
        handle.cancel()

        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(handle.result(), 5.0)

        assert orchestrator.list_servers() == []
        assert not harness.config_path.exists()
        types = harness.recorder.types(handle.task_id)
        assert types.count("cancelled") == 1
        assert "done" not in types
        assert "error" not in types
        progress = [e for e in harness.recorder.of_task(handle.task_id) if e.type == EventType.PLAN_PROGRESS]
        assert progress[-1].payload["phase"] == "error"
        assert progress[-1].payload["step_index"] == 1

    @pytest.mark.asyncio
    async def test_policy_denied(self, harness):
        harness.orchestrator.policy = RolePolicy({"alice": "viewer"})
        handle = harness.orchestrator.submit("install", SERVERS_REPO, user="alice")

        with pytest.raises(PolicyDeniedError):
            await handle.result()

        assert harness.runner.calls == []
        types = harness.recorder.types(handle.task_id)
        assert types == ["error"]


class TestLifecycle:
    """Test lifecycle operations and their events."""

    @pytest.mark.asyncio
    async def test_stop_start_restart(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "servers"))
        orchestrator = harness.orchestrator

        assert await orchestrator.stop("servers") == ContainerState.EXITED
        assert await orchestrator.status("servers") == ContainerState.EXITED
        assert await orchestrator.start("servers") == ContainerState.RUNNING
        assert await orchestrator.restart("servers") == ContainerState.RUNNING
        assert orchestrator.registry.get("servers").state == ContainerState.RUNNING

        states = [e.payload["state"] for e in harness.recorder.events if e.type == EventType.SERVER_STATE]
        assert states == ["exited", "running", "running"]

    @pytest.mark.asyncio
    async def test_start_failure_is_an_error(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "servers", state=ContainerState.EXITED))
        harness.runtime.image_states["mcp-servers:v1.2.0"] = ContainerState.EXITED
        handle = harness.orchestrator.submit("start", "servers")

        with pytest.raises(InstallerError):
            await handle.result()

        assert harness.recorder.types(handle.task_id) == ["server.state", "error"]

    @pytest.mark.asyncio
    async def test_unknown_server(self, harness):
        handle = harness.orchestrator.submit("stop", "nope")

        with pytest.raises(ServerNotFoundError):
            await handle.result()

        [event] = harness.recorder.of_task(handle.task_id)
        assert event.type == EventType.ERROR

    @pytest.mark.asyncio
    async def test_delete(self, harness, tmp_path):
        install_path = tmp_path / "servers"
        install_path.mkdir()
        record = await harness.register(make_record(install_path))
        harness.secrets.put("servers", {"TOKEN": "x"})
        await harness.orchestrator.set_enabled("servers", True)

        await harness.orchestrator.delete("servers", remove_files=True)

        assert harness.orchestrator.list_servers() == []
        assert record.runtime_id not in harness.runtime.containers
        assert "servers" not in read_config(harness)["mcpServers"]
        assert harness.secrets.get("servers") == {}
        assert not install_path.exists()

    @pytest.mark.asyncio
    async def test_delete_survives_secret_store_failure(self, harness, tmp_path):
        """Test the record and config entry are gone even when credentials cannot be removed."""
        await harness.register(make_record(tmp_path / "servers"))
        await harness.orchestrator.set_enabled("servers", True)

        def refuse(server_id):
            raise SecretStoreError("keyring locked")

        harness.secrets.delete = refuse
        handle = harness.orchestrator.submit("delete", "servers")

        await handle.result()

        assert harness.orchestrator.list_servers() == []
        assert "servers" not in read_config(harness)["mcpServers"]
        assert harness.recorder.types(handle.task_id)[-1] == "done"

    @pytest.mark.asyncio
    async def test_enable_disable(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "servers"))
        orchestrator = harness.orchestrator

        await orchestrator.set_enabled("servers", False)
        assert "servers" not in read_config(harness)["mcpServers"]
        assert not orchestrator.registry.get("servers").enabled

        await orchestrator.set_enabled("servers", True)
        assert "servers" in read_config(harness)["mcpServers"]
        assert orchestrator.registry.get("servers").enabled

    @pytest.mark.asyncio
    async def test_logs(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "servers"))

        chunks = [chunk async for chunk in harness.orchestrator.logs("servers", tail=1)]

        assert chunks == [b"listening on 3000\n"]

    @pytest.mark.asyncio
    async def test_viewer_may_not_stop(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "servers"))
        harness.orchestrator.policy = RolePolicy({"bob": "viewer", "carol": "operator"})

        with pytest.raises(PolicyDeniedError):
            await harness.orchestrator.stop("servers", user="bob")
        assert harness.runtime.containers["mcp-servers"].state == ContainerState.RUNNING

        await harness.orchestrator.stop("servers", user="carol")
        assert harness.runtime.containers["mcp-servers"].state == ContainerState.EXITED


class TestSerialization:
    """Test per-server ordering of concurrent operations."""

    @pytest.mark.asyncio
    async def test_same_server_operations_do_not_interleave(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "servers"))
        harness.runtime.stop_delay = 0.05
        orchestrator = harness.orchestrator

        stop = orchestrator.submit("stop", "servers")
        start = orchestrator.submit("start", "servers")
        await asyncio.gather(stop.result(), start.result())

        order = [(e.task_id, e.type) for e in harness.recorder.events if e.terminal or e.type == EventType.SERVER_STATE]
        assert order == [
            (stop.task_id, EventType.SERVER_STATE),
            (stop.task_id, EventType.DONE),
            (start.task_id, EventType.SERVER_STATE),
            (start.task_id, EventType.DONE),
        ]
        assert orchestrator.registry.get("servers").state == ContainerState.RUNNING

    @pytest.mark.asyncio
    async def test_different_servers_run_concurrently(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "a", name="alpha"))
        await harness.register(make_record(tmp_path / "b", name="beta"))
        harness.runtime.stop_delay = 0.2
        orchestrator = harness.orchestrator
        loop = asyncio.get_running_loop()

        started = loop.time()
        first = orchestrator.submit("stop", "alpha")
        second = orchestrator.submit("stop", "beta")
        await asyncio.gather(first.result(), second.result())

        assert loop.time() - started < 0.35
        assert harness.runtime.containers["mcp-alpha"].state == ContainerState.EXITED
        assert harness.runtime.containers["mcp-beta"].state == ContainerState.EXITED

    @pytest.mark.asyncio
    async def test_every_task_has_one_terminal_event(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "servers"))
        orchestrator = harness.orchestrator

        handles = [
            orchestrator.submit("backup", "servers"),
            orchestrator.submit("stop", "servers"),
            orchestrator.submit("stop", "missing"),
            orchestrator.submit("update", "servers"),
        ]
        await asyncio.gather(*(h.result() for h in handles), return_exceptions=True)

        for handle in handles:
            terminal = [e for e in harness.recorder.of_task(handle.task_id) if e.terminal]
            assert len(terminal) == 1, handle.action

    def test_submit_unknown_operation(self, harness):
        with pytest.raises(PreconditionFailedError):
            harness.orchestrator.submit("_run")
        with pytest.raises(PreconditionFailedError):
            harness.orchestrator.submit("list_servers")


class TestBatch:
    """Test Orchestrator.batch."""

    @pytest.mark.asyncio
    async def test_batch_stop(self, harness, tmp_path):
        await harness.register(make_record(tmp_path / "a", name="alpha"))
        await harness.register(make_record(tmp_path / "b", name="beta"))

        results = await harness.orchestrator.batch("stop", ["alpha", "beta", "ghost", "alpha"])

        assert list(results) == ["alpha", "beta", "ghost"]
        assert results["alpha"] == {"ok": True, "result": "exited"}
        assert results["beta"]["ok"]
        assert results["ghost"]["ok"] is False
        assert results["ghost"]["kind"] == ErrorKind.PRECONDITION_FAILED.value

    @pytest.mark.asyncio
    async def test_unsupported_action(self, harness):
        with pytest.raises(PreconditionFailedError):
            await harness.orchestrator.batch("delete", ["servers"])


class TestDesktopConfig:
    """Test config verification and repair through the orchestrator."""

    @pytest.mark.asyncio
    async def test_repair_then_verify(self, harness):
        orchestrator = harness.orchestrator

        report = await orchestrator.verify_config()
        assert sorted(report.missing) == ["github", "redis", "time"]

        added = await orchestrator.repair_config()
        assert sorted(added) == ["github", "redis", "time"]
        assert (await orchestrator.verify_config()).missing == set()
        assert sorted(orchestrator.config_history()[-1].changes.added) == ["github", "redis", "time"]


class TestCreate:
    """Test Orchestrator.create wiring."""

    def test_state_dir_backs_secrets_and_processes(self, tmp_path):
        settings = Settings(
            paths={"install_root": str(tmp_path / "servers"), "state_dir": str(tmp_path / "state")},
            logging={"enabled": False},
        )

        orchestrator = Orchestrator.create(settings=settings)

        assert isinstance(orchestrator.secrets, KeyringSecretStore)
        assert isinstance(orchestrator.secrets.fallback, FileSecretStore)
        assert orchestrator.secrets.fallback.path == tmp_path / "state" / "credentials.json"
        assert orchestrator.lifecycle.processes.state_dir == tmp_path / "state" / "processes"
