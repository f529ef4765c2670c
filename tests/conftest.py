"""
Pytest configuration and fixtures for MCP Installer testing.

External tools never run here: commands go through ``FakeRunner`` and
containers live in ``FakeRuntime``, both scripted per test.
"""

import asyncio
import inspect
import shutil
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import pytest

from mcp_installer.backup.engine import BackupEngine
from mcp_installer.claude.config_store import ConfigStore
from mcp_installer.claude.history import ConfigHistory
from mcp_installer.claude.reconciler import Reconciler
from mcp_installer.core.capabilities import MemorySecretStore
from mcp_installer.core.events import Event, EventBus
from mcp_installer.core.exceptions import NameInUseError
from mcp_installer.core.models import (
    ContainerInfo,
    ContainerSpec,
    ContainerState,
    InstallMethod,
    ServerKind,
    ServerRecord,
    SourceKind,
)
from mcp_installer.core.orchestrator import Orchestrator
from mcp_installer.core.registry import ServerRegistry
from mcp_installer.installer.analyzer import RepoAnalyzer
from mcp_installer.installer.executor import Executor
from mcp_installer.installer.planner import Planner
from mcp_installer.runtime.base import RuntimeController
from mcp_installer.runtime.lifecycle import ServerLifecycle
from mcp_installer.tools.runner import CancelToken, CommandResult
from mcp_installer.updates.checker import UpdateChecker
from mcp_installer.utils.config import Settings

# Flags of ``docker run`` that take a value
RUN_VALUE_FLAGS = {"--name", "--restart", "-e", "-p", "-v", "--network"}

Handler = Callable[..., Any]


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    Handlers are matched by argv prefix, most recently added first. A handler
    may return a CommandResult, a ``(exit_code, stdout, stderr)`` tuple or
    None (success), raise, or be a coroutine function.
    """

    def __init__(self, runtime: Optional["FakeRuntime"] = None):
        self.default_timeout = 600.0
        self.runtime = runtime
        self.calls: List[List[str]] = []
        self._handlers: List[tuple] = []

    def on(self, prefix: Sequence[str], handler: Any) -> None:
        self._handlers.insert(0, (list(prefix), handler))

    def which(self, tool: str) -> Optional[str]:
        return f"/usr/bin/{tool}"

    def called(self, *prefix: str) -> List[List[str]]:
        return [argv for argv in self.calls if argv[:len(prefix)] == list(prefix)]

    async def terminate(self, process) -> None:
        return None

    async def run(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        token: Optional[CancelToken] = None,
        on_stdout=None,
        on_stderr=None,
        check: bool = False,
    ) -> CommandResult:
        argv = list(argv)
        if token is not None:
            token.raise_if_cancelled()
        self.calls.append(argv)

        for prefix, handler in self._handlers:
            if argv[:len(prefix)] == prefix:
                outcome = handler
                if callable(handler):
                    outcome = handler(argv, cwd=cwd, token=token)
                    if inspect.isawaitable(outcome):
                        outcome = await outcome
                return self._result(argv, outcome, on_stdout)
        return self._result(argv, self._default(argv), on_stdout)

    def _default(self, argv: List[str]) -> Any:
        if argv[:2] == ["git", "clone"]:
            source, target = argv[-2], argv[-1]
            if Path(source).is_dir():
                shutil.copytree(source, target, dirs_exist_ok=True)
            else:
                Path(target).mkdir(parents=True, exist_ok=True)
        elif argv[:2] == ["git", "rev-parse"]:
            return (0, "0123456789abcdef0123456789abcdef01234567", "")
        elif len(argv) > 1 and argv[1] == "run" and self.runtime is not None:
            self.runtime.run_from_argv(argv)
        return None

    @staticmethod
    def _result(argv: List[str], outcome: Any, on_stdout) -> CommandResult:
        if isinstance(outcome, CommandResult):
            result = outcome
        elif isinstance(outcome, tuple):
            code, stdout, stderr = outcome
            result = CommandResult(argv=argv, exit_code=code, stdout=stdout, stderr=stderr)
        else:
            result = CommandResult(argv=argv, exit_code=0)
        if on_stdout is not None:
            for line in result.stdout.splitlines():
                on_stdout(line)
        return result


class FakeContainer:
    def __init__(self, spec: ContainerSpec, state: ContainerState):
        self.spec = spec
        self.state = state

    @property
    def image(self) -> Optional[str]:
        return self.spec.image


class FakeRuntime(RuntimeController):
    """In-memory container engine. ``image_states`` decides how an image comes up."""

    name = "fake"

    def __init__(self, stop_delay: float = 0.0):
        super().__init__(poll_initial=0.001, poll_factor=2.0, poll_cap=0.01)
        self.containers: Dict[str, FakeContainer] = {}
        self.image_states: Dict[str, ContainerState] = {}
        self.digests: Dict[str, str] = {}
        self.built: List[str] = []
        self.pulled: List[str] = []
        self.stop_delay = stop_delay

    def state_for(self, image: Optional[str]) -> ContainerState:
        return self.image_states.get(image or "", ContainerState.RUNNING)

    def add(self, name: str, image: Optional[str] = None, state: ContainerState = ContainerState.RUNNING) -> None:
        self.containers[name] = FakeContainer(ContainerSpec(name=name, image=image), state)

    def run_from_argv(self, argv: List[str]) -> None:
        name, image = None, None
        args = iter(argv[2:])
        for arg in args:
            if arg in RUN_VALUE_FLAGS:
                value = next(args)
                if arg == "--name":
                    name = value
            elif not arg.startswith("-"):
                image = arg
                break
        self.containers[name] = FakeContainer(ContainerSpec(name=name, image=image), self.state_for(image))

    async def build(self, image: str, context_dir: str, token: Optional[CancelToken] = None) -> None:
        self.built.append(image)

    async def pull(self, image: str, token: Optional[CancelToken] = None) -> None:
        self.pulled.append(image)

    async def image_digest(self, image: str) -> Optional[str]:
        return self.digests.get(image)

    async def run(self, spec: ContainerSpec, replace: bool = False) -> str:
        if spec.name in self.containers and not replace:
            raise NameInUseError(spec.name)
        self.containers[spec.name] = FakeContainer(spec, self.state_for(spec.image))
        return spec.name

    async def start(self, container_id: str) -> None:
        container = self.containers[container_id]
        container.state = self.state_for(container.image)

    async def stop(self, container_id: str) -> None:
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        container = self.containers.get(container_id)
        if container is not None:
            container.state = ContainerState.EXITED

    async def restart(self, container_id: str) -> None:
        await self.start(container_id)

    async def remove(self, container_id: str) -> None:
        self.containers.pop(container_id, None)

    async def inspect(self, container_id: str) -> ContainerInfo:
        container = self.containers.get(container_id)
        if container is None:
            return ContainerInfo(id=container_id, name=container_id, state=ContainerState.MISSING)
        return ContainerInfo(id=container_id, name=container_id, image=container.image, state=container.state)

    async def logs(
        self,
        container_id: str,
        tail: Optional[int] = None,
        follow: bool = False,
        token: Optional[CancelToken] = None,
    ) -> AsyncIterator[bytes]:
        lines = [b"starting\n", b"listening on 3000\n"]
        for line in lines[-tail:] if tail else lines:
            yield line

    async def list(self, all_states: bool = False) -> List[ContainerInfo]:
        return [
            await self.inspect(name)
            for name, container in self.containers.items()
            if all_states or container.state == ContainerState.RUNNING
        ]


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self, bus: EventBus):
        self.events: List[Event] = []
        original = bus.publish

        def publish(event: Event) -> None:
            self.events.append(event)
            original(event)

        bus.publish = publish

    def of_task(self, task_id: str) -> List[Event]:
        return [e for e in self.events if e.task_id == task_id]

    def types(self, task_id: Optional[str] = None) -> List[str]:
        events = self.of_task(task_id) if task_id else self.events
        return [e.type.value for e in events]


def make_record(install_path: Path, name: str = "servers", **overrides: Any) -> ServerRecord:
    """A container server installed from GitHub at ``install_path``."""
    fields: Dict[str, Any] = dict(
        server_id=name,
        name=name,
        kind=ServerKind.CONTAINER,
        method=InstallMethod.CONTAINER,
        install_path=str(install_path),
        command=["docker", "run", "--name", f"mcp-{name}", "-i", "--rm", f"mcp-{name}:v1.2.0"],
        version="v1.2.0",
        revision="1111111111111111111111111111111111111111",
        source=SourceKind.GIT,
        repo_url=f"https://github.com/modelcontextprotocol/{name}",
        image=f"mcp-{name}:v1.2.0",
        container_name=f"mcp-{name}",
        state=ContainerState.RUNNING,
    )
    fields.update(overrides)
    return ServerRecord(**fields)


class Harness:
    """An orchestrator wired to fakes, plus handles on every fake."""

    def __init__(self, tmp_path: Path):
        self.tmp_path = tmp_path
        self.runtime = FakeRuntime()
        self.processes = FakeRuntime()
        self.runner = FakeRunner(self.runtime)
        self.secrets = MemorySecretStore()
        self.config_path = tmp_path / "claude" / "claude_desktop_config.json"

        settings = Settings(
            paths={"install_root": str(tmp_path / "servers"), "state_dir": str(tmp_path / "state")},
            logging={"enabled": False},
        )
        self.lifecycle = ServerLifecycle(self.runtime, self.processes, poll_window=1.0)
        self.orchestrator = Orchestrator(
            settings=settings,
            registry=ServerRegistry(tmp_path / "state" / "servers.json"),
            analyzer=RepoAnalyzer(self.runner, scratch_root=str(tmp_path)),
            planner=Planner(install_root=str(tmp_path / "servers")),
            executor=Executor(self.runner, self.runtime, step_timeout=30, poll_window=1.0),
            lifecycle=self.lifecycle,
            reconciler=Reconciler(ConfigStore(), ConfigHistory(tmp_path / "state" / "history.json")),
            backups=BackupEngine(tmp_path / "backups", lifecycle=self.lifecycle),
            updates=UpdateChecker(self.runner, self.lifecycle, scratch_root=str(tmp_path)),
            secrets=self.secrets,
            config_path=self.config_path,
        )
        self.recorder = EventRecorder(self.orchestrator.bus)

    async def register(self, record: ServerRecord) -> ServerRecord:
        await self.orchestrator.registry.add(record)
        controller = self.runtime if record.kind == ServerKind.CONTAINER else self.processes
        controller.add(record.runtime_id, record.image, record.state)
        return record


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def fake_runner(fake_runtime):
    return FakeRunner(fake_runtime)


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


@pytest.fixture
def server_tree(tmp_path):
    """Install directory with config, data and logs."""
    root = tmp_path / "install" / "servers"
    (root / "config").mkdir(parents=True)
    (root / "data" / "nested").mkdir(parents=True)
    (root / "logs").mkdir(parents=True)
    (root / "config" / "server.json").write_text('{"port": 3000}')
    (root / "data" / "x.json").write_bytes(b'{"a": 12345}')
    (root / "data" / "nested" / "empty.txt").write_bytes(b"")
    (root / "logs" / "server.log").write_text("started\n")
    return root


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
