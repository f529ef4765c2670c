"""
Orchestrator for MCP Installer.

Single entry point used by the CLI and embedding applications. Owns every
component, serializes operations per server, checks the policy oracle
before mutating anything, and guarantees that each task publishes exactly
one terminal event (``done``, ``error`` or ``cancelled``).
"""

import asyncio
import inspect
import itertools
import shutil
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel

from mcp_installer.backup.engine import BackupEngine
from mcp_installer.backup.statistics import BackupStatistics, calculate_statistics
from mcp_installer.claude.config_store import ConfigStore
from mcp_installer.claude.history import ConfigHistory, ConfigVersion
from mcp_installer.claude.paths import desktop_config_path
from mcp_installer.claude.reconciler import Reconciler
from mcp_installer.core.capabilities import (
    Action,
    AllowAllPolicy,
    Elevator,
    FileSecretStore,
    KeyringSecretStore,
    PolicyOracle,
    SecretStore,
    SecretStoreError,
)
from mcp_installer.core.events import Emit, Event, EventBus, EventType
from mcp_installer.core.exceptions import (
    ErrorKind,
    InstallerError,
    OperationCancelled,
    PermissionDeniedError,
    PolicyDeniedError,
    PreconditionFailedError,
)
from mcp_installer.core.models import (
    BackupOptions,
    BackupRecord,
    ContainerState,
    InstallOptions,
    RepoAnalysis,
    RestoreOptions,
    ServerKind,
    ServerRecord,
    UpdateReport,
    VerifyReport,
    utcnow,
)
from mcp_installer.core.registry import ServerRegistry
from mcp_installer.installer.analyzer import RepoAnalyzer
from mcp_installer.installer.executor import Executor
from mcp_installer.installer.planner import Planner
from mcp_installer.runtime.container import ContainerController
from mcp_installer.runtime.lifecycle import ServerLifecycle
from mcp_installer.runtime.process import ProcessController
from mcp_installer.tools.runner import CancelToken, CommandRunner
from mcp_installer.tools.system import Clock, KeyedLock
from mcp_installer.updates.checker import UpdateChecker
from mcp_installer.utils.config import Settings, get_settings
from mcp_installer.utils.logging import get_logger, task_context
from mcp_installer.utils.validators import slugify

logger = get_logger(__name__)

DEFAULT_REQUIRED_SERVERS = ("github", "redis", "time")

BATCH_ACTIONS = ("start", "stop", "restart", "backup", "update")

Body = Callable[[Emit, CancelToken], Awaitable[Any]]


def summarize(result: Any) -> Any:
    """JSON-friendly form of a task result for the ``done`` event."""
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, Enum):
        return result.value
    if isinstance(result, (list, tuple)):
        return [summarize(r) for r in result]
    if isinstance(result, dict):
        return {k: summarize(v) for k, v in result.items()}
    return result


class TaskHandle:
    """A submitted operation running in the background."""

    def __init__(self, task_id: str, action: str, token: CancelToken, task: "asyncio.Task[Any]"):
        self.task_id = task_id
        self.action = action
        self.token = token
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self, reason: str = "cancelled by user") -> None:
        """Request cooperative cancellation."""
        self.token.cancel(reason)

    async def result(self) -> Any:
        """Wait for the task and return its result, re-raising its error."""
        return await self._task


class Orchestrator:
    """Facade over planning, execution, config, runtime, backup and update."""

    def __init__(
        self,
        settings: Settings,
        registry: ServerRegistry,
        analyzer: RepoAnalyzer,
        planner: Planner,
        executor: Executor,
        lifecycle: ServerLifecycle,
        reconciler: Reconciler,
        backups: BackupEngine,
        updates: UpdateChecker,
        bus: Optional[EventBus] = None,
        policy: Optional[PolicyOracle] = None,
        secrets: Optional[SecretStore] = None,
        config_path: Optional[Path] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.analyzer = analyzer
        self.planner = planner
        self.executor = executor
        self.lifecycle = lifecycle
        self.reconciler = reconciler
        self.backups = backups
        self.updates = updates
        self.bus = bus or EventBus(settings.event_capacity)
        self.policy = policy or AllowAllPolicy()
        self.secrets = secrets or KeyringSecretStore(
            fallback=FileSecretStore(settings.get_state_dir() / "credentials.json")
        )
        self.config_path = Path(config_path) if config_path else self._default_config_path(settings)

        # Operations on one server run one at a time, in submission order
        self._locks = KeyedLock()
        self._reserved_names: Set[str] = set()
        self._task_ids = itertools.count(1)

    @staticmethod
    def _default_config_path(settings: Settings) -> Path:
        if settings.paths.desktop_config:
            return Path(settings.paths.desktop_config).expanduser()
        return desktop_config_path()

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        policy: Optional[PolicyOracle] = None,
        secrets: Optional[SecretStore] = None,
        elevator: Optional[Elevator] = None,
        runner: Optional[CommandRunner] = None,
    ) -> "Orchestrator":
        """
        Wire up every component from settings.

        Args:
            settings: Settings instance (defaults to the process-wide one)
            policy: Policy oracle (defaults to allow-all)
            secrets: Secret store (defaults to the system keyring, or a state_dir file without one)
            elevator: Elevation capability for permission recovery
            runner: Command runner shared by all components

        Returns:
            Ready-to-use Orchestrator
        """
        settings = settings or get_settings()
        execution = settings.execution
        runtime = settings.runtime
        clock = Clock()
        runner = runner or CommandRunner(
            default_timeout=execution.step_timeout,
            terminate_grace=execution.terminate_grace,
        )
        poll = {
            "poll_initial": runtime.poll_initial,
            "poll_factor": runtime.poll_factor,
            "poll_cap": runtime.poll_cap,
        }

        containers = ContainerController(
            runner, engine=runtime.engine, command_timeout=runtime.command_timeout, clock=clock, **poll
        )
        state_dir = settings.get_state_dir()
        processes = ProcessController(runner, state_dir=state_dir / "processes", clock=clock, **poll)
        lifecycle = ServerLifecycle(containers, processes, poll_window=execution.running_poll_window)

        history = ConfigHistory(state_dir / "config_history.json", max_versions=settings.history_limit)
        reconciler = Reconciler(ConfigStore(lock_timeout=execution.config_lock_timeout, clock=clock), history)

        return cls(
            settings=settings,
            registry=ServerRegistry(settings.get_registry_path()),
            analyzer=RepoAnalyzer(runner),
            planner=Planner(install_root=settings.paths.install_root, engine=runtime.engine),
            executor=Executor(
                runner,
                containers,
                elevator=elevator,
                clock=clock,
                step_timeout=execution.step_timeout,
                poll_window=execution.running_poll_window,
                collision_policy=execution.collision_policy,
            ),
            lifecycle=lifecycle,
            reconciler=reconciler,
            backups=BackupEngine(
                settings.get_backup_root(),
                lifecycle=lifecycle,
                clock=clock,
                large_file_threshold=settings.backup.large_file_threshold,
                large_file_patterns=settings.backup.large_file_patterns,
            ),
            updates=UpdateChecker(runner, lifecycle, clock=clock, check_ttl=settings.updates.check_ttl),
            policy=policy,
            secrets=secrets,
        )

    # Task plumbing

    def new_task_id(self) -> str:
        return f"task-{next(self._task_ids)}"

    def _authorize(self, user: Optional[str], action: str, server_id: Optional[str] = None) -> None:
        if not self.policy.can(user, action, server_id):
            raise PolicyDeniedError(
                f"User '{user or 'default'}' may not perform {action}",
                details={"action": action, "server_id": server_id},
            )

    def _lock_key(self, key: str) -> str:
        record = self.registry.get(key) or self.registry.find_by_name(key)
        return record.server_id if record else key

    async def _run(
        self,
        where: str,
        action: str,
        server_key: Optional[str],
        body: Body,
        user: Optional[str] = None,
        token: Optional[CancelToken] = None,
        task_id: Optional[str] = None,
    ) -> Any:
        """Run ``body`` as one task: policy check, per-server lock and one terminal event."""
        task_id = task_id or self.new_task_id()
        token = token or CancelToken()
        emit = self.bus.emitter(task_id)
        lock_key = self._lock_key(server_key) if server_key else None

        try:
            with task_context(task_id=task_id, server_id=lock_key):
                self._authorize(user, action, lock_key)
                if lock_key is None:
                    result = await body(emit, token)
                else:
                    async with self._locks.hold(lock_key):
                        token.raise_if_cancelled()
                        result = await body(emit, token)
        except OperationCancelled as e:
            logger.info(f"{where} ({task_id}) cancelled")
            emit(Event(type=EventType.CANCELLED, payload={"where": where, "message": e.message}))
            raise
        except InstallerError as e:
            logger.error(f"{where} ({task_id}) failed: {e}")
            emit(Event(type=EventType.ERROR, payload={
                "where": where,
                "kind": e.kind.value,
                "message": e.message,
                "details": summarize(e.details),
            }))
            raise
        except OSError as e:
            error = PermissionDeniedError(str(e)) if isinstance(e, PermissionError) else InstallerError(str(e))
            logger.error(f"{where} ({task_id}) failed: {e}")
            emit(Event(type=EventType.ERROR, payload={
                "where": where,
                "kind": error.kind.value,
                "message": error.message,
                "details": {},
            }))
            raise error from e
        except Exception as e:
            logger.exception(f"{where} ({task_id}) failed unexpectedly")
            emit(Event(type=EventType.ERROR, payload={
                "where": where,
                "kind": ErrorKind.FATAL.value,
                "message": str(e) or type(e).__name__,
                "details": {"exception": type(e).__name__},
            }))
            raise

        emit(Event(type=EventType.DONE, payload={"where": where, "result": summarize(result)}))
        return result

    def submit(self, operation: str, *args: Any, **kwargs: Any) -> TaskHandle:
        """
        Start an operation in the background.

        Args:
            operation: Name of an orchestrator coroutine method (``install``, ``backup``...)
            *args: Positional arguments for it
            **kwargs: Keyword arguments for it

        Returns:
            TaskHandle for cancellation and the result
        """
        method = getattr(self, operation, None)
        if operation.startswith("_") or method is None or not inspect.iscoroutinefunction(method):
            raise PreconditionFailedError(f"Unknown operation: {operation}")
        token = kwargs.setdefault("token", CancelToken())
        task_id = kwargs.setdefault("task_id", self.new_task_id())
        task = asyncio.create_task(method(*args, **kwargs), name=task_id)
        task.add_done_callback(self._reap)
        return TaskHandle(task_id, operation, token, task)

    @staticmethod
    def _reap(task: "asyncio.Task[Any]") -> None:
        # Failures were already published as error events
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Task {task.get_name()} ended with {task.exception()!r}")

    def _state_event(self, emit: Emit, record: ServerRecord, state: ContainerState) -> None:
        emit(Event(type=EventType.SERVER_STATE, payload={"server_id": record.server_id, "state": state.value}))

    async def _record_state(self, emit: Emit, record: ServerRecord, state: ContainerState) -> ServerRecord:
        record = record.model_copy(update={"state": state})
        if self.registry.get(record.server_id) is not None:
            await self.registry.update(record)
        self._state_event(emit, record, state)
        return record

    # Installation

    async def install(
        self,
        repo_ref: str,
        options: Optional[InstallOptions] = None,
        user: Optional[str] = None,
        token: Optional[CancelToken] = None,
        task_id: Optional[str] = None,
    ) -> ServerRecord:
        """
        Analyze, plan and execute an installation, then register the server.

        Args:
            repo_ref: Repository URL or local path
            options: Install options (path, method, credentials...)
            user: Acting user for the policy check
            token: Cancellation token
            task_id: Id stamped on emitted events

        Returns:
            The new ServerRecord
        """
        options = options or InstallOptions()

        async def body(emit: Emit, token: CancelToken) -> ServerRecord:
            analysis = await self.analyzer.analyze(repo_ref, token)
            name = options.server_name or slugify(analysis.repo)
            if self.registry.find_by_name(name) is not None or name in self._reserved_names:
                raise PreconditionFailedError(
                    f"A server named '{name}' is already installed",
                    details={"name": name},
                )
            server_id = self.registry.allocate_id(name)
            self._reserved_names.add(name)
            try:
                async with self._locks.hold(server_id):
                    return await self._install(analysis, options, server_id, emit, token)
            finally:
                self._reserved_names.discard(name)

        return await self._run("install", Action.INSTALL, None, body, user=user, token=token, task_id=task_id)

    async def _install(
        self,
        analysis: RepoAnalysis,
        options: InstallOptions,
        server_id: str,
        emit: Emit,
        token: CancelToken,
    ) -> ServerRecord:
        plan = self.planner.plan(analysis, options, server_id=server_id)
        record = await self.executor.execute(plan, emit, token, collision_policy=options.collision_policy)

        try:
            if options.credentials:
                self.secrets.put(record.server_id, options.credentials)
                if record.kind == ServerKind.CONTAINER:
                    # The run step had no access to credentials
                    await self.lifecycle.recreate(record, extra_env=options.credentials)
                    state = await self.lifecycle.wait_running(record, token=token)
                    record = record.model_copy(update={"state": state})
            await self.reconciler.upsert(self.config_path, record.name, record.to_entry())
            await self.registry.add(record)
        except InstallerError:
            if options.credentials:
                self.secrets.delete(record.server_id)
            raise

        self._state_event(emit, record, record.state)
        return record

    # Lifecycle

    async def start(self, server_id: str, user: Optional[str] = None,
                    token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> ContainerState:
        async def body(emit: Emit, token: CancelToken) -> ContainerState:
            record = self.registry.resolve(server_id)
            state = await self.lifecycle.start(record, extra_env=self.secrets.get(record.server_id), token=token)
            await self._record_state(emit, record, state)
            if state != ContainerState.RUNNING:
                raise InstallerError(f"{record.name} did not reach running (state: {state.value})")
            return state

        return await self._run("start", Action.START, server_id, body, user=user, token=token, task_id=task_id)

    async def stop(self, server_id: str, user: Optional[str] = None,
                   token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> ContainerState:
        async def body(emit: Emit, token: CancelToken) -> ContainerState:
            record = self.registry.resolve(server_id)
            state = await self.lifecycle.stop(record)
            await self._record_state(emit, record, state)
            return state

        return await self._run("stop", Action.STOP, server_id, body, user=user, token=token, task_id=task_id)

    async def restart(self, server_id: str, user: Optional[str] = None,
                      token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> ContainerState:
        async def body(emit: Emit, token: CancelToken) -> ContainerState:
            record = self.registry.resolve(server_id)
            state = await self.lifecycle.restart(record, extra_env=self.secrets.get(record.server_id), token=token)
            await self._record_state(emit, record, state)
            if state != ContainerState.RUNNING:
                raise InstallerError(f"{record.name} did not reach running (state: {state.value})")
            return state

        return await self._run("restart", Action.RESTART, server_id, body, user=user, token=token, task_id=task_id)

    async def delete(self, server_id: str, remove_files: bool = False, user: Optional[str] = None,
                     token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> ServerRecord:
        """Remove a server's runtime, config entry, credentials and record."""

        async def body(emit: Emit, token: CancelToken) -> ServerRecord:
            record = self.registry.resolve(server_id)
            await self.lifecycle.remove(record)
            # Forget the server before touching anything else that can fail
            await self.registry.remove(record.server_id)
            await self.reconciler.remove(self.config_path, record.name)
            try:
                self.secrets.delete(record.server_id)
            except SecretStoreError as e:
                logger.warning(f"Credentials of {record.name} were not removed: {e}")
            if remove_files and Path(record.install_path).exists():
                shutil.rmtree(record.install_path)
                logger.info(f"Removed install directory {record.install_path}")
            self._state_event(emit, record, ContainerState.MISSING)
            return record

        return await self._run("delete", Action.DELETE, server_id, body, user=user, token=token, task_id=task_id)

    async def set_enabled(self, server_id: str, enabled: bool, user: Optional[str] = None,
                          token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> ServerRecord:
        """Add or remove the server's desktop config entry."""

        async def body(emit: Emit, token: CancelToken) -> ServerRecord:
            record = self.registry.resolve(server_id)
            if enabled:
                await self.reconciler.upsert(self.config_path, record.name, record.to_entry())
            else:
                await self.reconciler.remove(self.config_path, record.name)
            record = record.model_copy(update={"enabled": enabled, "updated_at": utcnow()})
            await self.registry.update(record)
            return record

        return await self._run(
            "set_enabled", Action.CONFIG_EDIT, server_id, body, user=user, token=token, task_id=task_id
        )

    # Read-only queries never take the per-server lock

    async def status(self, server_id: str, user: Optional[str] = None) -> ContainerState:
        self._authorize(user, Action.VIEW, server_id)
        record = self.registry.resolve(server_id)
        return await self.lifecycle.status(record)

    def get_record(self, server_id: str, user: Optional[str] = None) -> ServerRecord:
        self._authorize(user, Action.VIEW, server_id)
        return self.registry.resolve(server_id)

    def list_servers(self, user: Optional[str] = None) -> List[ServerRecord]:
        self._authorize(user, Action.VIEW)
        return self.registry.list()

    def logs(
        self,
        server_id: str,
        tail: Optional[int] = None,
        follow: bool = False,
        user: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> AsyncIterator[bytes]:
        self._authorize(user, Action.LOGS, server_id)
        record = self.registry.resolve(server_id)
        return self.lifecycle.logs(record, tail=tail, follow=follow, token=token)

    # Backup

    async def backup(self, server_id: str, options: Optional[BackupOptions] = None, user: Optional[str] = None,
                     token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> BackupRecord:
        async def body(emit: Emit, token: CancelToken) -> BackupRecord:
            record = self.registry.resolve(server_id)
            return await self.backups.create(record, options, emit, token)

        return await self._run("backup", Action.BACKUP, server_id, body, user=user, token=token, task_id=task_id)

    async def restore(self, backup_id: str, options: Optional[RestoreOptions] = None, user: Optional[str] = None,
                      token: Optional[CancelToken] = None, task_id: Optional[str] = None):
        """Restore a backup onto its server (files only if the server was deleted)."""
        options = options or RestoreOptions()

        async def body(emit: Emit, token: CancelToken):
            backup = await self.backups.get(backup_id)
            self._authorize(user, Action.RESTORE, backup.server_id)
            async with self._locks.hold(backup.server_id):
                token.raise_if_cancelled()
                record = self.registry.get(backup.server_id)
                items = await self.backups.restore(
                    backup_id,
                    record=record,
                    opts=options,
                    emit=emit,
                    token=token,
                    extra_env=self.secrets.get(backup.server_id) if record else None,
                )
                if record is not None:
                    await self._record_state(emit, record, await self.lifecycle.status(record))
                return items

        return await self._run("restore", Action.RESTORE, None, body, user=user, token=token, task_id=task_id)

    async def delete_backup(self, backup_id: str, user: Optional[str] = None,
                            token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> None:
        async def body(emit: Emit, token: CancelToken) -> None:
            await self.backups.delete_backup(backup_id)

        return await self._run("delete_backup", Action.BACKUP, None, body, user=user, token=token, task_id=task_id)

    async def list_backups(self, server_id: Optional[str] = None, user: Optional[str] = None) -> List[BackupRecord]:
        self._authorize(user, Action.VIEW, server_id)
        if server_id is not None:
            server_id = self._lock_key(server_id)
        return await self.backups.list_backups(server_id)

    async def backup_statistics(self, server_id: Optional[str] = None,
                                user: Optional[str] = None) -> BackupStatistics:
        records = await self.list_backups(server_id, user=user)
        return calculate_statistics(records, self._lock_key(server_id) if server_id else None)

    # Updates

    async def check_update(self, server_id: str, user: Optional[str] = None,
                           token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> UpdateReport:
        async def body(emit: Emit, token: CancelToken) -> UpdateReport:
            record = self.registry.resolve(server_id)
            return await self.updates.check(record, emit, token)

        return await self._run("check_update", Action.VIEW, None, body, user=user, token=token, task_id=task_id)

    async def update(self, server_id: str, user: Optional[str] = None,
                     token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> ServerRecord:
        async def body(emit: Emit, token: CancelToken) -> ServerRecord:
            record = self.registry.resolve(server_id)
            try:
                updated = await self.updates.update(
                    record, emit, token, extra_env=self.secrets.get(record.server_id)
                )
            except InstallerError:
                await self._record_state(emit, record, await self.lifecycle.status(record))
                raise
            await self.registry.update(updated)
            self._state_event(emit, updated, updated.state)
            return updated

        return await self._run("update", Action.UPDATE, server_id, body, user=user, token=token, task_id=task_id)

    # Desktop config

    async def verify_config(self, required: Optional[List[str]] = None) -> VerifyReport:
        return await self.reconciler.verify(self.config_path, required or DEFAULT_REQUIRED_SERVERS)

    async def repair_config(self, required: Optional[List[str]] = None, user: Optional[str] = None,
                            token: Optional[CancelToken] = None, task_id: Optional[str] = None) -> List[str]:
        async def body(emit: Emit, token: CancelToken) -> List[str]:
            return await self.reconciler.repair(self.config_path, required or DEFAULT_REQUIRED_SERVERS)

        return await self._run(
            "repair_config", Action.CONFIG_EDIT, None, body, user=user, token=token, task_id=task_id
        )

    def config_history(self) -> List[ConfigVersion]:
        history = self.reconciler.history
        return history.versions(self.config_path) if history is not None else []

    # Batch

    async def batch(
        self,
        action: str,
        server_ids: List[str],
        user: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Run one action over several servers.

        Distinct servers run concurrently; each still goes through its own
        per-server lock.

        Args:
            action: One of start, stop, restart, backup, update
            server_ids: Servers to act on
            user: Acting user
            token: Shared cancellation token

        Returns:
            Map of server id to ``{"ok": True, "result": ...}`` or
            ``{"ok": False, "kind": ..., "message": ...}``
        """
        if action not in BATCH_ACTIONS:
            raise PreconditionFailedError(f"Unsupported batch action: {action}")
        token = token or CancelToken()
        ids = list(dict.fromkeys(server_ids))
        method = getattr(self, action)
        results = await asyncio.gather(
            *(method(server_id, user=user, token=token) for server_id in ids),
            return_exceptions=True,
        )

        outcome: Dict[str, Dict[str, Any]] = {}
        for server_id, result in zip(ids, results):
            if isinstance(result, InstallerError):
                outcome[server_id] = {"ok": False, "kind": result.kind.value, "message": result.message}
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome[server_id] = {"ok": True, "result": summarize(result)}
        return outcome
