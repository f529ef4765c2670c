"""
Plain process runtime.

Runs node and python servers as detached child processes when no container
engine is involved. Output is appended to the spec's log file. Each spawn
writes ``<state_dir>/<name>.json`` holding the pid and the spec, so a later
installer invocation can still report, stop and restart the server; state
is derived from the pid's liveness.
"""

import asyncio
import os
import signal
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Union

from pydantic import ValidationError

from mcp_installer.core.exceptions import ContainerRuntimeError, NameInUseError
from mcp_installer.core.models import ContainerInfo, ContainerSpec, ContainerState, utcnow
from mcp_installer.runtime.base import RuntimeController
from mcp_installer.tools.runner import CancelToken, CommandRunner, spawn_detached
from mcp_installer.tools.system import Clock, is_process_alive, read_json, write_json_atomic
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class _Managed:
    """A server process, the spec it came from and (when spawned here) its handle."""

    def __init__(self, spec: ContainerSpec, pid: Optional[int] = None, created_at: Optional[datetime] = None):
        self.spec = spec
        self.pid = pid
        self.process: Optional[asyncio.subprocess.Process] = None
        self.created_at: datetime = created_at or utcnow()

    @property
    def state(self) -> ContainerState:
        if self.process is not None:
            if self.process.returncode is None:
                return ContainerState.RUNNING
            return ContainerState.EXITED
        if self.pid is None:
            return ContainerState.CREATED
        return ContainerState.RUNNING if is_process_alive(self.pid) else ContainerState.EXITED

    @property
    def exit_code(self) -> Optional[int]:
        return self.process.returncode if self.process is not None else None

    def to_dict(self) -> Dict:
        return {
            "pid": self.pid,
            "spec": self.spec.model_dump(mode="json"),
            "created_at": self.created_at.isoformat(),
        }


class ProcessController(RuntimeController):
    """Runtime controller for servers launched as local processes."""

    name = "process"

    def __init__(
        self,
        runner: CommandRunner,
        state_dir: Optional[Union[str, Path]] = None,
        clock: Optional[Clock] = None,
        follow_interval: float = 0.5,
        **poll: float,
    ):
        super().__init__(clock=clock, **poll)
        self.runner = runner
        self.state_dir = Path(state_dir) if state_dir else None
        self.follow_interval = follow_interval
        self._managed: Dict[str, _Managed] = {}

    async def build(self, image: str, context_dir: str, token: Optional[CancelToken] = None) -> None:
        logger.debug(f"Process runtime has no image build step ({image})")

    # State files

    def _state_file(self, name: str) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / f"{name}.json"

    async def _save(self, managed: _Managed) -> None:
        path = self._state_file(managed.spec.name)
        if path is None:
            return
        await asyncio.to_thread(write_json_atomic, path, managed.to_dict())
        # The spec carries the server's credentials in its environment
        os.chmod(path, 0o600)

    def _load(self, name: str) -> Optional[_Managed]:
        managed = self._managed.get(name)
        if managed is not None:
            return managed
        path = self._state_file(name)
        if path is None:
            return None
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable process state {path}: {e}")
            return None
        if not data:
            return None
        try:
            spec = ContainerSpec.model_validate(data["spec"])
            created_at = datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None
        except (KeyError, ValueError, ValidationError) as e:
            logger.warning(f"Ignoring corrupt process state {path}: {e}")
            return None
        managed = _Managed(spec, pid=data.get("pid"), created_at=created_at)
        self._managed[name] = managed
        return managed

    def _known_names(self) -> List[str]:
        names = set(self._managed)
        if self.state_dir is not None and self.state_dir.is_dir():
            names.update(path.stem for path in self.state_dir.glob("*.json"))
        return sorted(names)

    # Process control

    async def _spawn(self, managed: _Managed) -> None:
        spec = managed.spec
        if not spec.command:
            raise ContainerRuntimeError(f"No command to run for {spec.name}", exit_code=1)
        managed.process = await spawn_detached(spec.command, spec.cwd, spec.env, spec.log_file)
        managed.pid = managed.process.pid
        await self._save(managed)
        logger.info(f"Started process {spec.name} (pid {managed.pid})")

    async def _terminate(self, managed: _Managed) -> None:
        if managed.state != ContainerState.RUNNING:
            return
        if managed.process is not None:
            await self.runner.terminate(managed.process)
        else:
            await self._kill_pid(managed.pid)
        logger.info(f"Stopped process {managed.spec.name}")

    async def _kill_pid(self, pid: int) -> None:
        """Terminate a process this controller did not spawn, then kill it after the grace period."""
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        if await self._wait_gone(pid, self.runner.terminate_grace):
            return
        logger.warning(f"Process {pid} ignored terminate, killing")
        try:
            os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        except ProcessLookupError:
            return
        await self._wait_gone(pid, self.runner.terminate_grace)

    async def _wait_gone(self, pid: int, timeout: float) -> bool:
        deadline = self.clock.monotonic() + timeout
        delay = self.poll_initial
        while is_process_alive(pid):
            if self.clock.monotonic() >= deadline:
                return False
            await self.clock.sleep(delay)
            delay = min(delay * self.poll_factor, self.poll_cap)
        return True

    def _get(self, container_id: str) -> _Managed:
        managed = self._load(container_id)
        if managed is None:
            raise ContainerRuntimeError(f"No such process: {container_id}", exit_code=1)
        return managed

    async def run(self, spec: ContainerSpec, replace: bool = False) -> str:
        async with self._locks.hold(spec.name):
            existing = self._load(spec.name)
            if existing is not None:
                if not replace:
                    raise NameInUseError(spec.name)
                await self._terminate(existing)
            managed = _Managed(spec)
            self._managed[spec.name] = managed
            await self._spawn(managed)
            return spec.name

    async def start(self, container_id: str) -> None:
        async with self._locks.hold(container_id):
            managed = self._get(container_id)
            if managed.state != ContainerState.RUNNING:
                await self._spawn(managed)

    async def stop(self, container_id: str) -> None:
        async with self._locks.hold(container_id):
            managed = self._load(container_id)
            if managed is not None:
                await self._terminate(managed)

    async def restart(self, container_id: str) -> None:
        async with self._locks.hold(container_id):
            managed = self._get(container_id)
            await self._terminate(managed)
            await self._spawn(managed)

    async def remove(self, container_id: str) -> None:
        async with self._locks.hold(container_id):
            managed = self._load(container_id)
            if managed is not None:
                await self._terminate(managed)
            self._managed.pop(container_id, None)
            path = self._state_file(container_id)
            if path is not None and path.exists():
                path.unlink()

    async def inspect(self, container_id: str) -> ContainerInfo:
        managed = self._load(container_id)
        if managed is None:
            return ContainerInfo(id=container_id, name=container_id, state=ContainerState.MISSING)
        state = managed.state
        return ContainerInfo(
            id=container_id,
            name=managed.spec.name,
            image=None,
            state=state,
            status=state.value,
            exit_code=managed.exit_code,
            pid=managed.pid,
            created_at=managed.created_at.isoformat(),
        )

    async def logs(
        self,
        container_id: str,
        tail: Optional[int] = None,
        follow: bool = False,
        token: Optional[CancelToken] = None,
    ) -> AsyncIterator[bytes]:
        managed = self._get(container_id)
        log_file = managed.spec.log_file
        if not log_file or not os.path.exists(log_file):
            return
        with open(log_file, "rb") as f:
            content = f.read()
            if tail is not None:
                lines = content.splitlines(keepends=True)
                content = b"".join(lines[-tail:]) if tail > 0 else b""
            if content:
                yield content
            while follow:
                if token is not None and token.cancelled:
                    return
                chunk = f.read()
                if chunk:
                    yield chunk
                elif managed.state != ContainerState.RUNNING:
                    return
                else:
                    await asyncio.sleep(self.follow_interval)

    async def list(self, all_states: bool = False) -> List[ContainerInfo]:
        infos = [await self.inspect(name) for name in self._known_names()]
        if all_states:
            return infos
        return [info for info in infos if info.state == ContainerState.RUNNING]
