"""
Container engine controller.

Drives the docker (or compatible) CLI with argv vectors. Engine
connectivity problems surface as RuntimeUnavailableError, every other
non-zero exit as ContainerRuntimeError carrying exit code and stderr.
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

from mcp_installer.core.exceptions import (
    ContainerRuntimeError,
    MissingToolError,
    NameInUseError,
    RuntimeUnavailableError,
)
from mcp_installer.core.models import ContainerInfo, ContainerSpec, ContainerState
from mcp_installer.runtime.base import RuntimeController
from mcp_installer.tools.runner import CancelToken, CommandResult, CommandRunner
from mcp_installer.tools.system import Clock
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)

UNAVAILABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "docker daemon is not running",
    "cannot connect to podman",
)

MISSING_MARKERS = ("no such container", "no such object", "no such image")

STATE_MAP = {
    "created": ContainerState.CREATED,
    "running": ContainerState.RUNNING,
    "paused": ContainerState.RUNNING,
    "restarting": ContainerState.RESTARTING,
    "exited": ContainerState.EXITED,
    "dead": ContainerState.EXITED,
    "removing": ContainerState.EXITED,
}


def container_state(raw: Optional[str]) -> ContainerState:
    """Map an engine state string to ContainerState."""
    if not raw:
        return ContainerState.MISSING
    return STATE_MAP.get(raw.lower(), ContainerState.EXITED)


def run_argv(engine: str, spec: ContainerSpec) -> List[str]:
    """argv for ``<engine> run -d`` from a spec."""
    argv = [engine, "run", "-d", "--name", spec.name, "--restart", spec.restart_policy.value]
    for key, value in spec.env.items():
        argv += ["-e", f"{key}={value}"]
    for host_port, container_port in spec.ports.items():
        argv += ["-p", f"{host_port}:{container_port}"]
    for host_path, container_path in spec.volumes.items():
        argv += ["-v", f"{host_path}:{container_path}"]
    if spec.network:
        argv += ["--network", spec.network]
    argv.append(spec.image or spec.name)
    argv += spec.command
    return argv


class ContainerController(RuntimeController):
    """Runtime controller backed by a container engine CLI."""

    name = "container"

    def __init__(
        self,
        runner: CommandRunner,
        engine: str = "docker",
        command_timeout: float = 120.0,
        clock: Optional[Clock] = None,
        **poll: float,
    ):
        super().__init__(clock=clock, **poll)
        self.runner = runner
        self.engine = engine
        self.command_timeout = command_timeout

    async def _exec(
        self,
        args: List[str],
        timeout: Optional[float] = None,
        token: Optional[CancelToken] = None,
        allow_missing: bool = False,
    ) -> Optional[CommandResult]:
        """
        Run an engine subcommand.

        Returns:
            The result, or None when ``allow_missing`` and the engine reports
            that the object does not exist
        """
        try:
            result = await self.runner.run(
                [self.engine] + args,
                timeout=timeout or self.command_timeout,
                token=token,
            )
        except MissingToolError as e:
            raise RuntimeUnavailableError(
                f"Container engine '{self.engine}' is not installed",
                details={"engine": self.engine},
            ) from e

        if result.ok:
            return result

        stderr = result.stderr.lower()
        if any(marker in stderr for marker in UNAVAILABLE_MARKERS):
            raise RuntimeUnavailableError(
                f"Container engine '{self.engine}' is not reachable: {result.stderr.strip()}",
                details={"engine": self.engine},
            )
        if allow_missing and any(marker in stderr for marker in MISSING_MARKERS):
            return None
        raise ContainerRuntimeError(
            f"{self.engine} {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}",
            exit_code=result.exit_code,
            stderr=result.stderr,
        )

    async def available(self) -> bool:
        """True if the engine answers."""
        try:
            await self._exec(["version", "--format", "{{.Server.Version}}"], timeout=10)
            return True
        except (RuntimeUnavailableError, ContainerRuntimeError):
            return False

    async def build(self, image: str, context_dir: str, token: Optional[CancelToken] = None) -> None:
        logger.info(f"Building image {image} from {context_dir}")
        await self._exec(["build", "-t", image, context_dir], timeout=self.runner.default_timeout, token=token)

    async def pull(self, image: str, token: Optional[CancelToken] = None) -> None:
        logger.info(f"Pulling image {image}")
        await self._exec(["pull", image], timeout=self.runner.default_timeout, token=token)

    async def image_digest(self, image: str) -> Optional[str]:
        """First repo digest of a local image, or None."""
        result = await self._exec(
            ["image", "inspect", "--format", "{{json .RepoDigests}}", image],
            allow_missing=True,
        )
        if result is None:
            return None
        try:
            digests = json.loads(result.stdout.strip() or "[]")
        except json.JSONDecodeError:
            return None
        if not digests:
            return None
        return digests[0].split("@", 1)[-1]

    async def run(self, spec: ContainerSpec, replace: bool = False) -> str:
        async with self._locks.hold(spec.name):
            existing = await self.inspect(spec.name)
            if existing.state != ContainerState.MISSING:
                if not replace:
                    raise NameInUseError(spec.name)
                logger.info(f"Replacing existing container {spec.name}")
                await self._exec(["rm", "-f", spec.name], allow_missing=True)

            try:
                result = await self._exec(run_argv(self.engine, spec)[1:])
            except ContainerRuntimeError as e:
                if "already in use" in e.stderr.lower():
                    raise NameInUseError(spec.name) from e
                raise
            container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else spec.name
            logger.info(f"Started container {spec.name} ({container_id[:12]})")
            return container_id

    async def start(self, container_id: str) -> None:
        async with self._locks.hold(container_id):
            await self._exec(["start", container_id])

    async def stop(self, container_id: str) -> None:
        async with self._locks.hold(container_id):
            state = await self.status(container_id)
            if state not in (ContainerState.RUNNING, ContainerState.RESTARTING):
                logger.debug(f"{container_id} already {state.value}, nothing to stop")
                return
            try:
                await self._exec(["stop", container_id], allow_missing=True)
            except ContainerRuntimeError as e:
                if "is not running" in e.stderr.lower():
                    return
                raise
            logger.info(f"Stopped container {container_id}")

    async def restart(self, container_id: str) -> None:
        async with self._locks.hold(container_id):
            await self._exec(["restart", container_id])

    async def remove(self, container_id: str) -> None:
        async with self._locks.hold(container_id):
            await self._exec(["rm", "-f", container_id], allow_missing=True)
            logger.info(f"Removed container {container_id}")

    async def inspect(self, container_id: str) -> ContainerInfo:
        result = await self._exec(
            ["inspect", "--type", "container", "--format", "{{json .}}", container_id],
            allow_missing=True,
        )
        if result is None:
            return ContainerInfo(id=container_id, name=container_id, state=ContainerState.MISSING)
        data: Dict[str, Any] = json.loads(result.stdout.strip().splitlines()[0])
        state = data.get("State") or {}
        return ContainerInfo(
            id=data.get("Id", container_id),
            name=(data.get("Name") or container_id).lstrip("/"),
            image=(data.get("Config") or {}).get("Image"),
            state=container_state(state.get("Status")),
            status=state.get("Status", ""),
            exit_code=state.get("ExitCode"),
            pid=state.get("Pid") or None,
            created_at=data.get("Created"),
        )

    async def logs(
        self,
        container_id: str,
        tail: Optional[int] = None,
        follow: bool = False,
        token: Optional[CancelToken] = None,
    ) -> AsyncIterator[bytes]:
        argv = [self.engine, "logs"]
        if tail is not None:
            argv += ["--tail", str(tail)]
        if follow:
            argv.append("--follow")
        argv.append(container_id)
        try:
            async for chunk in self.runner.stream(argv, token=token):
                yield chunk
        except MissingToolError as e:
            raise RuntimeUnavailableError(f"Container engine '{self.engine}' is not installed") from e

    async def list(self, all_states: bool = False) -> List[ContainerInfo]:
        args = ["ps", "--format", "{{json .}}"]
        if all_states:
            args.insert(1, "-a")
        result = await self._exec(args)
        containers = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            data = json.loads(line)
            containers.append(ContainerInfo(
                id=data.get("ID", ""),
                name=data.get("Names", ""),
                image=data.get("Image"),
                state=container_state(data.get("State")),
                status=data.get("Status", ""),
                created_at=data.get("CreatedAt"),
            ))
        return containers
