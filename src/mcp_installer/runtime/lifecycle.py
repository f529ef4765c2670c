"""
Server lifecycle routing.

Maps a ServerRecord onto the runtime that executes it (container engine for
container servers, the process runtime otherwise) and implements start,
stop, restart and recreate in terms of that runtime's primitives.
"""

import os
from typing import AsyncIterator, Dict, Optional

from mcp_installer.core.models import (
    ContainerSpec,
    ContainerState,
    RestartPolicy,
    ServerKind,
    ServerRecord,
)
from mcp_installer.runtime.base import RuntimeController
from mcp_installer.tools.runner import CancelToken
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class ServerLifecycle:
    """Start/stop/status for installed servers regardless of runtime."""

    def __init__(
        self,
        containers: RuntimeController,
        processes: RuntimeController,
        poll_window: float = 60.0,
    ):
        self.containers = containers
        self.processes = processes
        self.poll_window = poll_window

    def controller_for(self, record: ServerRecord) -> RuntimeController:
        if record.kind == ServerKind.CONTAINER:
            return self.containers
        return self.processes

    def spec_for(
        self,
        record: ServerRecord,
        image: Optional[str] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> ContainerSpec:
        """Runtime spec for a record, optionally with a different image."""
        env = dict(record.env)
        if extra_env:
            env.update(extra_env)
        if record.kind == ServerKind.CONTAINER:
            return ContainerSpec(
                image=image or record.image,
                name=record.runtime_id,
                env=env,
                ports=dict(record.ports),
                volumes=dict(record.volumes),
                restart_policy=RestartPolicy.UNLESS_STOPPED,
            )
        return ContainerSpec(
            name=record.runtime_id,
            env=env,
            command=list(record.command),
            cwd=record.install_path,
            log_file=os.path.join(record.install_path, "logs", "server.log"),
            restart_policy=RestartPolicy.NO,
        )

    async def status(self, record: ServerRecord) -> ContainerState:
        return await self.controller_for(record).status(record.runtime_id)

    async def wait_running(
        self,
        record: ServerRecord,
        token: Optional[CancelToken] = None,
        deadline: Optional[float] = None,
    ) -> ContainerState:
        return await self.controller_for(record).wait_for_status(
            record.runtime_id,
            {ContainerState.RUNNING},
            deadline or self.poll_window,
            fail_states={ContainerState.EXITED, ContainerState.MISSING},
            token=token,
        )

    async def start(
        self,
        record: ServerRecord,
        extra_env: Optional[Dict[str, str]] = None,
        token: Optional[CancelToken] = None,
    ) -> ContainerState:
        """Start a server, creating its container or process if it does not exist."""
        controller = self.controller_for(record)
        state = await controller.status(record.runtime_id)
        if state == ContainerState.RUNNING:
            return state
        if state == ContainerState.MISSING:
            await controller.run(self.spec_for(record, extra_env=extra_env))
        else:
            await controller.start(record.runtime_id)
        return await self.wait_running(record, token=token)

    async def stop(self, record: ServerRecord) -> ContainerState:
        controller = self.controller_for(record)
        await controller.stop(record.runtime_id)
        return await controller.status(record.runtime_id)

    async def restart(
        self,
        record: ServerRecord,
        extra_env: Optional[Dict[str, str]] = None,
        token: Optional[CancelToken] = None,
    ) -> ContainerState:
        controller = self.controller_for(record)
        if await controller.status(record.runtime_id) == ContainerState.MISSING:
            return await self.start(record, extra_env=extra_env, token=token)
        await controller.restart(record.runtime_id)
        return await self.wait_running(record, token=token)

    async def recreate(
        self,
        record: ServerRecord,
        image: Optional[str] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> str:
        """Replace the container or process with a fresh one from the record's spec."""
        controller = self.controller_for(record)
        return await controller.run(self.spec_for(record, image=image, extra_env=extra_env), replace=True)

    async def remove(self, record: ServerRecord) -> None:
        await self.controller_for(record).remove(record.runtime_id)

    def logs(
        self,
        record: ServerRecord,
        tail: Optional[int] = None,
        follow: bool = False,
        token: Optional[CancelToken] = None,
    ) -> AsyncIterator[bytes]:
        return self.controller_for(record).logs(record.runtime_id, tail=tail, follow=follow, token=token)
