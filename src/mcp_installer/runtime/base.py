"""
Runtime controller interface.

A runtime controller creates, starts, stops and inspects the processes that
back installed servers. The container engine and the plain process runtime
both implement it, so callers never care which one a server uses.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Collection, List, Optional

from mcp_installer.core.models import ContainerInfo, ContainerSpec, ContainerState
from mcp_installer.tools.runner import CancelToken
from mcp_installer.tools.system import Clock, KeyedLock
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class RuntimeController(ABC):
    """Control plane over one runtime."""

    name = "runtime"

    def __init__(
        self,
        clock: Optional[Clock] = None,
        poll_initial: float = 0.1,
        poll_factor: float = 2.0,
        poll_cap: float = 2.0,
    ):
        self.clock = clock or Clock()
        self.poll_initial = poll_initial
        self.poll_factor = poll_factor
        self.poll_cap = poll_cap
        # Serializes mutating operations per container id
        self._locks = KeyedLock()

    @abstractmethod
    async def build(self, image: str, context_dir: str, token: Optional[CancelToken] = None) -> None:
        """Build an image from a context directory."""

    @abstractmethod
    async def run(self, spec: ContainerSpec, replace: bool = False) -> str:
        """Create and start a container. Returns its handle id."""

    @abstractmethod
    async def start(self, container_id: str) -> None:
        """Start an existing, stopped container."""

    @abstractmethod
    async def stop(self, container_id: str) -> None:
        """Stop a container. Stopping a non-running container succeeds."""

    @abstractmethod
    async def restart(self, container_id: str) -> None:
        """Restart a container."""

    @abstractmethod
    async def remove(self, container_id: str) -> None:
        """Remove a container. Removing a missing container succeeds."""

    @abstractmethod
    async def inspect(self, container_id: str) -> ContainerInfo:
        """Describe a container; a missing one reports state ``missing``."""

    @abstractmethod
    def logs(
        self,
        container_id: str,
        tail: Optional[int] = None,
        follow: bool = False,
        token: Optional[CancelToken] = None,
    ) -> AsyncIterator[bytes]:
        """Stream container output."""

    @abstractmethod
    async def list(self, all_states: bool = False) -> List[ContainerInfo]:
        """List containers managed by this runtime."""

    async def status(self, container_id: str) -> ContainerState:
        info = await self.inspect(container_id)
        return info.state

    async def wait_for_status(
        self,
        container_id: str,
        targets: Collection[ContainerState],
        deadline: float,
        fail_states: Collection[ContainerState] = (),
        token: Optional[CancelToken] = None,
    ) -> ContainerState:
        """
        Poll until the container reaches one of ``targets``.

        Polling backs off exponentially from ``poll_initial`` by ``poll_factor``
        up to ``poll_cap`` seconds.

        Args:
            container_id: Container to watch
            targets: States that end the wait successfully
            deadline: Seconds to wait overall
            fail_states: States that end the wait early
            token: Cancellation token

        Returns:
            The last observed state, which is not in ``targets`` if the deadline passed
        """
        end = self.clock.monotonic() + deadline
        delay = self.poll_initial
        while True:
            if token is not None:
                token.raise_if_cancelled()
            state = await self.status(container_id)
            if state in targets or state in fail_states:
                return state
            remaining = end - self.clock.monotonic()
            if remaining <= 0:
                logger.warning(
                    f"{container_id} still {state.value} after {deadline:.1f}s, "
                    f"wanted {[t.value for t in targets]}"
                )
                return state
            await self.clock.sleep(min(delay, remaining))
            delay = min(delay * self.poll_factor, self.poll_cap)
