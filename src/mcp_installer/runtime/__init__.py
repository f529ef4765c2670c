"""Runtime controllers for installed servers."""

from mcp_installer.runtime.base import RuntimeController
from mcp_installer.runtime.container import ContainerController
from mcp_installer.runtime.lifecycle import ServerLifecycle
from mcp_installer.runtime.process import ProcessController

__all__ = ["RuntimeController", "ContainerController", "ProcessController", "ServerLifecycle"]
