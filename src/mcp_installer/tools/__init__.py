"""External tool access: command runner, filesystem and clock helpers."""

from mcp_installer.tools.runner import CancelToken, CommandResult, CommandRunner
from mcp_installer.tools.system import Clock, IdGenerator, KeyedLock, LockFile

__all__ = [
    "CancelToken",
    "CommandResult",
    "CommandRunner",
    "Clock",
    "IdGenerator",
    "KeyedLock",
    "LockFile",
]
