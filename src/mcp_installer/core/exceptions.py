"""
Exception classes for MCP Installer.

Every failure the installer surfaces carries an ErrorKind from the error
taxonomy, so the orchestrator can report a uniform ``error{where,kind,message}``
event regardless of which component raised it.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Error taxonomy shared by all components."""

    PRECONDITION_FAILED = "PreconditionFailed"
    UNREACHABLE = "Unreachable"
    UNPARSEABLE = "Unparseable"
    CORRUPT = "Corrupt"
    NAME_COLLISION = "NameCollision"
    PERMISSION_DENIED = "PermissionDenied"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    FATAL = "Fatal"
    BUSY = "Busy"
    RUNTIME_UNAVAILABLE = "RuntimeUnavailable"
    RUNTIME_ERROR = "RuntimeError"
    UPGRADE_FAILED = "UpgradeFailed"


class InstallerError(Exception):
    """Base exception for all MCP Installer errors."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize InstallerError.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        """String representation of the error."""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class PreconditionFailedError(InstallerError):
    """Missing server, invalid option or refused request."""

    kind = ErrorKind.PRECONDITION_FAILED


class PolicyDeniedError(PreconditionFailedError):
    """The policy oracle refused the action."""


class ServerNotFoundError(PreconditionFailedError):
    """No server record with the given id."""


class BackupNotFoundError(PreconditionFailedError):
    """No backup record with the given id."""


class AnalyzeError(InstallerError):
    """Repository could not be fetched or understood."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNREACHABLE,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code="ANALYZE", details=details)
        self.kind = kind


class ExecError(InstallerError):
    """A plan step failed and no recovery applied."""

    def __init__(
        self,
        message: str,
        step_index: int,
        step_type: str,
        kind: ErrorKind = ErrorKind.FATAL,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code="EXEC", details=details)
        self.step_index = step_index
        self.step_type = step_type
        self.kind = kind


class MissingToolError(InstallerError):
    """A required executable is not installed."""

    kind = ErrorKind.PRECONDITION_FAILED

    def __init__(self, tool: str):
        super().__init__(
            f"Required tool '{tool}' was not found on PATH. Install it and retry.",
            error_code="MISSING_TOOL",
            details={"tool": tool},
        )
        self.tool = tool


class StepTimeoutError(InstallerError):
    """An external command exceeded its time budget."""

    kind = ErrorKind.TIMEOUT


class OperationCancelled(InstallerError):
    """The task's cancellation token was triggered."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class ConfigBusyError(InstallerError):
    """The config lock could not be acquired in time."""

    kind = ErrorKind.BUSY


class CorruptConfigError(InstallerError):
    """The config document could not be parsed."""

    kind = ErrorKind.CORRUPT


class CorruptBackupError(InstallerError):
    """A backup manifest is missing or unparseable."""

    kind = ErrorKind.CORRUPT


class RuntimeUnavailableError(InstallerError):
    """The container or process engine is not reachable."""

    kind = ErrorKind.RUNTIME_UNAVAILABLE


class ContainerRuntimeError(InstallerError):
    """The container engine returned a non-zero exit status."""

    kind = ErrorKind.RUNTIME_ERROR

    def __init__(self, message: str, exit_code: int, stderr: str = ""):
        super().__init__(
            message,
            error_code="RUNTIME",
            details={"exit_code": exit_code, "stderr": stderr},
        )
        self.exit_code = exit_code
        self.stderr = stderr


class NameInUseError(InstallerError):
    """A container with the requested name already exists."""

    kind = ErrorKind.NAME_COLLISION

    def __init__(self, name: str):
        super().__init__(f"Container name '{name}' is already in use", details={"name": name})
        self.name = name


class UnknownRemoteError(InstallerError):
    """The repository URL is not hosted on a supported forge."""

    kind = ErrorKind.PRECONDITION_FAILED


class UpgradeFailedError(InstallerError):
    """An in-place upgrade failed; ``rollback`` tells whether the old version came back."""

    kind = ErrorKind.UPGRADE_FAILED

    def __init__(self, message: str, rollback: str):
        super().__init__(message, error_code="UPGRADE", details={"rollback": rollback})
        self.rollback = rollback


def error_kind(exc: BaseException) -> ErrorKind:
    """Map any exception to its taxonomy kind."""
    if isinstance(exc, InstallerError):
        return exc.kind
    return ErrorKind.FATAL


class PermissionDeniedError(InstallerError):
    """The filesystem or runtime refused access."""

    kind = ErrorKind.PERMISSION_DENIED


class CommandFailedError(InstallerError):
    """An external command exited with a non-zero status."""

    def __init__(self, argv, exit_code: int, stderr: str = ""):
        super().__init__(
            f"Command '{' '.join(argv)}' failed with exit code {exit_code}",
            error_code="COMMAND",
            details={"argv": list(argv), "exit_code": exit_code, "stderr": stderr},
        )
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr = stderr
