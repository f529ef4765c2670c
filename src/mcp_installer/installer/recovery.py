"""
Recovery classifier.

Maps a failed step to one of the automated recovery strategies. The
classification looks at the exception type first and falls back to
well-known phrases in the tool's error output.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from mcp_installer.core.exceptions import (
    CommandFailedError,
    ErrorKind,
    MissingToolError,
    PermissionDeniedError,
    PreconditionFailedError,
    StepTimeoutError,
)
from mcp_installer.core.models import Step
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class Strategy(str, Enum):
    """Recovery strategies."""

    MISSING_TOOL = "missing-tool"
    PERMISSION_DENIED = "permission-denied"
    ALREADY_EXISTS = "already-exists"
    FATAL = "fatal"


class Classification(BaseModel):
    """Result of classifying a failure."""

    strategy: Strategy
    kind: ErrorKind
    message: str
    tool: Optional[str] = None


MISSING_TOOL_MARKERS = (
    "command not found",
    "is not recognized as an internal or external command",
    "executable file not found",
)
PERMISSION_MARKERS = ("permission denied", "eacces", "eperm", "operation not permitted", "access is denied")
EXISTS_MARKERS = ("already exists", "eexist", "already in use")
NETWORK_MARKERS = (
    "could not resolve host",
    "network is unreachable",
    "connection refused",
    "connection timed out",
    "repository not found",
    "unable to access",
)

COMMAND_NOT_FOUND_RE = re.compile(r"(?:^|\s)([\w.+-]+): (?:command )?not found", re.IGNORECASE)


def _tool_from_output(output: str, step: Optional[Step]) -> Optional[str]:
    match = COMMAND_NOT_FOUND_RE.search(output)
    if match:
        return match.group(1)
    if step is not None and step.command:
        return step.command[0]
    return None


def classify(error: BaseException, step: Optional[Step] = None) -> Classification:
    """
    Decide how to recover from a step failure.

    Args:
        error: The exception the step raised
        step: The failed step, used to name the missing tool

    Returns:
        Classification with the strategy and the error kind to report
    """
    message = str(error)

    if isinstance(error, MissingToolError):
        return Classification(strategy=Strategy.MISSING_TOOL, kind=ErrorKind.PRECONDITION_FAILED,
                              message=message, tool=error.tool)
    if isinstance(error, (PermissionDeniedError, PermissionError)):
        return Classification(strategy=Strategy.PERMISSION_DENIED, kind=ErrorKind.PERMISSION_DENIED,
                              message=message)
    if isinstance(error, FileExistsError):
        return Classification(strategy=Strategy.ALREADY_EXISTS, kind=ErrorKind.NAME_COLLISION, message=message)
    if isinstance(error, PreconditionFailedError):
        return Classification(strategy=Strategy.FATAL, kind=ErrorKind.PRECONDITION_FAILED, message=message)
    if isinstance(error, StepTimeoutError):
        return Classification(strategy=Strategy.FATAL, kind=ErrorKind.TIMEOUT, message=message)

    output = error.stderr if isinstance(error, CommandFailedError) else message
    text = output.lower()

    if any(marker in text for marker in EXISTS_MARKERS):
        return Classification(strategy=Strategy.ALREADY_EXISTS, kind=ErrorKind.NAME_COLLISION, message=message)
    if any(marker in text for marker in PERMISSION_MARKERS):
        return Classification(strategy=Strategy.PERMISSION_DENIED, kind=ErrorKind.PERMISSION_DENIED,
                              message=message)
    if any(marker in text for marker in NETWORK_MARKERS):
        return Classification(strategy=Strategy.FATAL, kind=ErrorKind.UNREACHABLE, message=message)
    if any(marker in text for marker in MISSING_TOOL_MARKERS):
        return Classification(strategy=Strategy.MISSING_TOOL, kind=ErrorKind.PRECONDITION_FAILED,
                              message=message, tool=_tool_from_output(output, step))

    return Classification(strategy=Strategy.FATAL, kind=ErrorKind.FATAL, message=message)
