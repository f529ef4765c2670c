"""
External command runner.

Every external tool the installer touches (git, npm, pip, the container
engine) is launched through ``CommandRunner``: argv only, explicit cwd and
environment, line-wise output capture, a timeout, and cooperative
cancellation that terminates the child and kills it after a grace period.
"""

import asyncio
import os
import shutil
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from mcp_installer.core.exceptions import (
    CommandFailedError,
    MissingToolError,
    OperationCancelled,
    PermissionDeniedError,
    PreconditionFailedError,
    StepTimeoutError,
)
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)

LineCallback = Callable[[str], None]

READ_CHUNK = 64 * 1024


class CancelToken:
    """Cooperative cancellation flag shared by one task."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelled if the token has fired."""
        if self._event.is_set():
            raise OperationCancelled(f"Operation cancelled: {self.reason}")

    async def wait(self) -> None:
        await self._event.wait()


class CommandResult(BaseModel):
    """Outcome of a finished command."""

    argv: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = Field(default=0.0, description="Wall time in seconds")

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner:
    """Launches external commands without a shell."""

    def __init__(self, default_timeout: float = 600.0, terminate_grace: float = 5.0):
        self.default_timeout = default_timeout
        self.terminate_grace = terminate_grace

    def which(self, tool: str) -> Optional[str]:
        """Resolve an executable on PATH."""
        return shutil.which(tool)

    def _build_env(self, env: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = dict(os.environ)
        if env:
            merged.update(env)
        return merged

    async def _spawn(
        self,
        argv: Sequence[str],
        cwd: Optional[str],
        env: Optional[Dict[str, str]],
        merge_stderr: bool = False,
    ) -> asyncio.subprocess.Process:
        if not argv or not all(isinstance(arg, str) for arg in argv):
            raise ValueError(f"argv must be a non-empty list of strings: {argv!r}")
        logger.debug(f"exec {list(argv)} cwd={cwd}")
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=self._build_env(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            # Either the executable or the cwd is missing
            if cwd and not os.path.isdir(cwd):
                raise PreconditionFailedError(
                    f"Working directory does not exist: {cwd}",
                    details={"cwd": cwd},
                ) from e
            raise MissingToolError(argv[0]) from e
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Permission denied executing {argv[0]}: {e}",
                details={"argv": list(argv)},
            ) from e

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate a child, then kill it if it outlives the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} ignored terminate, killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    @staticmethod
    async def _pump(
        stream: Optional[asyncio.StreamReader],
        sink: List[str],
        callback: Optional[LineCallback],
    ) -> None:
        if stream is None:
            return

        def deliver(raw: bytes) -> None:
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            sink.append(line)
            if callback is not None:
                callback(line)

        # Split lines ourselves; StreamReader.readline() rejects lines over its limit
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for raw in lines:
                deliver(raw)
        if pending:
            deliver(pending)

    async def run(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        token: Optional[CancelToken] = None,
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
        check: bool = False,
    ) -> CommandResult:
        """
        Run a command to completion.

        Args:
            argv: Executable followed by its arguments
            cwd: Working directory
            env: Variables added to the inherited environment
            timeout: Seconds before the child is terminated (default_timeout if None)
            token: Cancellation token checked while waiting
            on_stdout: Called with each stdout line
            on_stderr: Called with each stderr line
            check: Raise CommandFailedError on a non-zero exit

        Returns:
            CommandResult with captured output

        Raises:
            MissingToolError: If the executable cannot be found
            StepTimeoutError: If the timeout expires
            OperationCancelled: If the token fires
        """
        if token is not None:
            token.raise_if_cancelled()

        timeout = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        process = await self._spawn(argv, cwd, env)

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        pumps = asyncio.gather(
            self._pump(process.stdout, stdout_lines, on_stdout),
            self._pump(process.stderr, stderr_lines, on_stderr),
        )
        waiter = asyncio.ensure_future(process.wait())
        watchers = {waiter}
        cancel_waiter = None
        if token is not None:
            cancel_waiter = asyncio.ensure_future(token.wait())
            watchers.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if waiter not in done:
                await self.terminate(process)
                await pumps
                if cancel_waiter is not None and cancel_waiter in done:
                    raise OperationCancelled(f"Cancelled while running {argv[0]}")
                raise StepTimeoutError(
                    f"Command '{' '.join(argv)}' timed out after {timeout:.0f}s",
                    error_code="TIMEOUT",
                    details={"argv": list(argv), "timeout": timeout},
                )
            await pumps
        except asyncio.CancelledError:
            await self.terminate(process)
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()
            if not waiter.done():
                waiter.cancel()

        result = CommandResult(
            argv=list(argv),
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            duration=time.monotonic() - started,
        )
        logger.debug(f"exit {result.exit_code} after {result.duration:.2f}s: {argv[0]}")

        if check and not result.ok:
            raise CommandFailedError(result.argv, result.exit_code, result.stderr)
        return result

    async def stream(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        token: Optional[CancelToken] = None,
        chunk_size: int = 4096,
    ) -> AsyncIterator[bytes]:
        """
        Yield raw output (stdout and stderr merged) until the command exits.

        The child is terminated when the consumer stops iterating or the
        token fires.
        """
        process = await self._spawn(argv, cwd, env, merge_stderr=True)
        try:
            while True:
                if token is not None and token.cancelled:
                    return
                read = asyncio.ensure_future(process.stdout.read(chunk_size))
                watchers = {read}
                cancel_waiter = None
                if token is not None:
                    cancel_waiter = asyncio.ensure_future(token.wait())
                    watchers.add(cancel_waiter)
                done, _ = await asyncio.wait(watchers, return_when=asyncio.FIRST_COMPLETED)
                if cancel_waiter is not None and not cancel_waiter.done():
                    cancel_waiter.cancel()
                if read not in done:
                    read.cancel()
                    return
                chunk = read.result()
                if not chunk:
                    return
                yield chunk
        finally:
            await self.terminate(process)


async def spawn_detached(
    argv: Sequence[str],
    cwd: Optional[str],
    env: Optional[Dict[str, str]],
    log_path: Optional[str],
) -> asyncio.subprocess.Process:
    """
    Start a long-lived child whose output is appended to ``log_path``.

    The child gets its own session so terminal signals aimed at the installer
    do not reach it.
    """
    if not argv:
        raise ValueError("argv must not be empty")
    merged = dict(os.environ)
    if env:
        merged.update(env)
    log_handle = None
    if log_path:
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        log_handle = open(log_path, "ab")
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=merged,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=log_handle if log_handle is not None else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.STDOUT if log_handle is not None else asyncio.subprocess.DEVNULL,
            start_new_session=os.name != "nt",
        )
    except FileNotFoundError as e:
        raise MissingToolError(argv[0]) from e
    except PermissionError as e:
        raise PermissionDeniedError(f"Permission denied executing {argv[0]}: {e}") from e
    finally:
        if log_handle is not None:
            log_handle.close()
