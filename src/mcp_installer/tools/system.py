"""
Filesystem, clock and randomness helpers.

Covers atomic JSON writes, the cross-process lock file used for the
desktop config, per-key asyncio mutexes, and injectable clock / id sources.
"""

import asyncio
import json
import os
import platform
import random
import string
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Union

from mcp_installer.core.exceptions import ConfigBusyError
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]

BASE36 = string.digits + string.ascii_lowercase


class Clock:
    """Wall and monotonic time source."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def unix_ms(self) -> int:
        return int(self.now().timestamp() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class IdGenerator:
    """Random identifiers for backups and suffixes."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def token(self, length: int = 8) -> str:
        return "".join(self._rng.choice(BASE36) for _ in range(length))


def iso_stamp(moment: datetime) -> str:
    """ISO-8601 UTC timestamp with ':' and '.' replaced by '-' (filename safe)."""
    moment = moment.astimezone(timezone.utc)
    text = moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
    return text.replace(":", "-").replace(".", "-")


def unique_path(base: Path, suffix: str = "") -> Path:
    """Return ``base + suffix``, adding ``-1``, ``-2``... until it does not exist."""
    candidate = Path(f"{base}{suffix}")
    counter = 0
    while candidate.exists():
        counter += 1
        candidate = Path(f"{base}-{counter}{suffix}")
    return candidate


def write_json_atomic(path: PathLike, data: Any) -> None:
    """
    Write JSON through a temp file, fsync, then rename over ``path``.

    Readers observe either the previous file or the new one, never a
    truncated document.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = Path(f"{path}.tmp")
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())

    replace_file(tmp_path, path)


def replace_file(source: Path, target: Path) -> None:
    """``os.replace`` with a short retry on Windows, where readers can hold the target open."""
    max_retries = 3 if platform.system() == "Windows" else 1
    for attempt in range(max_retries):
        try:
            os.replace(source, target)
            return
        except OSError:
            if attempt < max_retries - 1:
                time.sleep(0.1)
            else:
                raise


def read_json(path: PathLike, default: Any = None) -> Any:
    """Load JSON, returning ``default`` if the file does not exist."""
    path = Path(path)
    if not path.exists():
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def is_process_alive(pid: int) -> bool:
    """Check whether the given PID is alive."""
    if pid <= 0:
        return False
    if platform.system() == "Windows":
        try:
            import ctypes

            PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
            handle = ctypes.windll.kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
            if handle:
                ctypes.windll.kernel32.CloseHandle(handle)
                return True
            return False
        except (OSError, AttributeError):
            return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


class LockFile:
    """
    Cross-process advisory lock on ``<path>.lock``.

    The lock file is created with O_CREAT|O_EXCL and holds the owner's pid.
    A lock left behind by a dead process is removed and retried.
    """

    def __init__(self, path: PathLike, timeout: float = 5.0, poll_interval: float = 0.05):
        self.target = Path(path)
        self.lock_path = Path(f"{self.target}.lock")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _try_acquire(self) -> bool:
        try:
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            self._clear_if_stale()
            return False
        try:
            os.write(fd, str(os.getpid()).encode("utf-8"))
        finally:
            os.close(fd)
        return True

    def _clear_if_stale(self) -> None:
        try:
            owner_pid = int(self.lock_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return
        if owner_pid != os.getpid() and not is_process_alive(owner_pid):
            logger.warning(f"Removing stale lock {self.lock_path} held by dead pid {owner_pid}")
            try:
                os.unlink(self.lock_path)
            except OSError:
                pass

    async def acquire(self) -> None:
        """
        Block until the lock is held.

        Raises:
            ConfigBusyError: If the lock is still taken after ``timeout`` seconds
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while not self._try_acquire():
            if time.monotonic() >= deadline:
                raise ConfigBusyError(
                    f"Timed out after {self.timeout:.1f}s waiting for {self.lock_path}",
                    details={"lock": str(self.lock_path)},
                )
            await asyncio.sleep(self.poll_interval)
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            os.unlink(self.lock_path)
        except OSError as e:
            logger.warning(f"Could not remove lock {self.lock_path}: {e}")

    async def __aenter__(self) -> "LockFile":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class KeyedLock:
    """Table of asyncio mutexes, one per key. Waiters are served in arrival order."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self.get(key):
            yield
