"""
Logging infrastructure for MCP Installer.

Console output goes through Rich on stderr; an optional rotating file log
records the full debug trail of external commands and state transitions.
"""

import json
import logging
import logging.handlers
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from rich.console import Console
from rich.logging import RichHandler

_task_context: ContextVar[Dict[str, str]] = ContextVar("task_context", default={})

_STANDARD_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName", "taskName",
    "processName", "process", "getMessage", "exc_info",
    "exc_text", "stack_info",
}


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Fields passed through ``extra=``
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


@contextmanager
def task_context(**fields: Optional[str]) -> Iterator[None]:
    """Attach task fields (``task_id``, ``server_id``) to records logged inside the block."""
    merged = dict(_task_context.get())
    merged.update({key: value for key, value in fields.items() if value})
    token = _task_context.set(merged)
    try:
        yield
    finally:
        _task_context.reset(token)


class TaskContextFilter(logging.Filter):
    """Copies the current task context onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _task_context.get()
        record.task_id = context.get("task_id", "-")
        record.server_id = context.get("server_id", "-")
        return True


class InstallerLogger:
    """Process-wide logging setup."""

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._setup_done = False

    def setup_logging(
        self,
        enabled: bool = True,
        level: Union[str, int] = logging.INFO,
        console_level: Union[str, int] = logging.WARNING,
        log_file: Optional[Path] = None,
        format_type: str = "text",
        enable_rich: bool = True,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        force: bool = False,
        **kwargs: Any,
    ) -> None:
        """
        Setup logging configuration.

        Args:
            enabled: Enable logging completely
            level: File logging level
            console_level: Console logging level
            log_file: Path to log file (optional)
            format_type: Format type ('text', 'json')
            enable_rich: Enable Rich console output
            max_bytes: Maximum log file size before rotation
            backup_count: Number of rotated files to keep
            force: Reconfigure even if logging was already set up
        """
        if self._setup_done and not force:
            return

        root_logger = logging.getLogger()

        if not enabled:
            root_logger.setLevel(logging.CRITICAL)
            root_logger.handlers.clear()
            self._setup_done = True
            return

        if isinstance(level, str):
            level = getattr(logging, level.upper())
        if isinstance(console_level, str):
            console_level = getattr(logging, console_level.upper())

        root_logger.setLevel(min(level, console_level))
        root_logger.handlers.clear()

        if enable_rich:
            console_handler: logging.Handler = RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=True,
                markup=False,
                show_path=False,
            )
        else:
            console_handler = logging.StreamHandler(sys.stderr)
            if format_type == "json":
                console_handler.setFormatter(JSONFormatter())
            else:
                console_handler.setFormatter(
                    logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
                )

        console_handler.setLevel(console_level)
        console_handler.addFilter(TaskContextFilter())
        root_logger.addHandler(console_handler)

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )

            if format_type == "json":
                file_handler.setFormatter(JSONFormatter())
            else:
                file_handler.setFormatter(logging.Formatter(
                    "%(asctime)s | %(levelname)s | %(name)s | %(task_id)s %(server_id)s | "
                    "%(module)s:%(funcName)s:%(lineno)d | %(message)s"
                ))

            file_handler.setLevel(level)
            file_handler.addFilter(TaskContextFilter())
            root_logger.addHandler(file_handler)

        self._setup_done = True

    def get_logger(self, name: str) -> logging.Logger:
        """
        Get or create a logger instance.

        Args:
            name: Logger name

        Returns:
            Logger instance
        """
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)

        return self._loggers[name]


_logger_manager = InstallerLogger()

setup_logging = _logger_manager.setup_logging
get_logger = _logger_manager.get_logger
