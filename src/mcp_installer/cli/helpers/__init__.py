"""
CLI helper functions and utilities.
"""

from .display import backup_table, print_event, server_table, statistics_table
from .errors import handle_errors
from .progress import run_with_events

__all__ = [
    'backup_table',
    'print_event',
    'server_table',
    'statistics_table',
    'handle_errors',
    'run_with_events',
]
