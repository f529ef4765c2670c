"""
Error handling utilities for CLI commands.
"""

import functools
import sys

import click
from rich.console import Console

from mcp_installer.core.exceptions import InstallerError

console = Console(stderr=True)


def handle_errors(func):
    """Decorator to handle common CLI errors."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (click.ClickException, click.Abort):
            raise
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(130)
        except InstallerError as e:
            console.print(f"[red]Error ({e.kind.value}): {e.message}[/red]")
            sys.exit(1)
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            console.print("[dim]Use --debug for more details[/dim]")
            sys.exit(1)

    return wrapper
