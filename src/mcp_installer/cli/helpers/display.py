"""
Display helper functions for CLI commands.
"""

from typing import List

from rich.console import Console
from rich.table import Table

from mcp_installer.backup.statistics import BackupStatistics
from mcp_installer.core.events import Event, EventType
from mcp_installer.core.models import BackupRecord, ServerRecord

console = Console()

STATE_STYLES = {
    "running": "green",
    "exited": "red",
    "created": "yellow",
    "restarting": "yellow",
    "missing": "dim",
}


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def print_event(event: Event) -> None:
    """Print one orchestrator event as a progress line."""
    payload = event.payload
    if event.type == EventType.PLAN_PROGRESS:
        phase = payload.get("phase")
        step = f"[{payload.get('step_index', 0) + 1}/{payload.get('total', 0)}]"
        if phase == "start":
            console.print(f"[blue]{step}[/blue] {payload.get('message', '')}")
        elif phase == "done":
            console.print(f"[green]{step} done[/green]")
        elif phase == "error":
            console.print(f"[red]{step} {payload.get('message', '')}[/red]")
        else:
            console.print(f"[dim]    {payload.get('message', '')}[/dim]", highlight=False)
    elif event.type in (EventType.BACKUP_PROGRESS, EventType.RESTORE_PROGRESS, EventType.UPDATE_PROGRESS):
        console.print(f"[cyan]{payload.get('percent', 0):>3}%[/cyan] {payload.get('message', '')}")
    elif event.type == EventType.SERVER_STATE:
        state = payload.get("state", "")
        style = STATE_STYLES.get(state, "white")
        console.print(f"{payload.get('server_id')} is now [{style}]{state}[/{style}]")
    elif event.type == EventType.UPDATE_STATUS:
        if payload.get("update_available"):
            console.print(f"[yellow]Update available: {payload.get('latest_version')}[/yellow]")
        else:
            console.print(f"[green]Up to date ({payload.get('latest_version')})[/green]")
    elif event.type == EventType.CANCELLED:
        console.print(f"[yellow]{payload.get('where')} cancelled[/yellow]")
    elif event.type == EventType.ERROR:
        # The error itself is reported by handle_errors
        rollback = (payload.get("details") or {}).get("rollback")
        if rollback:
            console.print(f"[yellow]Rollback {rollback}[/yellow]")


def server_table(servers: List[ServerRecord]) -> Table:
    table = Table(
        title=f"MCP Servers ({len(servers)} total)",
        show_header=True,
        header_style="bold cyan",
        title_style="bold cyan",
    )
    table.add_column("ID", style="green")
    table.add_column("Kind", style="blue")
    table.add_column("Version", style="magenta")
    table.add_column("State")
    table.add_column("Enabled")
    table.add_column("Path", style="dim")

    for server in servers:
        style = STATE_STYLES.get(server.state.value, "white")
        table.add_row(
            server.server_id,
            server.kind.value,
            server.version,
            f"[{style}]{server.state.value}[/{style}]",
            "yes" if server.enabled else "no",
            server.install_path,
        )
    return table


def backup_table(backups: List[BackupRecord]) -> Table:
    table = Table(
        title=f"Backups ({len(backups)} total)",
        show_header=True,
        header_style="bold cyan",
        title_style="bold cyan",
    )
    table.add_column("Backup ID", style="green")
    table.add_column("Server", style="blue")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    table.add_column("Size", justify="right")

    for backup in backups:
        table.add_row(
            backup.backup_id,
            backup.server_name,
            backup.type.value,
            backup.status.value,
            backup.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            format_size(backup.size),
        )
    return table


def statistics_table(stats: BackupStatistics) -> Table:
    table = Table(title="Backup statistics", show_header=False, title_style="bold cyan")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Backups", str(stats.backup_count))
    table.add_row("Completed", str(stats.completed_count))
    table.add_row("Failed", str(stats.failed_count))
    table.add_row("Total size", format_size(stats.total_size))
    table.add_row("Oldest", stats.oldest_backup.isoformat() if stats.oldest_backup else "-")
    table.add_row("Newest", stats.newest_backup.isoformat() if stats.newest_backup else "-")
    busiest = max(stats.by_day.items(), key=lambda item: item[1]) if stats.backup_count else None
    table.add_row("Busiest day", f"{busiest[0]} ({busiest[1]})" if busiest else "-")
    return table
