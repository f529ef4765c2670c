"""
Backup and restore commands for MCP Installer CLI.
"""

import asyncio
import json
from typing import Optional, Tuple

import click
from rich.console import Console

from mcp_installer.cli.helpers import (
    backup_table,
    handle_errors,
    run_with_events,
    statistics_table,
)
from mcp_installer.core.models import BackupOptions, BackupType, RestoreOptions
from mcp_installer.core.orchestrator import summarize

console = Console()


def backup_commands(cli_context):
    """Build the ``backup`` command group."""

    @click.group()
    def backup():
        """Create, list and restore server backups."""

    @backup.command("create")
    @click.argument("server")
    @click.option(
        "--type", "backup_type",
        type=click.Choice([t.value for t in BackupType], case_sensitive=False),
        default=BackupType.FULL.value,
        help="What to capture"
    )
    @click.option("--name", help="Backup name")
    @click.option("--description", help="Free-form description")
    @click.option("--include-logs", is_flag=True, help="Also capture the logs directory")
    @click.option("--exclude", "excludes", multiple=True, help="Glob of files to leave out")
    @click.option("--exclude-large-files", is_flag=True, help="Skip large archives and databases")
    @handle_errors
    def create(
        server: str,
        backup_type: str,
        name: Optional[str],
        description: Optional[str],
        include_logs: bool,
        excludes: Tuple[str, ...],
        exclude_large_files: bool,
    ):
        """Back up a server's configuration and data."""
        orchestrator = cli_context.get_orchestrator()
        options = BackupOptions(
            type=BackupType(backup_type),
            name=name,
            description=description,
            include_logs=include_logs,
            exclude_patterns=list(excludes),
            exclude_large_files=exclude_large_files,
        )
        record = asyncio.run(run_with_events(orchestrator.bus, orchestrator.backup(server, options)))

        console.print(f"[green]✅ Backup {record.backup_id} created ({len(record.items)} files)[/green]")

    @backup.command("list")
    @click.argument("server", required=False)
    @click.option(
        "--output-format", "-o",
        type=click.Choice(["table", "json"], case_sensitive=False),
        default="table",
        help="Output format"
    )
    @handle_errors
    def list_cmd(server: Optional[str], output_format: str):
        """List backups, newest first."""
        backups = asyncio.run(cli_context.get_orchestrator().list_backups(server))

        if output_format == "json":
            console.print(json.dumps(summarize(backups), indent=2))
        elif not backups:
            console.print("[yellow]No backups found[/yellow]")
        else:
            console.print(backup_table(backups))

    @backup.command("restore")
    @click.argument("backup_id")
    @click.option("--no-stop", is_flag=True, help="Leave the server running while files are replaced")
    @click.option("--no-start", is_flag=True, help="Do not start the server afterwards")
    @click.option("--no-snapshot", is_flag=True, help="Skip the safety copy of current files")
    @click.option("--skip-config", is_flag=True, help="Leave configuration files alone")
    @click.option("--skip-data", is_flag=True, help="Leave data files alone")
    @click.option("--logs", "restore_logs", is_flag=True, help="Also restore logs")
    @handle_errors
    def restore(
        backup_id: str,
        no_stop: bool,
        no_start: bool,
        no_snapshot: bool,
        skip_config: bool,
        skip_data: bool,
        restore_logs: bool,
    ):
        """Restore a backup onto its server."""
        orchestrator = cli_context.get_orchestrator()
        options = RestoreOptions(
            stop_server=not no_stop,
            start_server=not no_start,
            create_backup_before_restore=not no_snapshot,
            restore_config=not skip_config,
            restore_data=not skip_data,
            restore_logs=restore_logs,
        )
        items = asyncio.run(run_with_events(orchestrator.bus, orchestrator.restore(backup_id, options)))

        console.print(f"[green]✅ Restored {len(items)} files from {backup_id}[/green]")

    @backup.command("delete")
    @click.argument("backup_id")
    @handle_errors
    def delete(backup_id: str):
        """Delete a backup."""
        orchestrator = cli_context.get_orchestrator()
        asyncio.run(orchestrator.delete_backup(backup_id))
        console.print(f"[green]✅ Deleted {backup_id}[/green]")

    @backup.command("stats")
    @click.argument("server", required=False)
    @handle_errors
    def stats(server: Optional[str]):
        """Show backup statistics."""
        statistics = asyncio.run(cli_context.get_orchestrator().backup_statistics(server))
        console.print(statistics_table(statistics))

    return backup
