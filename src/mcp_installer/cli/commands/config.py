"""
Desktop client configuration commands for MCP Installer CLI.
"""

import asyncio
from typing import Tuple

import click
from rich.console import Console
from rich.table import Table

from mcp_installer.cli.helpers import handle_errors, run_with_events

console = Console()


def config_commands(cli_context):
    """Build the ``config`` command group."""

    @click.group()
    def config():
        """Inspect and repair the desktop client configuration."""

    @config.command("path")
    @handle_errors
    def path():
        """Print the configuration file location."""
        console.print(str(cli_context.get_orchestrator().config_path))

    @config.command("verify")
    @click.option("--require", "required", multiple=True, help="Server entry that must exist")
    @handle_errors
    def verify(required: Tuple[str, ...]):
        """Check that required server entries are present."""
        report = asyncio.run(cli_context.get_orchestrator().verify_config(list(required) or None))
        if report.ok:
            console.print("[green]✅ All required servers are configured[/green]")
            return
        console.print(f"[red]Missing: {', '.join(sorted(report.missing))}[/red]")
        console.print("[dim]💡 Fix with: [cyan]mcp-installer config repair[/cyan][/dim]")
        raise SystemExit(1)

    @config.command("repair")
    @click.option("--require", "required", multiple=True, help="Server entry that must exist")
    @handle_errors
    def repair(required: Tuple[str, ...]):
        """Add default entries for missing required servers."""
        orchestrator = cli_context.get_orchestrator()
        added = asyncio.run(run_with_events(orchestrator.bus, orchestrator.repair_config(list(required) or None)))
        if added:
            console.print(f"[green]✅ Added {', '.join(added)}[/green]")
        else:
            console.print("[green]✅ Nothing to repair[/green]")

    @config.command("history")
    @handle_errors
    def history():
        """Show recorded configuration changes."""
        versions = cli_context.get_orchestrator().config_history()
        if not versions:
            console.print("[yellow]No configuration history[/yellow]")
            return

        table = Table(title="Configuration history", header_style="bold cyan", title_style="bold cyan")
        table.add_column("Version", justify="right")
        table.add_column("Time", style="dim")
        table.add_column("Added", style="green")
        table.add_column("Modified", style="yellow")
        table.add_column("Removed", style="red")
        for version in versions:
            changes = version.changes
            table.add_row(
                str(version.version),
                version.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                ", ".join(changes.added),
                ", ".join(changes.modified),
                ", ".join(changes.removed),
            )
        console.print(table)

    return config
