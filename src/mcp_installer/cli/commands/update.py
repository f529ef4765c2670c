"""
Upgrade commands for MCP Installer CLI.
"""

import asyncio

import click
from rich.console import Console

from mcp_installer.cli.helpers import handle_errors, run_with_events

console = Console()


def update_commands(cli_context):
    """Build the ``update`` command group."""

    @click.group()
    def update():
        """Check for and apply upstream updates."""

    @update.command("check")
    @click.argument("server")
    @handle_errors
    def check(server: str):
        """Compare the installed version with upstream."""
        orchestrator = cli_context.get_orchestrator()
        report = asyncio.run(orchestrator.check_update(server))

        console.print(f"Installed: [cyan]{report.current_version}[/cyan]")
        console.print(f"Latest: [cyan]{report.latest_version}[/cyan]")
        if report.latest_commit:
            commit = report.latest_commit
            console.print(f"Latest commit: {commit.hash[:12]} {commit.subject}")
        if report.commits_behind is not None:
            console.print(f"Commits behind: {report.commits_behind}")
        if report.update_available:
            console.print(f"[yellow]Update available. Run: mcp-installer update apply {server}[/yellow]")
        else:
            console.print("[green]✅ Up to date[/green]")

    @update.command("apply")
    @click.argument("server")
    @handle_errors
    def apply(server: str):
        """Upgrade a server in place, rolling back if it fails to start."""
        orchestrator = cli_context.get_orchestrator()

        async def run_update():
            await orchestrator.check_update(server)
            return await orchestrator.update(server)

        record = asyncio.run(run_with_events(orchestrator.bus, run_update()))
        console.print(f"[green]✅ {record.name} is now at {record.version}[/green]")

    return update
