"""
Main CLI interface for MCP Installer.

Installs MCP servers from source repositories and drives their lifecycle,
backups, upgrades and the desktop client configuration.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click
from rich.console import Console

from mcp_installer import __version__
from mcp_installer.cli.commands import backup_commands, config_commands, update_commands
from mcp_installer.cli.helpers import handle_errors, run_with_events, server_table
from mcp_installer.core.capabilities import SudoElevator
from mcp_installer.core.models import CollisionPolicy, InstallMethod, InstallOptions
from mcp_installer.core.orchestrator import BATCH_ACTIONS, Orchestrator, summarize
from mcp_installer.utils.config import Settings, get_settings, load_config
from mcp_installer.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)


class CLIContext:
    """CLI context for passing state between commands."""

    def __init__(self):
        self.config_file: Optional[Path] = None
        self.settings: Optional[Settings] = None
        self.orchestrator: Optional[Orchestrator] = None

    def get_settings(self) -> Settings:
        if self.settings is None:
            if self.config_file is not None:
                self.settings = load_config([self.config_file])
            else:
                self.settings = get_settings()
        return self.settings

    def get_orchestrator(self) -> Orchestrator:
        """Get orchestrator instance."""
        if self.orchestrator is None:
            self.orchestrator = Orchestrator.create(self.get_settings(), elevator=SudoElevator())
        return self.orchestrator


# Global CLI context
cli_context = CLIContext()


def _parse_pairs(ctx: click.Context, param: click.Parameter, values: Tuple[str, ...]) -> Dict[str, str]:
    """Click callback turning repeated KEY=VALUE options into a dict."""
    pairs: Dict[str, str] = {}
    for value in values:
        key, sep, item = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{value}'")
        pairs[key] = item
    return pairs


def _run(operation):
    orchestrator = cli_context.get_orchestrator()
    return asyncio.run(run_with_events(orchestrator.bus, operation))


@click.group()
@click.option(
    "--debug", "-d",
    is_flag=True,
    help="Enable debug logging"
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose output"
)
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Configuration file to load instead of the default locations"
)
@click.version_option(version=__version__, prog_name="MCP Installer")
def cli(debug: bool, verbose: bool, config_file: Optional[Path]):
    """
    Install and operate MCP servers.

    Analyzes a repository, installs it as a container or native process,
    registers it with the desktop client and manages it from then on.
    """
    cli_context.config_file = config_file
    settings = cli_context.get_settings()
    log = settings.logging

    console_level = "DEBUG" if debug or settings.debug else "INFO" if verbose else log.console_level
    setup_logging(
        enabled=log.enabled,
        level=logging.DEBUG if debug else log.level,
        console_level=console_level,
        log_file=settings.get_log_file(),
        format_type=log.format_type,
        enable_rich=log.enable_rich,
        max_bytes=log.max_bytes,
        backup_count=log.backup_count,
    )


@cli.command()
@click.argument("repo")
@click.option("--name", "-n", help="Server name (defaults to the repository name)")
@click.option("--path", "install_path", help="Install directory")
@click.option(
    "--method",
    type=click.Choice([m.value for m in InstallMethod], case_sensitive=False),
    help="Force an installation method"
)
@click.option("--no-container", is_flag=True, help="Never use a container image")
@click.option("--env", "-e", "env", multiple=True, callback=_parse_pairs, help="Environment variable KEY=VALUE")
@click.option("--credential", "-c", "credentials", multiple=True, callback=_parse_pairs,
              help="Credential KEY=VALUE, kept in the system keyring")
@click.option(
    "--on-collision",
    type=click.Choice([p.value for p in CollisionPolicy], case_sensitive=False),
    help="What to do when the target directory or container exists"
)
@click.option("--step-timeout", type=float, help="Per-step timeout in seconds")
@handle_errors
def install(
    repo: str,
    name: Optional[str],
    install_path: Optional[str],
    method: Optional[str],
    no_container: bool,
    env: Dict[str, str],
    credentials: Dict[str, str],
    on_collision: Optional[str],
    step_timeout: Optional[float],
):
    """Install an MCP server from a repository URL or local path."""
    options = InstallOptions(
        server_name=name,
        install_path=install_path,
        method=InstallMethod(method) if method else None,
        include_container=not no_container,
        env=env,
        credentials=credentials,
        collision_policy=CollisionPolicy(on_collision) if on_collision else None,
        step_timeout=step_timeout,
    )
    orchestrator = cli_context.get_orchestrator()

    console.print(f"[blue]Installing {repo}...[/blue]")
    record = _run(orchestrator.install(repo, options))

    console.print(f"[green]✅ Installed {record.name} ({record.kind.value}) at {record.install_path}[/green]")
    console.print(f"[dim]Server id: {record.server_id}[/dim]")


@cli.command("list")
@click.option(
    "--output-format", "-o",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format"
)
@handle_errors
def list_cmd(output_format: str):
    """List installed MCP servers."""
    servers = cli_context.get_orchestrator().list_servers()

    if output_format == "json":
        console.print(json.dumps(summarize(servers), indent=2))
        return

    if not servers:
        console.print("[yellow]No MCP servers installed[/yellow]")
        console.print("[dim]💡 Install one with: [cyan]mcp-installer install <repo>[/cyan][/dim]")
        return

    console.print("")
    console.print(server_table(servers))
    console.print("")


@cli.command()
@click.argument("server")
@handle_errors
def status(server: str):
    """Show the live state of a server."""
    orchestrator = cli_context.get_orchestrator()
    record = orchestrator.get_record(server)
    state = asyncio.run(orchestrator.status(server))

    console.print(f"[bold cyan]{record.name}[/bold cyan] ({record.server_id})")
    console.print(f"  State: {state.value}")
    console.print(f"  Kind: {record.kind.value} via {record.method.value}")
    console.print(f"  Version: {record.version}" + (f" ({record.revision[:12]})" if record.revision else ""))
    console.print(f"  Path: {record.install_path}")
    if record.image:
        console.print(f"  Image: {record.image}")
    console.print(f"  Enabled: {'yes' if record.enabled else 'no'}")


@cli.command()
@click.argument("server")
@handle_errors
def start(server: str):
    """Start a server and wait until it is running."""
    _run(cli_context.get_orchestrator().start(server))


@cli.command()
@click.argument("server")
@handle_errors
def stop(server: str):
    """Stop a server."""
    _run(cli_context.get_orchestrator().stop(server))


@cli.command()
@click.argument("server")
@handle_errors
def restart(server: str):
    """Restart a server and wait until it is running."""
    _run(cli_context.get_orchestrator().restart(server))


@cli.command()
@click.argument("server")
@click.option("--remove-files", is_flag=True, help="Also delete the install directory")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@handle_errors
def delete(server: str, remove_files: bool, yes: bool):
    """Delete a server, its container and its desktop config entry."""
    if not yes:
        click.confirm(f"Delete {server}?", abort=True)
    record = _run(cli_context.get_orchestrator().delete(server, remove_files=remove_files))
    console.print(f"[green]✅ Deleted {record.name}[/green]")


@cli.command()
@click.argument("server")
@handle_errors
def enable(server: str):
    """Add a server to the desktop client configuration."""
    record = _run(cli_context.get_orchestrator().set_enabled(server, True))
    console.print(f"[green]✅ Enabled {record.name}[/green]")


@cli.command()
@click.argument("server")
@handle_errors
def disable(server: str):
    """Remove a server from the desktop client configuration."""
    record = _run(cli_context.get_orchestrator().set_enabled(server, False))
    console.print(f"[green]✅ Disabled {record.name}[/green]")


@cli.command()
@click.argument("server")
@click.option("--tail", "-n", type=int, help="Only show the last N lines")
@click.option("--follow", "-f", is_flag=True, help="Keep streaming new output")
@handle_errors
def logs(server: str, tail: Optional[int], follow: bool):
    """Show a server's output."""
    orchestrator = cli_context.get_orchestrator()

    async def stream():
        async for chunk in orchestrator.logs(server, tail=tail, follow=follow):
            sys.stdout.write(chunk.decode("utf-8", errors="replace"))
            sys.stdout.flush()

    asyncio.run(stream())


@cli.command()
@click.argument("action", type=click.Choice(BATCH_ACTIONS))
@click.argument("servers", nargs=-1)
@click.option("--all", "all_servers", is_flag=True, help="Act on every installed server")
@handle_errors
def batch(action: str, servers: Tuple[str, ...], all_servers: bool):
    """Run one action over several servers."""
    orchestrator = cli_context.get_orchestrator()
    targets: List[str] = list(servers)
    if all_servers:
        targets = [r.server_id for r in orchestrator.list_servers()]
    if not targets:
        console.print("[yellow]No servers given[/yellow]")
        return

    results = _run(orchestrator.batch(action, targets))

    failed = 0
    for server_id, outcome in results.items():
        if outcome["ok"]:
            console.print(f"[green]✅ {server_id}[/green]")
        else:
            failed += 1
            console.print(f"[red]❌ {server_id}: {outcome['kind']}: {outcome['message']}[/red]")
    if failed:
        sys.exit(1)


for group in (backup_commands(cli_context), update_commands(cli_context), config_commands(cli_context)):
    cli.add_command(group)


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
