"""idelink CLI - relay AI-agent clients to a running IDE."""

import asyncio
import sys
from datetime import datetime
from typing import Optional

import click
import structlog
from rich.console import Console
from rich.table import Table

from idelink import __version__
from idelink.config import IdelinkConfig, validate_config
from idelink.logging import bind_process_context, setup_logging

log = structlog.get_logger()

# stdout is reserved for protocol traffic in relay mode
console = Console()
err_console = Console(stderr=True)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Config file (TOML)")
@click.option("--data-dir", type=click.Path(file_okay=False), help="Registry and cache directory")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Override the configured log level",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], data_dir: Optional[str], log_level: Optional[str]):
    """idelink - relay AI-agent clients to a running IDE."""
    config = IdelinkConfig.load(config_path)
    if data_dir:
        config.data_dir = data_dir
    if log_level:
        config.log_level = log_level.upper()

    setup_logging(
        level=config.log_level,
        log_file=str(config.log_file) if config.log_file else None,
        json_format=config.log_json,
    )
    bind_process_context(ctx.invoked_subcommand or "cli")
    # The relay touches no disk state beyond registry cleanup
    if ctx.invoked_subcommand != "relay":
        for warning in validate_config(config):
            log.warning("config_warning", message=warning)

    ctx.obj = config


@cli.command()
@click.option("--pid", type=int, default=None, help="Target a specific IDE process id")
@click.option("--sln", "solution", default=None, help="Target the IDE that has this solution open")
@click.pass_obj
def relay(config: IdelinkConfig, pid: Optional[int], solution: Optional[str]):
    """Relay stdio JSON-RPC to the IDE host.

    Without options the target is chosen from solution files found in the
    working directory and its parents, falling back to the most recently
    active IDE instance.

    Examples:
        idelink relay

        idelink relay --pid 4242

        idelink relay --sln C:/src/App/App.sln
    """
    from idelink.discovery.resolver import Selector
    from idelink.relay.server import build_relay

    server = build_relay(config, Selector(process_id=pid, project_path=solution))

    async def run_relay():
        found = await server.startup(config.discovery_attempts, config.discovery_interval)
        if not found:
            err_console.print(
                "[yellow]idelink: could not find a running IDE host. "
                "Serving offline; calls will reconnect when one appears.[/yellow]"
            )
        await server.run_stdio()

    try:
        asyncio.run(run_relay())
    except KeyboardInterrupt:
        log.info("relay_interrupted")
    except Exception as e:
        log.exception("relay_fatal_error")
        err_console.print(f"[red]idelink: fatal error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--port", default=0, help="Port to listen on (0 = pick a free port)")
@click.option("--sln", "solution", default=None, help="Solution to report as open")
@click.pass_obj
def host(config: IdelinkConfig, port: int, solution: Optional[str]):
    """Run an IDE host endpoint on a loopback port.

    The host publishes itself in the instance registry so relays can find
    it, and withdraws the record on shutdown.
    """
    import uvicorn

    from idelink.host.server import build_host, find_free_port

    port = port or find_free_port()
    app, runtime = build_host(config, port)
    if solution:
        runtime.open_workspace(solution)

    err_console.print(f"[bold blue]idelink host listening on 127.0.0.1:{port}[/bold blue]")
    uvicorn.run(app, host="127.0.0.1", port=port, log_level=config.log_level.lower())


@cli.command()
@click.option("--cleanup", is_flag=True, help="Only prune records of exited processes")
@click.pass_obj
def instances(config: IdelinkConfig, cleanup: bool):
    """List running IDE host instances."""
    from idelink.discovery.registry import InstanceRegistry

    registry = InstanceRegistry(config.data_dir, config.record_prefix, config.record_suffix)

    if cleanup:
        removed = registry.cleanup_stale()
        console.print(f"[green]✓[/green] Removed {removed} stale record(s)")
        return

    records = registry.list_all()
    if not records:
        console.print("[yellow]No running IDE host instances found[/yellow]")
        console.print(f"[dim]Registry: {registry.directory}[/dim]")
        return

    table = Table(title="IDE Host Instances", show_header=True, header_style="bold magenta")
    table.add_column("PID", justify="right", style="cyan")
    table.add_column("Port", justify="right", style="green")
    table.add_column("Solution", style="white")
    table.add_column("Last Active", style="dim")

    for record in records:
        table.add_row(
            str(record.process_id),
            str(record.port),
            record.project_path or "[dim](none)[/dim]",
            datetime.fromtimestamp(record.modified).strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)
    console.print(f"\n[dim]Total instances: {len(records)}[/dim]")


@cli.command()
@click.option("--pid", type=int, default=None, help="Check a specific IDE process id")
@click.option("--sln", "solution", default=None, help="Check the IDE that has this solution open")
@click.pass_obj
def health(config: IdelinkConfig, pid: Optional[int], solution: Optional[str]):
    """Query an IDE host's health endpoint."""
    from idelink.core.errors import RelayError
    from idelink.discovery.registry import InstanceRegistry
    from idelink.discovery.resolver import InstanceResolver, Selector
    from idelink.relay.transport import HostTransport

    registry = InstanceRegistry(config.data_dir, config.record_prefix, config.record_suffix)
    resolver = InstanceResolver(
        registry,
        descriptor_patterns=config.descriptor_patterns,
        max_walk_depth=config.max_walk_depth,
    )
    resolution = resolver.resolve(Selector(process_id=pid, project_path=solution))
    endpoint = resolution.endpoint
    if endpoint is None:
        console.print("[red]✗ No matching IDE host instance is running[/red]")
        sys.exit(1)

    async def check():
        transport = HostTransport(timeout=10.0)
        try:
            return await transport.health(endpoint)
        finally:
            await transport.aclose()

    try:
        data = asyncio.run(check())
    except RelayError as e:
        console.print(f"[red]✗ {endpoint.url}: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓[/green] {endpoint.url}")
    for key, value in data.items():
        console.print(f"  [cyan]{key}[/cyan]: {value}")


@cli.command()
@click.pass_obj
def installations(config: IdelinkConfig):
    """List IDE installations that could host idelink."""
    from idelink.discovery.installations import detect_installations

    found = detect_installations(config.install_root)
    if not found:
        console.print(f"[yellow]No installations found under {config.install_root}[/yellow]")
        return

    for installation in found:
        console.print(f"[cyan]{installation.display_name}[/cyan]  {installation.executable}")


def main():
    cli()


if __name__ == "__main__":
    main()
