"""Main CLI interface for the engine."""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import typer
from rich import print as rich_print
from rich.console import Console
from rich.table import Table

from ..config.manager import ConfigManager
from ..core.manager import EngineManager
from ..errors import ProtocolError, TransportError

app = typer.Typer(help="MCP Engine - context protocol engine, client and proxy")
console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Configuration file path")


@app.command()
def start(
    config: Optional[str] = ConfigOption,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Run the engine (and proxy, if enabled) until interrupted."""
    setup_logging(verbose)
    try:
        asyncio.run(run_manager(config))
    except KeyboardInterrupt:
        rich_print("\n[yellow]Shutting down engine...[/yellow]")
    except Exception as e:
        rich_print(f"[red]Error starting engine: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def ping(
    config: Optional[str] = ConfigOption,
    count: int = typer.Option(1, "--count", "-n", help="Number of pings"),
    via_proxy: bool = typer.Option(False, "--proxy", help="Ping through the proxy"),
):
    """Measure round-trip time to the engine."""
    try:
        rtts = asyncio.run(ping_engine(config, count, via_proxy))
    except (ProtocolError, TransportError) as e:
        rich_print(f"[red]Ping failed: {e}[/red]")
        raise typer.Exit(1)

    for i, rtt in enumerate(rtts, 1):
        rich_print(f"ping {i}: [green]{rtt * 1000:.3f} ms[/green]")
    if len(rtts) > 1:
        rich_print(f"average: {sum(rtts) / len(rtts) * 1000:.3f} ms")


@app.command()
def call(
    method: str = typer.Argument(..., help="Method to call, e.g. tools/list"),
    params: str = typer.Option("{}", "--params", "-p", help="Params as a JSON object"),
    config: Optional[str] = ConfigOption,
    via_proxy: bool = typer.Option(False, "--proxy", help="Call through the proxy"),
):
    """Send one request and print the result."""
    try:
        parsed = json.loads(params)
    except ValueError as e:
        rich_print(f"[red]Invalid --params JSON: {e}[/red]")
        raise typer.Exit(2)
    if not isinstance(parsed, dict):
        rich_print("[red]--params must be a JSON object[/red]")
        raise typer.Exit(2)

    try:
        result = asyncio.run(call_method(config, method, parsed, via_proxy))
    except ProtocolError as e:
        rich_print(f"[red]{e.kind.value} ({e.code}): {e.message}[/red]")
        raise typer.Exit(1)
    except TransportError as e:
        rich_print(f"[red]Connection error: {e}[/red]")
        raise typer.Exit(1)

    console.print_json(data=result)


# Registry commands
registry_app = typer.Typer(help="Registry inspection commands")
app.add_typer(registry_app, name="registry")


@registry_app.command("list")
def list_registry(
    kind: str = typer.Option("all", "--kind", "-k", help="resources, tools, prompts or all"),
    config: Optional[str] = ConfigOption,
):
    """List registered entries."""
    namespaces = ["resources", "tools", "prompts"] if kind == "all" else [kind]
    if any(ns not in ("resources", "tools", "prompts") for ns in namespaces):
        rich_print(f"[red]Unknown kind: {kind}[/red]")
        raise typer.Exit(2)

    listings = asyncio.run(list_entries(config, namespaces))
    for namespace, entries in listings.items():
        table = Table(title=f"Registered {namespace}")
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="magenta")
        table.add_column("Key" if namespace != "resources" else "URI", style="yellow")
        table.add_column("Description", style="green")

        for entry in entries:
            key = entry.get("uri", entry.get("name", ""))
            table.add_row(entry["id"], entry.get("name", ""), key, entry.get("description") or "")

        console.print(table)


# Proxy commands
proxy_app = typer.Typer(help="Proxy commands")
app.add_typer(proxy_app, name="proxy")


@proxy_app.command("status")
def proxy_status(config: Optional[str] = ConfigOption):
    """Show proxy backends and counters."""
    stats = asyncio.run(collect_proxy_status(config))
    if stats is None:
        rich_print("[yellow]Proxy is not enabled in this configuration[/yellow]")
        return

    table = Table(title="Proxy Backends")
    table.add_column("Backend", style="cyan")
    table.add_column("Health", style="green")
    table.add_column("Requests", style="magenta")
    table.add_column("Errors", style="red")
    table.add_column("In flight", style="yellow")

    for backend in stats["backends"]:
        table.add_row(
            backend["backend_id"],
            backend["health"],
            str(backend["requests"]),
            str(backend["errors"]),
            str(backend["in_flight"]),
        )
    console.print(table)

    proxy = stats["proxy"]
    rich_print(f"Selection: {stats['selection']}")
    rich_print(
        f"Requests: {proxy['total_requests']}  forwarded: {proxy['forwarded']}  "
        f"rate limited: {proxy['rate_limited']}"
    )
    totals = stats.get("totals") or {}
    if totals:
        rich_print(f"Backend totals: {totals}")


# Configuration management commands
config_app = typer.Typer(help="Configuration management commands")
app.add_typer(config_app, name="config")


@config_app.command("validate")
def validate_config(
    config: str = typer.Option("mcp-engine.yaml", "--config", "-c", help="Configuration file path"),
):
    """Validate configuration file."""
    config_manager = ConfigManager(config)
    issues = config_manager.validate_config()

    if not issues:
        rich_print("[green]Configuration is valid![/green]")
        return

    rich_print("[red]Configuration validation failed:[/red]")
    for issue in issues:
        rich_print(f"  [red]•[/red] {issue}")
    raise typer.Exit(1)


@config_app.command("show")
def show_config(
    config: str = typer.Option("mcp-engine.yaml", "--config", "-c", help="Configuration file path"),
):
    """Show current configuration."""
    try:
        config_obj = ConfigManager(config).load_config()
    except (FileNotFoundError, ValueError) as e:
        rich_print(f"[red]Error showing configuration: {e}[/red]")
        raise typer.Exit(1)

    rich_print("[bold]MCP Engine Configuration[/bold]")
    rich_print(f"Engine: {config_obj.engine.name} v{config_obj.engine.version}")
    rich_print(
        f"Runtime: timeout={config_obj.runtime.operation_timeout}s "
        f"retention={config_obj.runtime.result_retention}s "
        f"max_concurrent={config_obj.runtime.max_concurrent_requests}"
    )

    if config_obj.resources or config_obj.prompts:
        rich_print(
            f"\n[bold]Seeds:[/bold] {len(config_obj.resources)} resources, "
            f"{len(config_obj.prompts)} prompts"
        )

    proxy = config_obj.proxy
    state = "[green]enabled[/green]" if proxy.enabled else "[red]disabled[/red]"
    rich_print(f"\n[bold]Proxy ({state}):[/bold] selection={proxy.selection}")
    if proxy.rate_limit.enabled:
        rate = proxy.rate_limit
        rich_print(
            f"  rate limit: {rate.strategy} {rate.max_requests}/{rate.window_size}s "
            f"burst={rate.burst_size} key={rate.key}"
        )
    for backend_id, backend in proxy.backends.items():
        status = "[green]enabled[/green]" if backend.enabled else "[red]disabled[/red]"
        rich_print(f"  • {backend_id} ({status})")

    if config_obj.auth and config_obj.auth.clients:
        rich_print(f"\n[bold]Clients ({len(config_obj.auth.clients)}):[/bold]")
        for client_id in config_obj.auth.clients.keys():
            rich_print(f"  • {client_id}")


# Implementation functions
async def run_manager(config_path: Optional[str]):
    """Run the manager until cancelled."""
    manager = EngineManager(config_path)
    rich_print(f"[blue]Starting engine '{manager.config.engine.name}'[/blue]")
    await manager.start(watch=config_path is not None)
    try:
        await asyncio.Event().wait()
    finally:
        await manager.stop()


async def _with_session(config_path: Optional[str], via_proxy: bool, action):
    manager = EngineManager(config_path)
    await manager.start()
    try:
        async with manager.session(via_proxy=via_proxy) as session:
            return await action(session)
    finally:
        await manager.stop()


async def ping_engine(config_path: Optional[str], count: int, via_proxy: bool):
    async def action(session):
        return [await session.ping() for _ in range(count)]

    return await _with_session(config_path, via_proxy, action)


async def call_method(
    config_path: Optional[str], method: str, params: Dict[str, Any], via_proxy: bool
) -> Any:
    async def action(session):
        return await session.call(method, params)

    return await _with_session(config_path, via_proxy, action)


async def list_entries(config_path: Optional[str], namespaces):
    async def action(session):
        return {ns: (await session.call(f"{ns}/list"))[ns] for ns in namespaces}

    return await _with_session(config_path, False, action)


async def collect_proxy_status(config_path: Optional[str]) -> Optional[Dict[str, Any]]:
    """Proxy stats after one health check; None when the proxy is disabled."""
    manager = EngineManager(config_path)
    if not manager.config.proxy.enabled:
        return None
    await manager.start()
    try:
        await manager.router.check_health()
        stats = manager.router.get_stats()
        stats["totals"] = (await manager.router.aggregate_stats())["totals"]
        return stats
    finally:
        await manager.stop()


def setup_logging(verbose: bool):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def main():
    """Main entry point for CLI."""
    app()
