import asyncio
import typing as t
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich import print
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.table import Table

from reqflow.config import config_from_env
from reqflow.exceptions import ReqflowError
from reqflow.logging import setup_logging
from reqflow.orchestrator import OrchestratorStats, RequestOrchestrator
from reqflow.storage import SqliteStorage
from reqflow.transport import HttpxTransport, Transport

app = typer.Typer(no_args_is_help=True)
cache_app = typer.Typer(no_args_is_help=True, help="Inspect or clear the persistent response cache")
app.add_typer(cache_app, name="cache")


def build_transport() -> Transport:
    return HttpxTransport()


def parse_pairs(values: list[str] | None, *, separator: str, option: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for raw in values or []:
        name, sep, value = raw.partition(separator)
        if not sep or not name.strip():
            raise typer.BadParameter(f"Expected NAME{separator}VALUE, got {raw!r}", param_hint=option)
        pairs[name.strip()] = value.strip()
    return pairs


def print_stats(stats: OrchestratorStats) -> None:
    table = Table("Metric", "Value", title="Orchestrator stats")
    for name, value in stats.model_dump().items():
        table.add_row(name, f"{value:.2f}" if isinstance(value, float) else str(value))
    console = Console()
    console.print(table)


async def _run_get(
    *,
    address: str,
    params: dict[str, str],
    headers: dict[str, str],
    overrides: dict[str, t.Any],
    cache_path: Path | None,
) -> tuple[t.Any, OrchestratorStats]:
    config = config_from_env()
    storage = SqliteStorage(path=cache_path) if cache_path is not None else None
    async with RequestOrchestrator(
        transport=build_transport(),
        config=config,
        storage=storage,
        **overrides,
    ) as orchestrator:
        data = await orchestrator.get(address, params, headers=headers)
        return data, orchestrator.get_stats()


@app.command(name="get")
def get(
    address: Annotated[str, typer.Argument(help="Absolute URL, or a path relative to --base-url")],
    param: Annotated[
        list[str] | None,
        typer.Option("--param", "-p", help="Query parameter as NAME=VALUE, repeatable"),
    ] = None,
    header: Annotated[
        list[str] | None,
        typer.Option("--header", "-H", help="Request header as NAME:VALUE, repeatable"),
    ] = None,
    base_url: Annotated[str | None, typer.Option(help="Base URL for relative addresses")] = None,
    timeout: Annotated[float | None, typer.Option(help="Per-attempt timeout in seconds")] = None,
    max_attempts: Annotated[int | None, typer.Option(help="Maximum attempts, including the first")] = None,
    cache_path: Annotated[
        Path | None,
        typer.Option(help="SQLite file used as persistent cache tier"),
    ] = None,
    stats: Annotated[bool, typer.Option("--stats", help="Print orchestrator stats afterwards")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
):
    """Fetch an address through the orchestrator and print the JSON payload"""
    load_dotenv()
    setup_logging(level="DEBUG" if verbose else "WARNING")
    overrides: dict[str, t.Any] = {"batching_enabled": False}
    if base_url is not None:
        overrides["base_url"] = base_url
    if timeout is not None:
        overrides["default_timeout"] = timeout
    if max_attempts is not None:
        overrides["max_attempts"] = max_attempts

    try:
        data, snapshot = asyncio.run(
            _run_get(
                address=address,
                params=parse_pairs(param, separator="=", option="--param"),
                headers=parse_pairs(header, separator=":", option="--header"),
                overrides=overrides,
                cache_path=cache_path,
            )
        )
    except ReqflowError as error:
        print(f"[red]{type(error).__name__}[/red]: {error.message}")
        for record in error.attempts:
            print(f"  attempt {record.number}: {record.error or 'ok'} ({record.duration:.3f}s)")
        raise typer.Exit(1)

    console = Console()
    console.print(Panel(JSON.from_data(data), title=address, expand=False))
    if stats:
        print_stats(snapshot)


@cache_app.command(name="size")
def cache_size(
    cache_path: Annotated[Path | None, typer.Option(help="SQLite cache file")] = None,
):
    """Show how many entries the persistent cache holds"""
    storage = SqliteStorage(path=cache_path)
    count = len(storage.keys_sync())
    print(f"[green]{count}[/green] entries in {storage.path.as_posix()}")


@cache_app.command(name="clear")
def cache_clear(
    cache_path: Annotated[Path | None, typer.Option(help="SQLite cache file")] = None,
):
    """Delete every entry from the persistent cache"""
    storage = SqliteStorage(path=cache_path)
    deleted = storage.clear_sync()
    print(f"Deleted [green]{deleted}[/green] entries from {storage.path.as_posix()}")


@app.command()
def version():
    """Get the version of the package"""
    try:
        typer.echo(package_version("reqflow"))
    except PackageNotFoundError:
        typer.echo("unknown")
    raise typer.Exit()
