#!/usr/bin/env python3
"""
Metadata server HA command line interface

Operator commands for the metadata server cluster:
- Promote a shadow metadata server to master (authenticated, verified)
- Query a metadata server's personality, connection state and version
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from .. import __version__
from ..cluster.prober import RpcStatusProber
from ..cluster.promotion import PromotionClient
from ..core.errors import (
    MalformedResponseError,
    RejectedError,
    UnauthorizedError,
    UnreachableError,
    VerificationFailedError,
)

app = typer.Typer(
    name="mdsha",
    help="Metadata server HA administration",
    rich_markup_mode="rich"
)
console = Console(stderr=True)

SECRET_ENV = "MDSHA_ADMIN_PASSWORD"


def read_secret(secret_file: Optional[Path]) -> str:
    if secret_file:
        try:
            return secret_file.read_text().strip()
        except OSError as e:
            console.print(f"[red]Error: cannot read {secret_file}: {e}[/red]")
            raise typer.Exit(1)
    secret = os.getenv(SECRET_ENV)
    if secret:
        return secret
    return typer.prompt("Admin password", hide_input=True)


@app.command("promote")
def promote(
    address: str = typer.Argument(..., help="Shadow metadata server address"),
    port: int = typer.Argument(..., help="Shadow metadata server admin port"),
    secret_file: Optional[Path] = typer.Option(None, "--secret-file", "-s", help="File holding the admin password"),
    timeout: float = typer.Option(5.0, "--timeout", "-t", help="Network timeout in seconds")
):
    """Promote a shadow metadata server to master. Authentication needed."""
    secret = read_secret(secret_file)
    asyncio.run(promote_async(address, port, secret, timeout))


async def promote_async(address: str, port: int, secret: str, timeout: float):
    """Async promotion"""
    client = PromotionClient(address, port, timeout)
    try:
        with console.status(f"[bold blue]Promoting {address}:{port}..."):
            await client.promote(secret)
    except UnauthorizedError:
        console.print("[red]✗[/red] Wrong secret")
        raise typer.Exit(1)
    except RejectedError as e:
        console.print(f"[red]✗[/red] Promotion rejected: {e}")
        raise typer.Exit(1)
    except VerificationFailedError as e:
        console.print(f"[red]✗[/red] Promotion verification failed: {e}")
        raise typer.Exit(1)
    except UnreachableError as e:
        console.print(f"[red]✗[/red] Metadata server unreachable: {e}")
        raise typer.Exit(1)
    except MalformedResponseError as e:
        console.print(f"[red]✗[/red] Malformed response: {e}")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] {address}:{port} promoted to master")


@app.command("status")
def status(
    address: str = typer.Argument(..., help="Metadata server address"),
    port: int = typer.Argument(..., help="Metadata server admin port"),
    output_format: str = typer.Option("table", "--format", "-f", help="Output format (table, json, yaml, porcelain)"),
    timeout: float = typer.Option(5.0, "--timeout", "-t", help="Network timeout in seconds")
):
    """Show personality, connection state and metadata version"""
    asyncio.run(status_async(address, port, output_format, timeout))


async def status_async(address: str, port: int, output_format: str, timeout: float):
    """Async status query"""
    prober = RpcStatusProber(address, port, timeout)
    try:
        node_status = await prober.probe()
    except (UnreachableError, MalformedResponseError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    data = node_status.model_dump(mode="json")
    if output_format == "json":
        typer.echo(json.dumps(data, indent=2))
    elif output_format == "yaml":
        typer.echo(yaml.dump(data, default_flow_style=False))
    elif output_format == "porcelain":
        typer.echo(f"{data['personality']}\t{data['connection']}\t{data['metadata_version']}")
    else:
        table = Table(title=f"Metadata server {address}:{port}")
        table.add_column("Personality", style="cyan")
        table.add_column("Connection", style="magenta")
        table.add_column("Metadata version", style="green")
        table.add_row(data["personality"], data["connection"], str(data["metadata_version"]))
        Console().print(table)


@app.command("version")
def version():
    """Show version information"""
    typer.echo(f"mdsha {__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
