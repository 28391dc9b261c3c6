"""Host management CLI commands.

This module provides CLI commands for provisioning hosts with the agent.
"""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from buildfarm.cli import CliContext
from buildfarm.errors import NotFoundError, ProvisioningFailedError, ProvisioningTimeoutError

app = typer.Typer(help="Host management commands")
console = Console()


@app.command()
def provision(
    ctx: typer.Context,
    host_id: Annotated[str, typer.Argument(help="Host identifier")],
) -> None:
    """Install the agent on a host and start it.

    Args:
        host_id: Identifier of the host to provision
    """
    cli: CliContext = ctx.obj
    gateway = cli.gateway()

    async def _provision() -> str:
        try:
            return await gateway.start_agent_on_host(host_id)
        finally:
            await cli.dispose()

    console.print(f"[bold cyan]Provisioning host {host_id}[/bold cyan]")

    try:
        revision = asyncio.run(_provision())
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    except ProvisioningFailedError as e:
        kind = "timed out" if isinstance(e, ProvisioningTimeoutError) else "failed"
        body = f"[bold]Step:[/bold] {e.step}\n[bold]Error:[/bold] {e}"
        if e.output:
            body += f"\n\n[dim]{e.output[-2000:]}[/dim]"
        console.print(Panel(body, title=f"Provisioning {kind}", border_style="red"))
        raise typer.Exit(code=1)

    panel = Panel(
        f"[green]Agent started![/green]\n\n"
        f"[bold]Host:[/bold] {host_id}\n"
        f"[bold]Agent revision:[/bold] {revision}",
        title="Host Provisioned",
        border_style="green",
    )
    console.print(panel)
