"""Buildfarm command line.

Usage:
    buildfarm serve --port 9090
    buildfarm agent-revision
    buildfarm host provision <host-id>
    buildfarm task restart <task-id>

``--config`` selects the TOML file; without it the usual search applies
(``BUILDFARM_CONFIG``, ``./buildfarm.toml``, the user config dir).
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from buildfarm.cli import CliContext
from buildfarm.cli import host as host_cli
from buildfarm.cli import task as task_cli
from buildfarm.config import load_config
from buildfarm.errors import InternalError
from buildfarm.logging import setup_logging

app = typer.Typer(
    name="buildfarm",
    help="Task dispatch and agent provisioning for a CI build farm",
    no_args_is_help=True,
)
app.add_typer(host_cli.app, name="host", help="Provision hosts")
app.add_typer(task_cli.app, name="task", help="Maintain tasks")

console = Console()


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="TOML configuration file",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log at DEBUG level"),
    ] = False,
) -> None:
    """Load configuration and set up logging for every command."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging = config.logging.model_copy(update={"level": "DEBUG"})
    setup_logging(config.logging)

    ctx.obj = CliContext(config)


@app.command()
def serve(
    ctx: typer.Context,
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Bind address (default: api.host)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Bind port (default: api.port)"),
    ] = None,
) -> None:
    """Serve the agent reporting API with uvicorn."""
    import uvicorn

    from buildfarm.web.app import create_app

    config = ctx.obj.config
    bind_host = host or config.api.host
    bind_port = port or config.api.port

    console.print(
        f"[bold cyan]Buildfarm API[/bold cyan] on {bind_host}:{bind_port} "
        f"[dim](locks: {config.locks.backend}, agents report to {config.api.url})[/dim]"
    )
    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
        log_level=config.logging.level.lower(),
    )


@app.command("agent-revision")
def agent_revision(ctx: typer.Context) -> None:
    """Print the revision of the agent build hosts would receive now."""
    cli: CliContext = ctx.obj
    try:
        revision = asyncio.run(cli.gateway().current_agent_revision())
    except InternalError as e:
        console.print(f"[red]Error reading agent revision:[/red] {e}")
        raise typer.Exit(code=1)
    console.print(revision)


if __name__ == "__main__":
    app()
