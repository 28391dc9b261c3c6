"""Task management CLI commands."""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from buildfarm.cli import CliContext
from buildfarm.database.models.task import Task
from buildfarm.errors import NotFoundError
from buildfarm.orchestrator.state_machine import InvalidTransitionError, TaskStateMachine

app = typer.Typer(help="Task management commands")
console = Console()


@app.command()
def restart(
    ctx: typer.Context,
    task_id: Annotated[str, typer.Argument(help="Task identifier")],
) -> None:
    """Reset a finished task so it can be queued and run again.

    Args:
        task_id: Identifier of the finished task
    """
    cli: CliContext = ctx.obj
    state_machine = TaskStateMachine()

    async def _restart() -> Task:
        try:
            async with cli.session_factory() as session:
                task = await state_machine.restart(task_id, session)
                await session.commit()
                return task
        finally:
            await cli.dispose()

    try:
        task = asyncio.run(_restart())
    except (NotFoundError, InvalidTransitionError) as e:
        console.print(f"[red]Error restarting task:[/red] {e}")
        raise typer.Exit(code=1)

    panel = Panel(
        f"[green]Task restarted![/green]\n\n"
        f"[bold]ID:[/bold] {task.id}\n"
        f"[bold]Execution:[/bold] {task.execution}\n"
        f"[bold]Status:[/bold] {task.status.value}",
        title="Task Restarted",
        border_style="green",
    )
    console.print(panel)
