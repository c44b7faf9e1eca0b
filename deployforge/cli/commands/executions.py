"""``deployforge executions`` — list executions from the state store."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from deployforge.config import config
from deployforge.core.state_store import ExecutionStore
from deployforge.models.execution import ExecutionStatus
from deployforge.monitor.renderer import EXECUTION_STYLES

console = Console()


def executions_cmd(
    service: str = typer.Option(None, "--service", "-s", help="Only this service."),
    status: ExecutionStatus = typer.Option(None, "--status", help="Only this status."),
    db: Path = typer.Option(
        None, "--db", help="Path to the Deployforge database (defaults to DEPLOYFORGE_DB_PATH)."
    ),
) -> None:
    """List executions, newest last."""
    db_path = Path(db or config.db_path)
    if not db_path.exists():
        console.print(f"[bold red]Database not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    store = ExecutionStore(db_path)
    executions = store.list_executions(service=service, status=status)
    if not executions:
        console.print("[dim]No executions.[/dim]")
        return

    table = Table(title="Executions")
    table.add_column("Execution", style="cyan")
    table.add_column("Service")
    table.add_column("Artifact")
    table.add_column("Status")
    table.add_column("Stage", justify="right")
    table.add_column("Started")
    table.add_column("Reason", overflow="fold")

    for execution in executions:
        style = EXECUTION_STYLES.get(execution.status, "")
        table.add_row(
            execution.execution_id,
            execution.service,
            execution.artifact.artifact_id,
            f"[{style}]{execution.status.value}[/{style}]",
            str(execution.current_index),
            execution.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            execution.failure_reason or "[dim]-[/dim]",
        )
    console.print(table)
