"""``deployforge judgments`` / ``approve`` / ``reject`` — judgment gates.

Decisions are recorded durably in the database; the running worker acts
on them at its next tick.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from deployforge.config import config
from deployforge.core.audit_ledger import AuditLedger
from deployforge.core.errors import JudgmentError
from deployforge.core.judgment import JudgmentService
from deployforge.core.stage_machine import StageMachine
from deployforge.core.state_store import ExecutionStore

console = Console()

_DB_HELP = "Path to the Deployforge database (defaults to DEPLOYFORGE_DB_PATH)."


def _service(db: Path | None) -> JudgmentService:
    db_path = Path(db or config.db_path)
    if not db_path.exists():
        console.print(f"[bold red]Database not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)
    return JudgmentService(StageMachine(ExecutionStore(db_path), AuditLedger(db_path)))


def judgments_cmd(
    db: Path = typer.Option(None, "--db", help=_DB_HELP),
) -> None:
    """List judgment requests awaiting a decision."""
    pending = _service(db).list_pending()
    if not pending:
        console.print("[dim]No pending judgments.[/dim]")
        return

    table = Table(title="Pending judgments")
    table.add_column("Execution", style="cyan")
    table.add_column("Stage")
    table.add_column("Service")
    table.add_column("Artifact")
    table.add_column("Gate")
    table.add_column("Prompt", overflow="fold")
    table.add_column("Authorized")
    table.add_column("Expires")
    for request in pending:
        table.add_row(
            request.execution_id,
            request.stage_id,
            request.service,
            request.artifact_id,
            request.gate.value,
            request.prompt,
            ", ".join(request.authorized_actors),
            request.expires_at.strftime("%Y-%m-%d %H:%M:%S") if request.expires_at else "[dim]never[/dim]",
        )
    console.print(table)


def _decide(execution_id: str, actor: str, decision: str, db: Path | None) -> None:
    try:
        decided = _service(db).decide(execution_id, actor, decision)
    except JudgmentError as exc:
        console.print(f"[bold red]{exc.kind}:[/bold red] {exc}")
        raise typer.Exit(code=1)
    console.print(
        f"[bold green]Recorded[/bold green] {decided.decision.value} for "
        f"{execution_id}/{decided.stage_id} by {actor}"
    )


def approve_cmd(
    execution_id: str = typer.Argument(..., help="The execution awaiting judgment."),
    actor: str = typer.Option(..., "--actor", "-a", help="Who is deciding."),
    db: Path = typer.Option(None, "--db", help=_DB_HELP),
) -> None:
    """Approve a pending judgment."""
    _decide(execution_id, actor, "approve", db)


def reject_cmd(
    execution_id: str = typer.Argument(..., help="The execution awaiting judgment."),
    actor: str = typer.Option(..., "--actor", "-a", help="Who is deciding."),
    db: Path = typer.Option(None, "--db", help=_DB_HELP),
) -> None:
    """Reject a pending judgment."""
    _decide(execution_id, actor, "reject", db)
