"""``deployforge monitor EXECUTION_ID`` — show the monitor for an execution.

Displays stage statuses, traffic weights, the latest canary verdict, any
pending judgment and hash chain status.  Supports continuous live mode
and chain verification.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from deployforge.config import config
from deployforge.core.audit_ledger import AuditLedger, LedgerIntegrityError
from deployforge.core.errors import ExecutionNotFoundError
from deployforge.core.state_store import ExecutionStore
from deployforge.monitor.projection import ExecutionProjection
from deployforge.monitor.renderer import MonitorRenderer

console = Console()


def monitor_cmd(
    execution_id: str = typer.Argument(
        ...,
        help="The execution ID to monitor.",
    ),
    live: bool = typer.Option(
        False,
        "--live",
        "-L",
        help="Enable continuous live monitoring mode (Ctrl+C to exit).",
    ),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        "-V",
        help="Verify the hash chain integrity before displaying.",
    ),
    refresh_hz: float = typer.Option(
        2.0,
        "--refresh",
        "-r",
        help="Refresh rate in Hz for live mode.",
    ),
    db: Path = typer.Option(
        None,
        "--db",
        help="Path to the Deployforge database (defaults to DEPLOYFORGE_DB_PATH).",
    ),
) -> None:
    """Show the monitor for an execution.

    The monitor is a pure read-only projection over the Audit Ledger.  It
    never maintains its own state — every display re-reads the ledger.
    """
    db_path = Path(db or config.db_path)
    if not db_path.exists():
        console.print(f"[bold red]Database not found:[/bold red] {db_path}")
        console.print("[dim]Register a pipeline first with: deployforge register[/dim]")
        raise typer.Exit(code=1)

    ledger = AuditLedger(db_path)
    projection = ExecutionProjection(ledger)
    renderer = MonitorRenderer(console=console)

    if not ledger.get_execution_records(execution_id):
        console.print(f"[bold red]Execution not found:[/bold red] {execution_id}")
        known = ledger.get_all_execution_ids()
        if known:
            console.print("\n[bold]Recent executions:[/bold]")
            for eid in known[:10]:
                console.print(f"  [cyan]{eid}[/cyan]")
            if len(known) > 10:
                console.print(f"  [dim]... and {len(known) - 10} more[/dim]")
        raise typer.Exit(code=1)

    try:
        definition = ExecutionStore(db_path).get_execution_definition(execution_id)
        stage_order = [spec.id for spec in definition.iter_stages()]
    except ExecutionNotFoundError:
        stage_order = None

    if verify_chain:
        console.print("[bold cyan]Verifying hash chain...[/bold cyan]")
        try:
            valid = ledger.verify_chain(execution_id)
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
            valid = False
        renderer.print_chain_verification(execution_id, valid)
        console.print()

    if live:
        console.print(
            f"[dim]Live monitoring {execution_id} at {refresh_hz} Hz. Press Ctrl+C to exit.[/dim]"
        )
        console.print()
        renderer.render_live(
            lambda: projection.snapshot(execution_id, stage_order),
            refresh_hz=refresh_hz,
        )
    else:
        renderer.print_snapshot(projection.snapshot(execution_id, stage_order))
