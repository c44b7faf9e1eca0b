"""``deployforge ledger EXECUTION_ID`` — show and verify the audit ledger.

Prints every record of an execution in sequence order and verifies its
hash chain.  ``--anchor`` exports a tamper-evident anchor for external
witnessing.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from deployforge.config import config
from deployforge.core.audit_ledger import AuditLedger, LedgerIntegrityError
from deployforge.monitor.renderer import MonitorRenderer

console = Console()


def ledger_cmd(
    execution_id: str = typer.Argument(..., help="The execution ID."),
    verify: bool = typer.Option(
        True, "--verify/--no-verify", help="Verify the hash chain."
    ),
    anchor: Path = typer.Option(
        None, "--anchor", help="Write an anchor for the current chain to this file."
    ),
    db: Path = typer.Option(
        None, "--db", help="Path to the Deployforge database (defaults to DEPLOYFORGE_DB_PATH)."
    ),
) -> None:
    """Show an execution's audit records."""
    db_path = Path(db or config.db_path)
    if not db_path.exists():
        console.print(f"[bold red]Database not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    ledger = AuditLedger(db_path)
    records = ledger.get_execution_records(execution_id)
    if not records:
        console.print(f"[bold red]Execution not found:[/bold red] {execution_id}")
        raise typer.Exit(code=1)

    table = Table(title=f"Audit ledger: {execution_id}")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Time")
    table.add_column("Stage", style="cyan")
    table.add_column("Event")
    table.add_column("Actor")
    table.add_column("Payload", overflow="fold")
    for record in records:
        table.add_row(
            str(record.sequence),
            record.timestamp_utc.strftime("%H:%M:%S"),
            record.stage_id or "[dim]-[/dim]",
            record.event.value,
            record.actor,
            json.dumps(record.payload, sort_keys=True, default=str),
        )
    console.print(table)

    if verify:
        renderer = MonitorRenderer(console=console)
        try:
            valid = ledger.verify_chain(execution_id)
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]{exc}[/bold red]")
            renderer.print_chain_verification(execution_id, False)
            raise typer.Exit(code=1)
        renderer.print_chain_verification(execution_id, valid)

    if anchor is not None:
        anchor.write_text(
            json.dumps(ledger.export_anchor(execution_id), indent=2, sort_keys=True),
            encoding="utf-8",
        )
        console.print(f"[green]Anchor written to {anchor}[/green]")
