"""Rich terminal renderer for the Deployforge monitor.

Turns ``ExecutionSnapshot`` into Rich renderables for terminal display,
with color-coded stage statuses and optional continuous ``Rich.Live`` mode.

Color scheme
------------
- green     : SUCCEEDED
- red       : FAILED / TIMED_OUT
- yellow    : RUNNING
- dim       : PENDING / SKIPPED
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deployforge.models.execution import ExecutionStatus, StageStatus

if TYPE_CHECKING:
    from deployforge.monitor.projection import ExecutionSnapshot


# ---------------------------------------------------------------------------
# Status -> Rich style mapping
# ---------------------------------------------------------------------------

_STATUS_STYLES: dict[StageStatus, str] = {
    StageStatus.SUCCEEDED: "bold green",
    StageStatus.FAILED: "bold red",
    StageStatus.TIMED_OUT: "bold red",
    StageStatus.RUNNING: "bold yellow",
    StageStatus.PENDING: "dim",
    StageStatus.SKIPPED: "dim",
}

_STATUS_LABELS: dict[StageStatus, str] = {
    StageStatus.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StageStatus.FAILED: "[bold red]FAILED[/bold red]",
    StageStatus.TIMED_OUT: "[bold red]TIMED OUT[/bold red]",
    StageStatus.RUNNING: "[yellow]RUNNING[/yellow]",
    StageStatus.PENDING: "[dim]PENDING[/dim]",
    StageStatus.SKIPPED: "[dim]SKIPPED[/dim]",
}

EXECUTION_STYLES: dict[ExecutionStatus, str] = {
    ExecutionStatus.PENDING: "dim",
    ExecutionStatus.RUNNING: "yellow",
    ExecutionStatus.AWAITING_JUDGMENT: "bold magenta",
    ExecutionStatus.SUCCEEDED: "bold green",
    ExecutionStatus.FAILED: "bold red",
    ExecutionStatus.TERMINATED: "red",
    ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION: "bold white on red",
}


class MonitorRenderer:
    """Renders ``ExecutionSnapshot`` as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Single snapshot render
    # ------------------------------------------------------------------

    def render_snapshot(self, snapshot: ExecutionSnapshot) -> Panel:
        """Render an ExecutionSnapshot as a Rich Panel containing a Table."""
        table = self._build_stage_table(snapshot)

        style = EXECUTION_STYLES.get(snapshot.status, "")
        summary_parts: list[str] = [
            f"[bold]Service:[/bold] {snapshot.service}",
            f"[bold]Artifact:[/bold] {snapshot.artifact_id}",
            f"[bold]Status:[/bold] [{style}]{snapshot.status.value}[/{style}]",
            f"[bold]Progress:[/bold] {snapshot.completed_count}/{snapshot.total_stages}",
        ]
        if snapshot.weights:
            weights = ", ".join(f"{g}={w}" for g, w in sorted(snapshot.weights.items()))
            summary_parts.append(f"[bold]Traffic:[/bold] {weights}")
        if snapshot.canary_score is not None:
            summary_parts.append(
                f"[bold]Canary:[/bold] {snapshot.canary_score:.1f} ({snapshot.canary_verdict})"
            )
        if snapshot.pending_judgment:
            summary_parts.append(
                f"[magenta][bold]Awaiting judgment:[/bold] {snapshot.pending_judgment}[/magenta]"
            )
        if snapshot.rollbacks:
            summary_parts.append(f"[red][bold]Rollbacks:[/bold] {', '.join(snapshot.rollbacks)}[/red]")

        chain_status = (
            "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        )
        summary_parts.append(f"[bold]Chain:[/bold] {chain_status}")

        parts: list[Text | Table] = [table, Text(""), Text.from_markup("  |  ".join(summary_parts))]
        if snapshot.failure_reason and snapshot.status != ExecutionStatus.SUCCEEDED:
            parts.append(Text(f"Reason: {snapshot.failure_reason}", style="red"))

        return Panel(
            Group(*parts),
            title=f"[bold]Deployforge[/bold] {snapshot.execution_id}",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def _build_stage_table(self, snapshot: ExecutionSnapshot) -> Table:
        table = Table(
            show_header=True,
            header_style="bold cyan",
            expand=True,
            show_lines=False,
            pad_edge=True,
        )

        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Stage", min_width=20)
        table.add_column("Type", min_width=14)
        table.add_column("Status", min_width=12, justify="center")
        table.add_column("Details", min_width=20)

        for i, stage in enumerate(snapshot.stages):
            name_style = _STATUS_STYLES.get(stage.status, "")
            details_parts: list[str] = []
            if stage.error_kind:
                details_parts.append(f"[red]{stage.error_kind}[/red]")
            if stage.resumed:
                details_parts.append(f"[cyan]resumed x{stage.resumed}[/cyan]")
            if stage.entered_at:
                details_parts.append(f"[dim]{stage.entered_at.strftime('%H:%M:%S')}[/dim]")
            details = " | ".join(details_parts) if details_parts else "[dim]-[/dim]"

            table.add_row(
                str(i),
                f"[{name_style}]{stage.stage_id}[/{name_style}]",
                stage.stage_type or "[dim]-[/dim]",
                _STATUS_LABELS.get(stage.status, stage.status.value),
                details,
            )

        return table

    # ------------------------------------------------------------------
    # Continuous live rendering
    # ------------------------------------------------------------------

    def render_live(
        self,
        snapshot_fn: Callable[[], ExecutionSnapshot],
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Continuously render an execution in Rich Live mode.

        *snapshot_fn* re-reads the ledger on every refresh cycle.  Stops
        when the execution is terminal or on Ctrl+C.
        """
        interval = 1.0 / max(refresh_hz, 0.1)

        with Live(
            console=self.console,
            refresh_per_second=refresh_hz,
            transient=False,
        ) as live:
            try:
                while True:
                    snapshot = snapshot_fn()
                    live.update(self.render_snapshot(snapshot))
                    if snapshot.status in (
                        ExecutionStatus.SUCCEEDED,
                        ExecutionStatus.FAILED,
                        ExecutionStatus.TERMINATED,
                        ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION,
                    ):
                        break
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(snapshot_fn()))

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_snapshot(self, snapshot: ExecutionSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def print_chain_verification(self, execution_id: str, valid: bool) -> None:
        """Print a chain verification result."""
        if valid:
            self.console.print(
                f"[green]Hash chain for execution {execution_id} is valid.[/green]"
            )
        else:
            self.console.print(
                f"[bold red]Hash chain for execution {execution_id} is BROKEN![/bold red]"
            )
