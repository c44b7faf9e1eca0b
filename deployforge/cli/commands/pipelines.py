"""``deployforge validate`` / ``deployforge register`` — pipeline definitions.

Definitions are data: a TOML or JSON file validated against the stage
schema.  ``register`` stores the definition keyed by its service, where the
trigger picks it up.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from deployforge.config import config
from deployforge.core.errors import PipelineDefinitionError
from deployforge.core.state_store import ExecutionStore
from deployforge.models.pipeline import ParallelBranch, PipelineDefinition, load_pipeline_definition

console = Console()


def _load_or_exit(path: Path) -> PipelineDefinition:
    try:
        return load_pipeline_definition(path)
    except PipelineDefinitionError as exc:
        console.print(f"[bold red]Invalid pipeline definition:[/bold red] {exc}")
        raise typer.Exit(code=1)


def _stage_table(definition: PipelineDefinition) -> Table:
    table = Table(title=f"{definition.service} pipeline (version {definition.version})")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Type")
    table.add_column("On failure")
    table.add_column("Timeout", justify="right")

    for i, node in enumerate(definition.stages):
        members = node.stages if isinstance(node, ParallelBranch) else [node]
        for j, spec in enumerate(members):
            ordinal = f"{i}" if len(members) == 1 else f"{i}.{j}"
            stage_id = spec.id if len(members) == 1 else f"{node.id}/{spec.id}"
            timeout = f"{spec.timeout_seconds:g}s" if spec.timeout_seconds else "[dim]-[/dim]"
            table.add_row(ordinal, stage_id, spec.type, spec.on_failure.value, timeout)
    return table


def validate_cmd(
    path: Path = typer.Argument(..., help="Pipeline definition (.toml or .json)."),
) -> None:
    """Validate a pipeline definition and show its stages."""
    definition = _load_or_exit(path)
    console.print(_stage_table(definition))
    console.print(f"[bold green]Valid:[/bold green] {path}")


def register_cmd(
    path: Path = typer.Argument(..., help="Pipeline definition (.toml or .json)."),
    db: Path = typer.Option(
        None, "--db", help="Path to the Deployforge database (defaults to DEPLOYFORGE_DB_PATH)."
    ),
) -> None:
    """Validate and register a pipeline definition for its service."""
    definition = _load_or_exit(path)
    store = ExecutionStore(db or config.db_path)
    previous = store.get_definition(definition.service)
    store.save_definition(definition)
    if previous is not None and previous.version != definition.version:
        console.print(
            f"[yellow]Replaced {definition.service} version {previous.version} "
            f"with {definition.version}[/yellow]"
        )
    console.print(
        f"[bold green]Registered[/bold green] pipeline for [cyan]{definition.service}[/cyan] "
        f"(version {definition.version})"
    )
