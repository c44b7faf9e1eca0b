"""Main Typer application — imports and registers all CLI commands.

Entry point: ``deployforge`` (configured via pyproject.toml console_scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from deployforge.cli.commands.demo import demo_cmd
from deployforge.cli.commands.executions import executions_cmd
from deployforge.cli.commands.judgments import approve_cmd, judgments_cmd, reject_cmd
from deployforge.cli.commands.ledger_cmd import ledger_cmd
from deployforge.cli.commands.monitor_cmd import monitor_cmd
from deployforge.cli.commands.pipelines import register_cmd, validate_cmd
from deployforge.config import config

app = typer.Typer(
    name="deployforge",
    help="Deployforge: progressive, auditable, crash-recoverable deployments.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def _configure(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Log level (defaults to DEPLOYFORGE_LOG_LEVEL).",
    ),
) -> None:
    """Install Rich logging for every command."""
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


# Register subcommands
app.command(name="validate", help="Validate a pipeline definition file.")(validate_cmd)
app.command(name="register", help="Register a pipeline definition for its service.")(register_cmd)
app.command(name="executions", help="List executions.")(executions_cmd)
app.command(name="ledger", help="Show and verify an execution's audit ledger.")(ledger_cmd)
app.command(name="judgments", help="List pending judgment requests.")(judgments_cmd)
app.command(name="approve", help="Approve a pending judgment.")(approve_cmd)
app.command(name="reject", help="Reject a pending judgment.")(reject_cmd)
app.command(name="monitor", help="Show the monitor for an execution.")(monitor_cmd)
app.command(name="demo", help="Run a demo deployment against in-memory adapters.")(demo_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
