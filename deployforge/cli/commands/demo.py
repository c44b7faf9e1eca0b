"""``deployforge demo`` — run a demo deployment against in-memory adapters.

Brings a ``checkout`` service under management with an ACTIVE ``blue``
group, publishes a new artifact and drives the execution to a terminal
state, showing the monitor afterwards.  Time runs on a fake clock, so
waits and canary analysis complete instantly.

Scenarios
---------
blue-green
    deploy, health check, smoke test, canary analysis, blue/green cutover,
    cleanup of the old group.
canary-fail
    the canary's error rate is three times the baseline's; the canary is
    collapsed and the execution fails without touching production.
judgment
    a manual judgment gate before the cutover, approved by ``demo-operator``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel

from deployforge.adapters.memory import (
    FakeClock,
    InMemoryArtifactRegistry,
    InMemoryInfraController,
    InMemoryMetricsProvider,
    InMemoryVerificationRunner,
)
from deployforge.config import ProdConfig
from deployforge.core.orchestrator import Orchestrator
from deployforge.models.artifacts import Artifact
from deployforge.models.execution import ExecutionStatus
from deployforge.monitor.projection import ExecutionProjection
from deployforge.monitor.renderer import MonitorRenderer
from deployforge.stages.base import group_name

console = Console()

_SERVICE = "checkout"
_SCENARIOS = ("blue-green", "canary-fail", "judgment")

_CANARY_CONFIG: dict[str, Any] = {
    "metrics": [
        {"name": "error_rate", "query": "errors", "weight": 2.0},
        {"name": "p99_latency", "query": "latency_p99", "weight": 1.0},
        {"name": "throughput", "query": "rps", "direction": "higher_is_better", "required": False},
    ],
    "interval_seconds": 60,
    "duration_seconds": 600,
}


def demo_pipeline(scenario: str) -> dict[str, Any]:
    """The demo's pipeline definition as a plain mapping."""
    stages: list[dict[str, Any]] = [
        {"type": "deploy", "id": "candidate", "replicas": 3},
        {
            "type": "parallel",
            "id": "checks",
            "stages": [
                {"type": "health_check", "id": "health", "group": "candidate"},
                {
                    "type": "verification_job",
                    "id": "smoke",
                    "group": "candidate",
                    "test_spec": {"suite": "smoke"},
                },
            ],
        },
        {
            "type": "canary_analysis",
            "id": "canary",
            "canary": "candidate",
            "config": _CANARY_CONFIG,
        },
    ]
    if scenario == "judgment":
        stages.append(
            {
                "type": "manual_judgment",
                "id": "release-approval",
                "prompt": "Promote the new checkout build to 100%?",
                "authorized_actors": ["demo-operator"],
            }
        )
    stages += [
        {"type": "cutover", "id": "cutover", "candidate": "candidate"},
        {"type": "cleanup", "id": "retire-old", "group": "@active", "grace_seconds": 300},
    ]
    return {"service": _SERVICE, "version": "demo", "stages": stages}


def demo_cmd(
    scenario: str = typer.Option(
        "blue-green",
        "--scenario",
        "-s",
        help=f"One of: {', '.join(_SCENARIOS)}.",
    ),
    db: Path = typer.Option(
        Path(".deployforge/demo.db"),
        "--db",
        help="Path to the demo database (uses demo-specific default).",
    ),
    events_dir: Path = typer.Option(
        Path(".deployforge/demo-events"),
        "--events",
        help="Directory for notification files.",
    ),
) -> None:
    """Run a demo deployment and show the monitor."""
    if scenario not in _SCENARIOS:
        console.print(f"[bold red]Unknown scenario:[/bold red] {scenario}")
        raise typer.Exit(code=1)

    registry = InMemoryArtifactRegistry()
    infra = InMemoryInfraController()
    metrics = InMemoryMetricsProvider()
    runner = InMemoryVerificationRunner(polls_to_finish=3)
    clock = FakeClock(datetime.now(timezone.utc))

    orchestrator = Orchestrator(
        registry=registry,
        infra=infra,
        metrics=metrics,
        runner=runner,
        clock=clock,
        prod_config=ProdConfig(
            environment="demo",
            db_path=db,
            events_dir=events_dir,
            deploy_backoff_seconds=1.0,
        ),
    )
    projection = ExecutionProjection(orchestrator.ledger)
    renderer = MonitorRenderer(console=console)

    console.print()
    console.print(
        Panel(
            f"[bold]Deployforge Demo[/bold] ({scenario})\n\n"
            f"Service [cyan]{_SERVICE}[/cyan] starts on the ACTIVE group "
            "[cyan]checkout-blue[/cyan] serving 100% of traffic.",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    definition = orchestrator.register_definition(demo_pipeline(scenario))
    if orchestrator.store.active_group(_SERVICE) is None:
        handle = infra.seed_group("checkout-blue", replicas=3)
        orchestrator.adopt_active_group(_SERVICE, "checkout-blue", "checkout:demo-base", handle)
    else:
        # Reused database: put the managed ACTIVE group back into the fake infra.
        active = orchestrator.store.active_group(_SERVICE)
        infra.seed_group(active.group_id, replicas=active.handle.replicas)
        infra.set_traffic_weights(_SERVICE, {active.group_id: 100})

    version = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    artifact = Artifact(
        service=_SERVICE,
        artifact_id=f"checkout:{version}",
        source_ref=f"git:demo-{version}",
    )
    registry.publish(artifact)
    created = orchestrator.trigger.poll_once()
    if not created:
        console.print("[bold red]The trigger did not create an execution.[/bold red]")
        raise typer.Exit(code=1)
    execution = created[0]
    console.print(f"[bold green]Execution created:[/bold green] {execution.execution_id}")

    baseline = execution.context.rollback_target or "checkout-blue"
    candidate = group_name(execution.context, "candidate")
    metrics.set_series("errors", baseline, 0.010)
    metrics.set_series("latency_p99", baseline, 180.0)
    metrics.set_series("rps", baseline, 500.0)
    metrics.set_series("errors", candidate, 0.030 if scenario == "canary-fail" else 0.010)
    metrics.set_series("latency_p99", candidate, 182.0)
    metrics.set_series("rps", candidate, 505.0)

    result = orchestrator.run(execution.execution_id)
    if result.status == ExecutionStatus.AWAITING_JUDGMENT:
        console.print("[magenta]Execution is awaiting judgment; approving as demo-operator.[/magenta]")
        renderer.print_snapshot(projection.snapshot(execution.execution_id, _order(definition)))
        orchestrator.decide(execution.execution_id, "demo-operator", "approve")
        result = orchestrator.store.get_execution(execution.execution_id)

    console.print()
    snapshot = projection.snapshot(execution.execution_id, _order(definition))
    renderer.print_snapshot(snapshot)
    orchestrator.shutdown()

    console.print()
    console.print(
        Panel(
            "\n".join([
                f"[bold]Execution:[/bold]  {result.execution_id}",
                f"[bold]Status:[/bold]     {result.status.value}",
                f"[bold]Traffic:[/bold]    {infra.traffic_weights(_SERVICE)}",
                f"[bold]Records:[/bold]    {snapshot.record_count}",
                f"[bold]Chain:[/bold]      {'valid' if snapshot.chain_valid else 'BROKEN'}",
                f"[bold]Events:[/bold]     {events_dir}",
            ]),
            title="[bold]Demo Summary[/bold]",
            border_style="green" if result.status == ExecutionStatus.SUCCEEDED else "yellow",
            padding=(1, 2),
        )
    )


def _order(definition: Any) -> list[str]:
    return [spec.id for spec in definition.iter_stages()]
