"""Shared test fixtures for Deployforge."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from deployforge.adapters.memory import (
    FakeClock,
    InMemoryArtifactRegistry,
    InMemoryInfraController,
    InMemoryMetricsProvider,
    InMemoryVerificationRunner,
)
from deployforge.config import ProdConfig
from deployforge.core.audit_ledger import AuditLedger
from deployforge.core.orchestrator import Orchestrator
from deployforge.core.stage_machine import StageMachine
from deployforge.core.state_store import ExecutionStore
from deployforge.models.artifacts import Artifact
from deployforge.models.execution import PipelineExecution
from deployforge.models.notifications import Notification

SERVICE = "svc"
BLUE = "svc-blue"


class RecordingSink:
    """Sink that keeps every notification it accepts."""

    def __init__(self, name: str = "recorder", fail: bool = False) -> None:
        self._name = name
        self.fail = fail
        self.received: list[Notification] = []

    @property
    def sink_name(self) -> str:
        return self._name

    def accept(self, notification: Notification) -> None:
        if self.fail:
            raise ConnectionError(f"{self._name} unavailable")
        self.received.append(notification)

    def events(self) -> list[str]:
        return [n.event for n in self.received]


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def db_path(tmp_dir: Path) -> Path:
    return tmp_dir / "deployforge.db"


@pytest.fixture
def ledger(db_path: Path) -> AuditLedger:
    """Provide a fresh AuditLedger backed by a temp SQLite database."""
    return AuditLedger(db_path)


@pytest.fixture
def store(db_path: Path) -> ExecutionStore:
    """Provide an ExecutionStore sharing the ledger's database file."""
    return ExecutionStore(db_path)


@pytest.fixture
def stage_machine(store: ExecutionStore, ledger: AuditLedger) -> StageMachine:
    return StageMachine(store, ledger)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def infra() -> InMemoryInfraController:
    return InMemoryInfraController()


@pytest.fixture
def metrics() -> InMemoryMetricsProvider:
    return InMemoryMetricsProvider()


@pytest.fixture
def runner() -> InMemoryVerificationRunner:
    return InMemoryVerificationRunner(polls_to_finish=2)


@pytest.fixture
def registry() -> InMemoryArtifactRegistry:
    return InMemoryArtifactRegistry()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sink_factory() -> Callable[..., RecordingSink]:
    """Build extra recording sinks: ``sink_factory("pager", fail=True)``."""
    return RecordingSink


# ---------------------------------------------------------------------------
# Orchestrator with an adopted ACTIVE group
# ---------------------------------------------------------------------------


@pytest.fixture
def prod_config(db_path: Path) -> ProdConfig:
    return ProdConfig(
        environment="test",
        db_path=db_path,
        deploy_backoff_seconds=1.0,
        urgent_channel="pager",
        cutover_lock_timeout_seconds=5.0,
        notification_sinks=[],
    )


@pytest.fixture
def orchestrator(
    registry: InMemoryArtifactRegistry,
    infra: InMemoryInfraController,
    metrics: InMemoryMetricsProvider,
    runner: InMemoryVerificationRunner,
    clock: FakeClock,
    prod_config: ProdConfig,
    sink: RecordingSink,
) -> Iterator[Orchestrator]:
    """An orchestrator whose service ``svc`` runs on ACTIVE group ``svc-blue``."""
    orch = Orchestrator(
        registry=registry,
        infra=infra,
        metrics=metrics,
        runner=runner,
        clock=clock,
        prod_config=prod_config,
    )
    orch.dispatcher.register_sink(sink, channels=["default", "pager", "release"])
    handle = infra.seed_group(BLUE, replicas=2)
    orch.adopt_active_group(SERVICE, BLUE, "svc:6", handle)
    yield orch
    orch.shutdown()


@pytest.fixture
def make_pipeline() -> Callable[..., dict[str, Any]]:
    """Factory fixture: a pipeline definition mapping for ``svc``."""

    def _factory(*stages: dict[str, Any], **overrides: Any) -> dict[str, Any]:
        definition: dict[str, Any] = {
            "service": SERVICE,
            "version": "1",
            "stages": list(stages),
        }
        definition.update(overrides)
        return definition

    return _factory


@pytest.fixture
def launch(
    orchestrator: Orchestrator,
    make_pipeline: Callable[..., dict[str, Any]],
) -> Callable[..., PipelineExecution]:
    """Factory fixture: register *stages* and instantiate artifact ``svc:<n>``."""

    def _factory(*stages: dict[str, Any], artifact: str = "svc:7", **overrides: Any) -> PipelineExecution:
        orchestrator.register_definition(make_pipeline(*stages, **overrides))
        return orchestrator.instantiate(
            SERVICE, Artifact(service=SERVICE, artifact_id=artifact, source_ref="git:abc")
        )

    return _factory


@pytest.fixture
def canary_config() -> dict[str, Any]:
    """Two-metric canary config sampling ten one-minute ticks."""
    return {
        "metrics": [
            {"name": "error_rate", "query": "errors", "weight": 2.0},
            {"name": "latency", "query": "latency", "weight": 1.0},
        ],
        "interval_seconds": 60,
        "duration_seconds": 600,
    }
