"""Unit tests for the Orchestrator.

Tests construction, definition registration, instantiation, the worker
pool, operator rollback and the serve loop.
"""

from __future__ import annotations

import logging
import threading

import pytest
from pydantic import ValidationError

from deployforge.config import ProdConfig
from deployforge.core.errors import PipelineDefinitionError, RollbackFailure
from deployforge.core.orchestrator import Orchestrator
from deployforge.core.production_guard import ProductionConfigError
from deployforge.models.artifacts import Artifact
from deployforge.models.execution import ExecutionStatus
from deployforge.models.pipeline import PipelineDefinition
from deployforge.routing.dispatcher import NotificationDispatcher
from deployforge.routing.sinks.email import EmailSink
from deployforge.routing.sinks.local_file import LocalFileSink

GREEN = "svc-svc-7-candidate"

DEPLOY = {"type": "deploy", "id": "candidate"}
CUTOVER = {"type": "cutover", "id": "cutover", "candidate": "candidate"}


def _crash(execution_id: str):
    raise RuntimeError(f"database is locked while running {execution_id}")


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_ledger_and_store_share_configured_database(self, orchestrator, db_path):
        assert orchestrator.ledger.database.path == db_path
        assert orchestrator.store.database.path == db_path

    def test_production_guard_runs_on_construction(
        self, registry, infra, metrics, runner, clock, db_path
    ):
        config = ProdConfig(environment="production", db_path=db_path, urgent_channel="")
        with pytest.raises(ProductionConfigError, match="urgent notification channel"):
            Orchestrator(
                registry=registry,
                infra=infra,
                metrics=metrics,
                runner=runner,
                clock=clock,
                prod_config=config,
            )

    def test_adopt_active_group(self, orchestrator, infra):
        assert orchestrator.store.active_group("svc").group_id == "svc-blue"
        assert infra.traffic_weights("svc") == {"svc-blue": 100}


class TestDefaultSinks:
    @pytest.fixture
    def build(self, registry, infra, metrics, runner, clock, tmp_path):
        built: list[Orchestrator] = []

        def _factory(**settings) -> Orchestrator:
            config = ProdConfig(
                environment="test", db_path=tmp_path / "sinks.db", **settings
            )
            orch = Orchestrator(
                registry=registry,
                infra=infra,
                metrics=metrics,
                runner=runner,
                clock=clock,
                prod_config=config,
            )
            built.append(orch)
            return orch

        yield _factory
        for orch in built:
            orch.shutdown()

    def test_event_files_written_by_default(self, build, infra, tmp_path):
        orch = build(events_dir=tmp_path / "events")
        [sink] = orch.dispatcher.registered_sinks
        assert isinstance(sink, LocalFileSink)

        handle = infra.seed_group("svc-blue", replicas=2)
        orch.adopt_active_group("svc", "svc-blue", "svc:6", handle)
        orch.register_definition({"service": "svc", "stages": [DEPLOY]})
        execution = orch.instantiate("svc", Artifact(service="svc", artifact_id="svc:7"))
        orch.run(execution.execution_id)

        [path] = sink.list_events("svc", execution.execution_id)
        assert sink.read_event(path)["event"] == "execution_succeeded"
        assert orch.store.pending_notifications() == []

    def test_email_sink_selected_from_config(self, build):
        orch = build(notification_sinks=["email"], email_recipient="oncall@example.com")
        [sink] = orch.dispatcher.registered_sinks
        assert isinstance(sink, EmailSink)
        assert sink.sink_name == "email"

    def test_sinks_can_be_switched_off(self, build):
        orch = build(notification_sinks=[])
        assert orch.dispatcher.registered_sinks == []

    def test_email_sink_needs_recipient(self):
        with pytest.raises(ValidationError, match="email_recipient"):
            ProdConfig(notification_sinks=["email"])

    def test_supplied_dispatcher_is_used_as_is(
        self, registry, infra, metrics, runner, clock, tmp_path
    ):
        dispatcher = NotificationDispatcher()
        orch = Orchestrator(
            registry=registry,
            infra=infra,
            metrics=metrics,
            runner=runner,
            clock=clock,
            prod_config=ProdConfig(environment="test", db_path=tmp_path / "own.db"),
            dispatcher=dispatcher,
        )
        try:
            assert orch.dispatcher is dispatcher
            assert dispatcher.registered_sinks == []
        finally:
            orch.shutdown()


# ---------------------------------------------------------------------------
# Definitions and instantiation
# ---------------------------------------------------------------------------


class TestDefinitions:
    def test_register_from_mapping(self, orchestrator, make_pipeline):
        definition = orchestrator.register_definition(make_pipeline(DEPLOY, CUTOVER))
        assert isinstance(definition, PipelineDefinition)
        assert orchestrator.store.get_definition("svc") == definition

    def test_register_invalid_definition(self, orchestrator, make_pipeline):
        with pytest.raises(PipelineDefinitionError):
            orchestrator.register_definition(make_pipeline({"type": "teleport", "id": "x"}))

    def test_instantiate_without_definition(self, orchestrator):
        with pytest.raises(PipelineDefinitionError, match="no pipeline registered"):
            orchestrator.instantiate("svc", Artifact(service="svc", artifact_id="svc:7"))

    def test_instantiate_records_context(self, launch):
        execution = launch(DEPLOY)
        assert execution.status == ExecutionStatus.PENDING
        assert execution.context.rollback_target == "svc-blue"
        assert execution.context.baseline_weights == {"svc-blue": 100}
        assert execution.context.environment == "test"


# ---------------------------------------------------------------------------
# Running executions
# ---------------------------------------------------------------------------


class TestRunning:
    def test_submit_runs_on_worker_pool(self, orchestrator, launch):
        execution = launch(DEPLOY, CUTOVER)
        done = orchestrator.submit(execution.execution_id).result(timeout=30)
        assert done.status == ExecutionStatus.SUCCEEDED

    def test_poll_once_waits_inline(self, orchestrator, make_pipeline, registry, infra):
        orchestrator.register_definition(make_pipeline(DEPLOY, CUTOVER))
        registry.publish(Artifact(service="svc", artifact_id="svc:7"))
        [created] = orchestrator.poll_once(wait=True)
        assert orchestrator.store.get_execution(created.execution_id).status == (
            ExecutionStatus.SUCCEEDED
        )
        assert infra.traffic_weights("svc") == {GREEN: 100}
        assert orchestrator.poll_once(wait=True) == []

    def test_serve_until_stopped(self, orchestrator, make_pipeline, registry, clock):
        orchestrator.register_definition(make_pipeline(DEPLOY))
        registry.publish(Artifact(service="svc", artifact_id="svc:7"))
        stop = threading.Event()
        clock.call_at(1, stop.set)
        orchestrator.serve(stop)
        [execution] = orchestrator.store.list_executions("svc")
        assert execution.status == ExecutionStatus.SUCCEEDED

    def test_crashed_background_run_is_logged(self, orchestrator, launch, monkeypatch, caplog):
        execution = launch(DEPLOY)
        monkeypatch.setattr(orchestrator.executor, "run", _crash)
        with caplog.at_level(logging.ERROR, logger="deployforge.core.orchestrator"):
            future = orchestrator.submit(execution.execution_id)
            orchestrator.shutdown()

        error = future.exception()
        assert isinstance(error, RuntimeError)
        [record] = [r for r in caplog.records if "crashed" in r.getMessage()]
        assert execution.execution_id in record.getMessage()
        assert record.exc_info[1] is error

    def test_poll_once_does_not_lose_background_failures(
        self, orchestrator, make_pipeline, registry, monkeypatch, caplog
    ):
        orchestrator.register_definition(make_pipeline(DEPLOY))
        registry.publish(Artifact(service="svc", artifact_id="svc:7"))
        monkeypatch.setattr(orchestrator.executor, "run", _crash)
        with caplog.at_level(logging.ERROR, logger="deployforge.core.orchestrator"):
            [created] = orchestrator.poll_once()
            orchestrator.shutdown()

        crashed = [
            r for r in caplog.records
            if created.execution_id in r.getMessage() and r.exc_info is not None
        ]
        assert len(crashed) == 1
        assert "database is locked" in str(crashed[0].exc_info[1])


# ---------------------------------------------------------------------------
# Operator rollback
# ---------------------------------------------------------------------------


class TestOperatorRollback:
    def test_rollback_finished_execution(self, orchestrator, launch, infra):
        execution = launch(DEPLOY, CUTOVER)
        orchestrator.run(execution.execution_id)
        assert infra.traffic_weights("svc") == {GREEN: 100}

        after = orchestrator.rollback(execution.execution_id, "alice", reason="bad release")
        assert after.status == ExecutionStatus.SUCCEEDED
        assert infra.traffic_weights("svc") == {"svc-blue": 100}
        assert orchestrator.store.active_group("svc").group_id == "svc-blue"

    def test_rollback_live_execution_terminates(self, orchestrator, launch):
        execution = launch(DEPLOY)
        after = orchestrator.rollback(execution.execution_id, "alice")
        assert after.status == ExecutionStatus.TERMINATED

    def test_failed_rollback_pages(self, orchestrator, launch, infra, sink):
        execution = launch(DEPLOY, CUTOVER)
        orchestrator.run(execution.execution_id)
        infra.weight_faults = ["reject", "reject"]
        with pytest.raises(RollbackFailure):
            orchestrator.rollback(execution.execution_id, "alice")
        urgent = [n for n in sink.received if n.event == "rollback_failed"]
        assert len(urgent) == 1
        assert urgent[0].urgent is True
