"""Tests for the stage implementations, driven through the orchestrator."""

from __future__ import annotations

import logging
import threading

import pytest

from deployforge.core.errors import InvalidTransitionError
from deployforge.models.artifacts import Artifact
from deployforge.models.execution import ExecutionContext, ExecutionStatus, StageStatus
from deployforge.models.pipeline import (
    CutoverStageSpec,
    CutoverStrategy,
    OnFailure,
    StageType,
)
from deployforge.models.server_groups import HealthReport, ServerGroupRole
from deployforge.stages import StageServices, build_stage_registry
from deployforge.stages.base import BaseStage, StageOutcome, StageResult, StageRun, group_name

CANDIDATE = "svc-svc-7-candidate"

DEPLOY = {"type": "deploy", "id": "candidate", "replicas": 2}


def _stage(orchestrator, execution, stage_id):
    return orchestrator.store.get_stage(execution.execution_id, stage_id)


class TestStageResult:
    def test_suspended_stays_running(self):
        assert StageResult(outcome=StageOutcome.SUSPENDED).status == StageStatus.RUNNING
        assert StageResult(outcome=StageOutcome.TIMED_OUT).status == StageStatus.TIMED_OUT

    def test_registry_covers_every_stage_type(self, orchestrator, runner):
        services = StageServices(
            store=orchestrator.store,
            ledger=orchestrator.ledger,
            infra=orchestrator.infra,
            controller=orchestrator.controller,
            canary_engine=orchestrator.canary_engine,
            runner=runner,
            clock=orchestrator.clock,
        )
        registry = build_stage_registry(services)
        assert set(registry) == set(StageType)
        assert all(stage.services is services for stage in registry.values())


# ---------------------------------------------------------------------------
# Deploy
# ---------------------------------------------------------------------------


class TestDeployStage:
    def test_creates_candidate_group(self, orchestrator, launch, infra):
        execution = launch(DEPLOY)
        done = orchestrator.run(execution.execution_id)
        assert done.status == ExecutionStatus.SUCCEEDED
        assert group_name(done.context, "candidate") == CANDIDATE
        assert done.context.server_groups == {"candidate": CANDIDATE}

        stage = _stage(orchestrator, execution, "candidate")
        assert stage.result["group_id"] == CANDIDATE
        assert stage.result["role"] == "candidate"
        assert stage.result["attempts"] == 1
        assert infra.replicas[CANDIDATE] == 2
        assert orchestrator.store.get_group("svc", CANDIDATE).role == ServerGroupRole.CANDIDATE

    def test_canary_role(self, orchestrator, launch):
        execution = launch({**DEPLOY, "role": "canary"})
        orchestrator.run(execution.execution_id)
        assert orchestrator.store.get_group("svc", CANDIDATE).role == ServerGroupRole.CANARY

    def test_rejected_apply_retried_with_backoff(self, orchestrator, launch, infra, clock):
        infra.apply_failures[CANDIDATE] = 2
        execution = launch(DEPLOY)
        done = orchestrator.run(execution.execution_id)
        assert done.status == ExecutionStatus.SUCCEEDED
        assert _stage(orchestrator, execution, "candidate").result["attempts"] == 3
        assert clock.slept == pytest.approx(1.0 + 2.0)

    def test_retries_exhausted(self, orchestrator, launch, infra):
        infra.apply_failures[CANDIDATE] = 5
        execution = launch({**DEPLOY, "retries": 1})
        done = orchestrator.run(execution.execution_id)
        assert done.status == ExecutionStatus.FAILED
        stage = _stage(orchestrator, execution, "candidate")
        assert stage.status == StageStatus.FAILED
        assert stage.error_kind == "deploy"
        assert "after 2 attempts" in stage.error
        assert infra.traffic_weights("svc") == {"svc-blue": 100}

    def test_stage_backoff_overrides_default(self, orchestrator, launch, infra, clock, caplog):
        infra.apply_failures[CANDIDATE] = 2
        execution = launch({**DEPLOY, "backoff_seconds": 0.5})
        with caplog.at_level(logging.WARNING, logger="deployforge.stages.deploy"):
            done = orchestrator.run(execution.execution_id)
        assert done.status == ExecutionStatus.SUCCEEDED
        assert clock.slept == pytest.approx(0.5 + 1.0)
        retries = [r.getMessage() for r in caplog.records if "retrying in" in r.getMessage()]
        assert len(retries) == 2
        assert "attempt 1/4" in retries[0]

    def test_terminate_during_backoff_stops_retrying(self, orchestrator, launch, infra, clock):
        infra.apply_failures[CANDIDATE] = 5
        execution = launch({**DEPLOY, "backoff_seconds": 10.0})
        clock.call_at(5, lambda: orchestrator.terminate(execution.execution_id, "alice"))
        done = orchestrator.run(execution.execution_id)
        assert done.status == ExecutionStatus.TERMINATED
        stage = _stage(orchestrator, execution, "candidate")
        assert stage.error_kind == "cancelled"
        assert stage.checkpoint["attempts"] == 1


# ---------------------------------------------------------------------------
# Health check and verification
# ---------------------------------------------------------------------------


class TestHealthCheckStage:
    def test_polls_until_ready(self, orchestrator, launch, infra):
        infra.script_health(
            CANDIDATE,
            HealthReport(ready=False, ready_instances=0, total_instances=2),
            HealthReport(ready=True, ready_instances=2, total_instances=2),
        )
        execution = launch(
            DEPLOY, {"type": "health_check", "id": "health", "group": "candidate"}
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.SUCCEEDED
        assert _stage(orchestrator, execution, "health").result["polls"] == 2

    def test_ready_ratio_threshold(self, orchestrator, launch, infra):
        infra.script_health(CANDIDATE, HealthReport(ready=True, ready_instances=1, total_instances=2))
        execution = launch(
            DEPLOY,
            {"type": "health_check", "id": "health", "group": "candidate", "min_ready_ratio": 0.5},
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.SUCCEEDED

    def test_timeout(self, orchestrator, launch, infra, clock):
        infra.script_health(CANDIDATE, HealthReport(ready=False))
        execution = launch(
            DEPLOY,
            {
                "type": "health_check",
                "id": "health",
                "group": "candidate",
                "interval_seconds": 10,
                "timeout_seconds": 30,
            },
        )
        done = orchestrator.run(execution.execution_id)
        assert done.status == ExecutionStatus.FAILED
        stage = _stage(orchestrator, execution, "health")
        assert stage.status == StageStatus.TIMED_OUT
        assert stage.error_kind == "health-timeout"
        assert clock.slept == 30


class TestVerificationJobStage:
    def test_success(self, orchestrator, launch, runner):
        execution = launch(
            DEPLOY,
            {"type": "verification_job", "id": "smoke", "group": "candidate",
             "test_spec": {"suite": "smoke"}},
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.SUCCEEDED
        [(test_spec, endpoint)] = runner.started.values()
        assert test_spec == {"suite": "smoke"}
        assert endpoint == f"http://{CANDIDATE}.internal"

    def test_failure(self, orchestrator, launch, runner):
        runner.outcomes["smoke"] = False
        execution = launch(
            DEPLOY,
            {"type": "verification_job", "id": "smoke", "group": "candidate",
             "test_spec": {"suite": "smoke"}},
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.FAILED
        assert _stage(orchestrator, execution, "smoke").error_kind == "verification-failure"

    def test_timeout_cancels_job(self, orchestrator, launch, runner):
        runner.polls_to_finish = 100
        execution = launch(
            DEPLOY,
            {"type": "verification_job", "id": "smoke", "group": "candidate",
             "poll_interval_seconds": 10, "timeout_seconds": 30},
        )
        orchestrator.run(execution.execution_id)
        stage = _stage(orchestrator, execution, "smoke")
        assert stage.status == StageStatus.TIMED_OUT
        assert stage.error_kind == "verification-timeout"
        assert runner.cancelled == list(runner.started)

    def test_continue_policy_downgrades_failure(self, orchestrator, launch, runner):
        runner.outcomes["smoke"] = False
        execution = launch(
            DEPLOY,
            {"type": "verification_job", "id": "smoke", "group": "candidate",
             "test_spec": {"suite": "smoke"}, "on_failure": "continue"},
            {"type": "wait", "id": "soak", "duration_seconds": 5},
        )
        done = orchestrator.run(execution.execution_id)
        assert done.status == ExecutionStatus.SUCCEEDED
        assert _stage(orchestrator, execution, "smoke").status == StageStatus.FAILED
        assert _stage(orchestrator, execution, "soak").status == StageStatus.SUCCEEDED


# ---------------------------------------------------------------------------
# Wait and cleanup
# ---------------------------------------------------------------------------


class TestWaitStage:
    def test_waits_for_duration(self, orchestrator, launch, clock):
        execution = launch({"type": "wait", "id": "soak", "duration_seconds": 120})
        orchestrator.run(execution.execution_id)
        assert clock.slept == 120
        assert _stage(orchestrator, execution, "soak").result["duration_seconds"] == 120


class TestCleanupStage:
    def test_refuses_to_destroy_active_group(self, orchestrator, launch, infra):
        execution = launch({"type": "cleanup", "id": "retire", "group": "@active"})
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.SUCCEEDED
        result = _stage(orchestrator, execution, "retire").result
        assert result == {"group_id": "svc-blue", "destroyed": False, "reason": "group is ACTIVE"}
        assert infra.destroyed == []

    def test_destroys_old_group_after_cutover(self, orchestrator, launch, infra, clock):
        execution = launch(
            DEPLOY,
            {"type": "cutover", "id": "cutover", "candidate": "candidate"},
            {"type": "cleanup", "id": "retire", "group": "@active", "grace_seconds": 60},
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.SUCCEEDED
        assert _stage(orchestrator, execution, "retire").result["destroyed"] is True
        assert infra.destroyed == ["svc-blue"]
        assert orchestrator.store.get_group("svc", "svc-blue") is None
        assert clock.slept >= 60


# ---------------------------------------------------------------------------
# Cutover and suspension guards
# ---------------------------------------------------------------------------


def _services(orchestrator, runner) -> StageServices:
    return StageServices(
        store=orchestrator.store,
        ledger=orchestrator.ledger,
        infra=orchestrator.infra,
        controller=orchestrator.controller,
        canary_engine=orchestrator.canary_engine,
        runner=runner,
        clock=orchestrator.clock,
    )


class TestCutoverStage:
    def test_ramp_without_analysis_fails_the_stage(self, orchestrator, runner, infra):
        ctx = ExecutionContext(
            execution_id="dx-1",
            service="svc",
            artifact=Artifact(service="svc", artifact_id="svc:7"),
            rollback_target="svc-blue",
            server_groups={"candidate": CANDIDATE},
        )
        spec = CutoverStageSpec.model_construct(
            type="cutover",
            id="cutover",
            candidate="candidate",
            strategy=CutoverStrategy.CANARY_RAMP,
            steps=[50, 100],
            analysis=None,
            on_failure=OnFailure.ABORT,
            timeout_seconds=None,
        )
        run = StageRun(
            context=ctx,
            stage_id="cutover",
            timeout_seconds=None,
            checkpoint={},
            clock=orchestrator.clock,
            cancel_event=threading.Event(),
            save_checkpoint=lambda checkpoint: None,
            update_context=lambda change: change(ctx),
        )
        stage = build_stage_registry(_services(orchestrator, runner))[StageType.CUTOVER]

        result = stage.run_stage(spec, run)
        assert result.outcome == StageOutcome.FAILED
        assert result.error_kind == "invalid-definition"
        assert infra.traffic_weights("svc") == {"svc-blue": 100}

    def test_busy_service_leaves_cutover_unreached(self, orchestrator, launch, monkeypatch):
        execution = launch(DEPLOY, {"type": "cutover", "id": "cutover", "candidate": "candidate"})
        monkeypatch.setattr(orchestrator.controller, "_lock_timeout", 0.05)
        with orchestrator.controller.service_lock("svc"):
            done = orchestrator.run(execution.execution_id)

        assert done.status == ExecutionStatus.FAILED
        assert _stage(orchestrator, execution, "cutover").error_kind == "cutover-busy"
        assert done.context.cutover_reached is False
        assert orchestrator.store.active_group("svc").group_id == "svc-blue"


class _SuspendWithoutRequest(BaseStage):
    stage_type = StageType.WAIT

    def execute(self, spec, run):
        return StageResult(outcome=StageOutcome.SUSPENDED)


class TestSuspension:
    def test_suspension_needs_a_judgment_request(self, orchestrator, launch, runner, monkeypatch):
        stages = orchestrator.executor._stages
        monkeypatch.setitem(
            stages, StageType.WAIT, _SuspendWithoutRequest(_services(orchestrator, runner))
        )
        execution = launch({"type": "wait", "id": "soak", "duration_seconds": 5})
        with pytest.raises(InvalidTransitionError, match="without a judgment request"):
            orchestrator.run(execution.execution_id)
        assert orchestrator.store.get_execution(execution.execution_id).status == (
            ExecutionStatus.RUNNING
        )
