"""End-to-end integration tests — full deployments through the Orchestrator.

These tests exercise the Orchestrator, StageExecutor, StageMachine,
AuditLedger, TrafficController, CanaryAnalysisEngine, JudgmentService and
notification outbox working together against the in-memory adapters.
"""

from __future__ import annotations

import pytest

from deployforge.core.cutover import normalize_weights
from deployforge.core.errors import InvalidTransitionError
from deployforge.core.orchestrator import Orchestrator
from deployforge.models.execution import ExecutionStatus, StageStatus
from deployforge.models.judgment import GateKind, JudgmentDecision
from deployforge.models.ledger import AuditEvent
from deployforge.models.server_groups import ServerGroupRole

BLUE = "svc-blue"
GREEN = "svc-svc-7-candidate"

DEPLOY = {"type": "deploy", "id": "candidate", "replicas": 2}
CANARY_DEPLOY = {**DEPLOY, "role": "canary"}
HEALTH = {"type": "health_check", "id": "health", "group": "candidate"}
CUTOVER = {"type": "cutover", "id": "cutover", "candidate": "candidate"}
SMOKE = {
    "type": "verification_job",
    "id": "smoke",
    "group": "candidate",
    "test_spec": {"suite": "smoke"},
}


def _metrics(metrics, canary_errors: float = 0.010, canary_latency: float = 200.0) -> None:
    metrics.set_series("errors", BLUE, 0.010)
    metrics.set_series("latency", BLUE, 200.0)
    metrics.set_series("errors", GREEN, canary_errors)
    metrics.set_series("latency", GREEN, canary_latency)


def _stage(orchestrator, execution, stage_id):
    return orchestrator.store.get_stage(execution.execution_id, stage_id)


def _events(orchestrator, execution) -> list[AuditEvent]:
    return [r.event for r in orchestrator.ledger.get_execution_records(execution.execution_id)]


# ---------------------------------------------------------------------------
# Scenario A: blue/green success
# ---------------------------------------------------------------------------


class TestBlueGreenSuccess:
    def test_new_group_becomes_active(self, orchestrator, launch, infra):
        execution = launch(DEPLOY, HEALTH, CUTOVER)
        done = orchestrator.run(execution.execution_id)

        assert done.status == ExecutionStatus.SUCCEEDED
        assert all(
            s.status == StageStatus.SUCCEEDED
            for s in orchestrator.store.list_stages(execution.execution_id)
        )
        assert orchestrator.store.role_map("svc") == {BLUE: "disabled", GREEN: "active"}
        assert infra.traffic_weights("svc") == {GREEN: 100}
        assert orchestrator.ledger.verify_chain(execution.execution_id) is True

    def test_terminal_notification_carries_audit_ref(self, orchestrator, launch, sink):
        execution = launch(DEPLOY, CUTOVER)
        orchestrator.run(execution.execution_id)
        [notification] = [n for n in sink.received if n.event == "execution_succeeded"]
        assert notification.execution_id == execution.execution_id
        assert notification.artifact_id == "svc:7"
        assert notification.audit_ref.startswith(f"audit://{execution.execution_id}#")

    def test_parallel_checks(self, orchestrator, launch):
        execution = launch(
            DEPLOY,
            {"type": "parallel", "id": "checks", "stages": [HEALTH, SMOKE]},
            CUTOVER,
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.SUCCEEDED
        assert _stage(orchestrator, execution, "health").status == StageStatus.SUCCEEDED
        assert _stage(orchestrator, execution, "smoke").status == StageStatus.SUCCEEDED

    def test_failed_parallel_member_stops_pipeline(self, orchestrator, launch, runner, infra):
        runner.outcomes["smoke"] = False
        execution = launch(
            DEPLOY,
            {"type": "parallel", "id": "checks", "stages": [HEALTH, SMOKE]},
            CUTOVER,
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.FAILED
        assert _stage(orchestrator, execution, "cutover").status == StageStatus.SKIPPED
        assert infra.traffic_weights("svc") == {BLUE: 100}


# ---------------------------------------------------------------------------
# Scenario B: marginal canary, human judgment
# ---------------------------------------------------------------------------


class TestMarginalCanary:
    @pytest.fixture
    def marginal(self, launch, metrics, canary_config):
        # error rate 18% worse than baseline scores 80; aggregate ~86.7
        _metrics(metrics, canary_errors=0.0118)
        return launch(
            CANARY_DEPLOY,
            {
                "type": "canary_analysis",
                "id": "canary",
                "canary": "candidate",
                "config": canary_config,
                "on_marginal": "judgment",
                "authorized_actors": ["alice"],
            },
            CUTOVER,
        )

    def test_marginal_suspends_for_judgment(self, orchestrator, marginal, sink):
        paused = orchestrator.run(marginal.execution_id)
        assert paused.status == ExecutionStatus.AWAITING_JUDGMENT
        request = orchestrator.store.get_judgment(marginal.execution_id, "canary")
        assert request.gate == GateKind.CANARY_MARGINAL
        assert request.is_pending
        assert "judgment_requested" in sink.events()

    def test_reject_terminates_with_weights_unchanged(self, orchestrator, marginal, infra):
        orchestrator.run(marginal.execution_id)
        before = infra.traffic_weights("svc")

        orchestrator.decide(marginal.execution_id, "alice", "reject")
        done = orchestrator.store.get_execution(marginal.execution_id)
        assert done.status == ExecutionStatus.TERMINATED
        assert infra.traffic_weights("svc") == before == {BLUE: 100}
        assert orchestrator.store.active_group("svc").group_id == BLUE
        assert _stage(orchestrator, marginal, "canary").error_kind == "judgment-rejected"
        assert _stage(orchestrator, marginal, "cutover").status == StageStatus.SKIPPED

    def test_approve_continues_to_cutover(self, orchestrator, marginal, infra):
        orchestrator.run(marginal.execution_id)
        orchestrator.decide(marginal.execution_id, "alice", "approve")
        done = orchestrator.store.get_execution(marginal.execution_id)
        assert done.status == ExecutionStatus.SUCCEEDED
        assert infra.traffic_weights("svc") == {GREEN: 100}

    def test_marginal_without_judgment_fails(self, orchestrator, launch, metrics, canary_config):
        _metrics(metrics, canary_errors=0.0118)
        execution = launch(
            CANARY_DEPLOY,
            {"type": "canary_analysis", "id": "canary", "canary": "candidate",
             "config": canary_config},
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.FAILED
        assert _stage(orchestrator, execution, "canary").error_kind == "canary-marginal"


class TestCanaryVerdicts:
    def test_failing_canary_is_collapsed(self, orchestrator, launch, metrics, canary_config, infra):
        _metrics(metrics, canary_errors=0.030)
        execution = launch(
            CANARY_DEPLOY,
            {"type": "canary_analysis", "id": "canary", "canary": "candidate",
             "config": canary_config},
            CUTOVER,
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.FAILED
        assert _stage(orchestrator, execution, "canary").error_kind == "canary-fail"
        assert orchestrator.store.get_group("svc", GREEN).role == ServerGroupRole.DISABLED
        assert infra.replicas[GREEN] == 0
        assert infra.traffic_weights("svc") == {BLUE: 100}

    def test_missing_canary_metrics_is_insufficient_data(
        self, orchestrator, launch, metrics, canary_config
    ):
        metrics.set_series("errors", BLUE, 0.010)
        metrics.set_series("latency", BLUE, 200.0)
        execution = launch(
            CANARY_DEPLOY,
            {"type": "canary_analysis", "id": "canary", "canary": "candidate",
             "config": canary_config},
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.FAILED
        assert _stage(orchestrator, execution, "canary").error_kind == "insufficient-data"

    def test_canary_ramp(self, orchestrator, launch, metrics, canary_config, infra):
        _metrics(metrics)
        execution = launch(
            CANARY_DEPLOY,
            {**CUTOVER, "strategy": "canary_ramp", "steps": [10, 50, 100],
             "analysis": canary_config},
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.SUCCEEDED
        requested = [w for service, w in infra.weight_requests if service == "svc"]
        assert {BLUE: 90, GREEN: 10} in requested
        assert {BLUE: 50, GREEN: 50} in requested
        assert infra.traffic_weights("svc") == {GREEN: 100}
        results = [
            r for r in orchestrator.ledger.get_stage_records(execution.execution_id, "cutover")
            if r.event == AuditEvent.CANARY_RESULT
        ]
        assert [r.payload["step"] for r in results] == [10, 50]

    def test_canary_ramp_gates_share_the_stage_timeout(
        self, orchestrator, launch, metrics, canary_config, infra
    ):
        _metrics(metrics)
        execution = launch(
            CANARY_DEPLOY,
            {**CUTOVER, "strategy": "canary_ramp", "steps": [5, 25, 100],
             "analysis": canary_config, "timeout_seconds": 60},
        )
        done = orchestrator.run(execution.execution_id)

        assert done.status == ExecutionStatus.FAILED
        stage = _stage(orchestrator, execution, "cutover")
        assert stage.status == StageStatus.TIMED_OUT
        assert stage.error_kind == "canary-timeout"
        requested = [w for service, w in infra.weight_requests if service == "svc"]
        assert {BLUE: 75, GREEN: 25} not in requested
        assert infra.traffic_weights("svc") == {BLUE: 100}
        assert orchestrator.store.active_group("svc").group_id == BLUE
        assert orchestrator.store.get_group("svc", GREEN).role == ServerGroupRole.DISABLED


# ---------------------------------------------------------------------------
# Scenario C: post-cutover failure rolls back
# ---------------------------------------------------------------------------


class TestRollback:
    def test_failed_verification_after_cutover_rolls_back(self, orchestrator, launch, runner, infra):
        runner.outcomes["smoke"] = False
        execution = launch(DEPLOY, CUTOVER, SMOKE)
        done = orchestrator.run(execution.execution_id)

        assert done.status == ExecutionStatus.FAILED
        assert "verification-failure" in done.failure_reason
        assert orchestrator.store.role_map("svc") == {BLUE: "active", GREEN: "disabled"}
        assert infra.traffic_weights("svc") == {BLUE: 100}
        events = _events(orchestrator, execution)
        assert AuditEvent.ROLLBACK_STARTED in events
        assert AuditEvent.ROLLBACK_COMPLETED in events

    def test_continue_policy_does_not_roll_back(self, orchestrator, launch, runner, infra):
        runner.outcomes["smoke"] = False
        execution = launch(DEPLOY, CUTOVER, {**SMOKE, "on_failure": "continue"})
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.SUCCEEDED
        assert infra.traffic_weights("svc") == {GREEN: 100}

    def test_partial_cutover_restored_and_failed(self, orchestrator, launch, infra):
        infra.weight_faults = ["partial"]
        execution = launch(DEPLOY, CUTOVER)
        done = orchestrator.run(execution.execution_id)
        assert done.status == ExecutionStatus.FAILED
        assert _stage(orchestrator, execution, "cutover").error_kind == "cutover-failure"
        assert infra.traffic_weights("svc") == {BLUE: 100}
        assert orchestrator.store.active_group("svc").group_id == BLUE

    def test_rollback_failure_needs_manual_intervention(
        self, orchestrator, launch, runner, infra, sink
    ):
        runner.outcomes["smoke"] = False
        infra.weight_faults = ["ok", "reject"]
        execution = launch(DEPLOY, CUTOVER, SMOKE)
        done = orchestrator.run(execution.execution_id)

        assert done.status == ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION
        assert AuditEvent.ROLLBACK_FAILED in _events(orchestrator, execution)
        [page] = [n for n in sink.received if n.event == "rollback_failed"]
        assert page.urgent is True
        assert page.execution_id == execution.execution_id


# ---------------------------------------------------------------------------
# Overlapping executions of one service
# ---------------------------------------------------------------------------

NEXT = "svc-svc-8-candidate"
APPROVE = {
    "type": "manual_judgment",
    "id": "approve",
    "prompt": "Ship svc:8?",
    "authorized_actors": ["alice"],
}


class TestOverlappingExecutions:
    def test_rollback_returns_to_release_finished_before_start(
        self, orchestrator, launch, runner, infra
    ):
        first = launch(DEPLOY, CUTOVER)
        runner.outcomes["smoke"] = False
        second = launch(DEPLOY, CUTOVER, SMOKE, artifact="svc:8")

        assert orchestrator.run(first.execution_id).status == ExecutionStatus.SUCCEEDED
        done = orchestrator.run(second.execution_id)

        assert done.status == ExecutionStatus.FAILED
        assert done.context.rollback_target == GREEN
        assert orchestrator.store.active_group("svc").group_id == GREEN
        assert infra.traffic_weights("svc") == {GREEN: 100}
        assert orchestrator.store.role_map("svc") == {
            BLUE: "disabled", GREEN: "active", NEXT: "disabled",
        }

    def test_rollback_returns_to_release_finished_while_waiting(
        self, orchestrator, launch, runner, infra
    ):
        runner.outcomes["smoke"] = False
        second = launch(DEPLOY, APPROVE, CUTOVER, SMOKE, artifact="svc:8")
        paused = orchestrator.run(second.execution_id)
        assert paused.status == ExecutionStatus.AWAITING_JUDGMENT
        assert paused.context.rollback_target == BLUE

        first = launch(DEPLOY, CUTOVER)
        assert orchestrator.run(first.execution_id).status == ExecutionStatus.SUCCEEDED

        orchestrator.decide(second.execution_id, "alice", "approve")
        done = orchestrator.store.get_execution(second.execution_id)
        assert done.status == ExecutionStatus.FAILED
        assert done.context.rollback_target == GREEN
        assert done.context.baseline_weights == {GREEN: 100}
        assert orchestrator.store.active_group("svc").group_id == GREEN
        assert infra.traffic_weights("svc") == {GREEN: 100}
        [started] = [
            r for r in orchestrator.ledger.get_execution_records(second.execution_id)
            if r.event == AuditEvent.ROLLBACK_STARTED
        ]
        assert started.payload["rollback_target"] == GREEN

    def test_concurrent_cutovers_are_serialized(
        self, orchestrator, launch, metrics, canary_config, infra
    ):
        for group in (BLUE, GREEN, NEXT):
            metrics.set_series("errors", group, 0.010)
            metrics.set_series("latency", group, 200.0)
        ramp = {
            **CUTOVER,
            "strategy": "canary_ramp",
            "steps": [50, 100],
            "analysis": {**canary_config, "duration_seconds": 60},
        }
        executions = {
            GREEN: launch(CANARY_DEPLOY, ramp),
            NEXT: launch(CANARY_DEPLOY, ramp, artifact="svc:8"),
        }
        futures = [orchestrator.submit(e.execution_id) for e in executions.values()]
        assert [f.result(timeout=30).status for f in futures] == [
            ExecutionStatus.SUCCEEDED, ExecutionStatus.SUCCEEDED,
        ]

        owners = {e.execution_id: group for group, e in executions.items()}
        order = [
            owners[r.execution_id]
            for r in orchestrator.ledger.get_service_records("svc", AuditEvent.TRAFFIC_WEIGHTS)
            if r.execution_id in owners
        ]
        assert len(order) == 4
        first, last = order[0], order[-1]
        assert first != last
        assert order == [first, first, last, last]

        previous = _stage(orchestrator, executions[last], "cutover").result["previous_weights"]
        assert normalize_weights(previous) == {first: 100}
        assert orchestrator.store.get_execution(
            executions[last].execution_id
        ).context.rollback_target == first
        assert infra.traffic_weights("svc") == {last: 100}
        assert list(orchestrator.store.role_map("svc").values()).count("active") == 1
        assert orchestrator.store.active_group("svc").group_id == last


# ---------------------------------------------------------------------------
# Terminate and judgment timeout
# ---------------------------------------------------------------------------


class TestTerminate:
    def test_terminate_mid_wait_leaves_infrastructure(self, orchestrator, launch, clock, infra):
        execution = launch(DEPLOY, {"type": "wait", "id": "soak", "duration_seconds": 600})
        clock.call_at(120, lambda: orchestrator.terminate(execution.execution_id, "alice"))
        done = orchestrator.run(execution.execution_id)

        assert done.status == ExecutionStatus.TERMINATED
        assert _stage(orchestrator, execution, "soak").error_kind == "cancelled"
        assert GREEN in infra.groups
        assert infra.traffic_weights("svc") == {BLUE: 100}

    def test_terminate_after_cutover_rolls_back(self, orchestrator, launch, clock, infra):
        execution = launch(DEPLOY, CUTOVER, {"type": "wait", "id": "soak", "duration_seconds": 600})
        clock.call_at(120, lambda: orchestrator.terminate(execution.execution_id, "alice"))
        done = orchestrator.run(execution.execution_id)

        assert done.status == ExecutionStatus.TERMINATED
        assert infra.traffic_weights("svc") == {BLUE: 100}
        assert orchestrator.store.active_group("svc").group_id == BLUE

    def test_terminated_execution_cannot_be_terminated_again(self, orchestrator, launch):
        execution = launch(DEPLOY)
        orchestrator.terminate(execution.execution_id, "alice")
        with pytest.raises(InvalidTransitionError):
            orchestrator.terminate(execution.execution_id, "alice")

    def test_judgment_timeout_terminates(self, orchestrator, launch, clock):
        execution = launch(
            DEPLOY,
            {
                "type": "manual_judgment",
                "id": "approve",
                "prompt": "Ship?",
                "authorized_actors": ["alice"],
                "timeout_seconds": 3600,
            },
            CUTOVER,
        )
        assert orchestrator.run(execution.execution_id).status == ExecutionStatus.AWAITING_JUDGMENT
        clock.advance(3601)
        orchestrator.tick()

        done = orchestrator.store.get_execution(execution.execution_id)
        assert done.status == ExecutionStatus.TERMINATED
        assert _stage(orchestrator, execution, "approve").error_kind == "judgment-timeout"
        request = orchestrator.store.get_judgment(execution.execution_id, "approve")
        assert request.decision == JudgmentDecision.REJECTED


# ---------------------------------------------------------------------------
# Crash recovery and notification delivery
# ---------------------------------------------------------------------------


class _Crash(BaseException):
    """Simulated process death; not caught at the stage boundary."""


class TestRecovery:
    @pytest.fixture
    def restart(self, registry, infra, metrics, runner, clock, prod_config, sink):
        """Build a second orchestrator over the same database."""
        built: list[Orchestrator] = []

        def _factory() -> Orchestrator:
            orch = Orchestrator(
                registry=registry,
                infra=infra,
                metrics=metrics,
                runner=runner,
                clock=clock,
                prod_config=prod_config,
            )
            orch.dispatcher.register_sink(sink, channels=["default", "pager", "release"])
            built.append(orch)
            return orch

        yield _factory
        for orch in built:
            orch.shutdown()

    def test_pending_execution_recovered(self, launch, restart):
        execution = launch(DEPLOY, CUTOVER)
        [recovered] = restart().recover()
        assert recovered.execution_id == execution.execution_id
        assert recovered.status == ExecutionStatus.SUCCEEDED

    def test_wait_resumes_from_checkpoint(self, orchestrator, launch, restart, clock):
        execution = launch(DEPLOY, {"type": "wait", "id": "soak", "duration_seconds": 600})

        def crash() -> None:
            raise _Crash()

        clock.call_at(60, crash)
        with pytest.raises(_Crash):
            orchestrator.run(execution.execution_id)
        assert _stage(orchestrator, execution, "soak").status == StageStatus.RUNNING

        [recovered] = restart().recover()
        assert recovered.status == ExecutionStatus.SUCCEEDED
        # The persisted resume instant had already passed; no second wait.
        assert clock.slept == 600

    def test_decided_judgment_resumed_after_restart(self, orchestrator, launch, restart):
        execution = launch(
            DEPLOY,
            {"type": "manual_judgment", "id": "approve", "prompt": "Ship?",
             "authorized_actors": ["alice"]},
            CUTOVER,
        )
        orchestrator.run(execution.execution_id)
        orchestrator.decide(execution.execution_id, "alice", "approve", resume=False)

        [recovered] = restart().recover()
        assert recovered.status == ExecutionStatus.SUCCEEDED

    def test_outbox_retries_failed_delivery(self, orchestrator, launch, sink):
        sink.fail = True
        execution = launch(DEPLOY)
        orchestrator.run(execution.execution_id)
        pending = orchestrator.store.pending_notifications()
        assert [n.event for _, _, n in pending] == ["execution_succeeded"]

        sink.fail = False
        orchestrator.tick()
        assert orchestrator.store.pending_notifications() == []
        assert sink.events() == ["execution_succeeded"]


# ---------------------------------------------------------------------------
# Global invariants over the ledger history
# ---------------------------------------------------------------------------


class TestInvariants:
    def test_at_most_one_active_group_in_every_recorded_role_map(
        self, orchestrator, launch, runner, infra
    ):
        first = launch(DEPLOY, CUTOVER)
        orchestrator.run(first.execution_id)
        runner.outcomes["smoke"] = False
        second = launch(DEPLOY, CUTOVER, SMOKE, artifact="svc:8")
        orchestrator.run(second.execution_id)

        role_maps = [
            record.payload["roles"]
            for execution_id in orchestrator.ledger.get_all_execution_ids()
            for record in orchestrator.ledger.get_execution_records(execution_id)
            if record.event == AuditEvent.SERVER_GROUP_ROLES
        ]
        assert role_maps
        for roles in role_maps:
            assert list(roles.values()).count("active") <= 1
        assert orchestrator.store.active_group("svc").group_id == GREEN

    def test_artifact_instantiated_once(self, orchestrator, launch):
        first = launch(DEPLOY)
        again = launch(DEPLOY)
        assert again.execution_id == first.execution_id
        assert len(orchestrator.store.list_executions("svc")) == 1
