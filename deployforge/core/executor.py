"""Stage Executor — drives one execution through its pipeline definition.

The execution FSM is::

    PENDING -> RUNNING -> SUCCEEDED | FAILED | TERMINATED
                  |  ^
                  v  |  (explicit decision or expiry only)
            AWAITING_JUDGMENT

plus ``TERMINATED_NEEDS_MANUAL_INTERVENTION`` when a rollback cannot be
applied.  All writes go through ``StageMachine``; the executor itself only
decides what happens next:

- a succeeded stage, or a failed stage under CONTINUE, advances the index
- a failed stage under ABORT, or any escalating failure, fails the
  execution; if a cutover was reached the execution is rolled back first
- a judgment suspends the execution; ``resume_after_judgment`` continues
  it (approve) or terminates it (reject / timeout)
- ``terminate`` cancels in-flight suspensions and rolls back if a cutover
  was reached

Every terminal transition enqueues the pipeline's finalizers into the
notification outbox in the same transaction; the outbox is drained right
after and again on recovery, so delivery is at-least-once.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from deployforge.adapters import Clock
from deployforge.core.cutover import TrafficController
from deployforge.core.errors import (
    CanaryFail,
    CanaryInsufficientData,
    CutoverBusy,
    CutoverFailure,
    InvalidTransitionError,
    JudgmentRejected,
    JudgmentTimeout,
    RollbackFailure,
    StageCancelled,
)
from deployforge.core.stage_machine import StageMachine
from deployforge.models.execution import (
    TERMINAL_STAGE_STATUSES,
    ExecutionContext,
    ExecutionStatus,
    PipelineExecution,
    StageStatus,
)
from deployforge.models.judgment import JudgmentDecision
from deployforge.models.ledger import AuditEvent
from deployforge.models.notifications import Notification, NotificationSeverity
from deployforge.models.pipeline import (
    OnFailure,
    ParallelBranch,
    PipelineDefinition,
    StageType,
)
from deployforge.routing.dispatcher import NotificationDispatcher, SinkDispatchError
from deployforge.stages.base import BaseStage, StageOutcome, StageResult, StageRun

logger = logging.getLogger(__name__)

# decided_by value recorded when a judgment expires unanswered
TIMEOUT_ACTOR = "system:timeout"

_SEVERITY = {
    ExecutionStatus.SUCCEEDED: NotificationSeverity.INFO,
    ExecutionStatus.FAILED: NotificationSeverity.WARNING,
    ExecutionStatus.TERMINATED: NotificationSeverity.WARNING,
    ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION: NotificationSeverity.CRITICAL,
}


class StageExecutor:
    """Runs executions stage by stage.

    Parameters
    ----------
    machine:
        Writes every state change (and its audit record).
    controller:
        Traffic controller used for rollbacks.
    stages:
        Stage implementation per stage type.
    clock:
        Time source shared with the stages.
    dispatcher:
        Notification routing for the outbox; None leaves notifications
        queued.
    urgent_channel:
        Channel for the rollback-failure alert (urgent notifications reach
        every sink regardless).
    max_parallel:
        Upper bound on threads used by one parallel branch.
    """

    def __init__(
        self,
        machine: StageMachine,
        controller: TrafficController,
        stages: dict[StageType, BaseStage],
        clock: Clock,
        *,
        dispatcher: NotificationDispatcher | None = None,
        urgent_channel: str = "",
        max_parallel: int = 4,
    ) -> None:
        self._machine = machine
        self._store = machine.store
        self._ledger = machine.ledger
        self._controller = controller
        self._stages = stages
        self._clock = clock
        self._dispatcher = dispatcher
        self._urgent_channel = urgent_channel
        self._max_parallel = max_parallel
        self._claims: set[str] = set()
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Claims: one driver per execution in this process
    # ------------------------------------------------------------------

    def _claim(self, execution_id: str) -> bool:
        with self._lock:
            if execution_id in self._claims:
                return False
            self._claims.add(execution_id)
            return True

    def _release(self, execution_id: str) -> None:
        with self._lock:
            self._claims.discard(execution_id)

    def cancel_event(self, execution_id: str) -> threading.Event:
        with self._lock:
            return self._cancel_events.setdefault(execution_id, threading.Event())

    def _claimed(
        self, execution_id: str, body: Callable[[], PipelineExecution]
    ) -> PipelineExecution:
        """Run *body* as the execution's only driver, then honor a late terminate."""
        if not self._claim(execution_id):
            logger.debug("Execution %s is already being driven", execution_id)
            return self._store.get_execution(execution_id)
        try:
            body()
        finally:
            self._release(execution_id)
        execution = self._store.get_execution(execution_id)
        if execution.cancel_requested and not execution.is_terminal:
            return self.finish_termination(execution_id)
        return execution

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def run(self, execution_id: str) -> PipelineExecution:
        """Drive an execution until it is terminal or awaiting judgment."""
        return self._claimed(execution_id, lambda: self._drive(execution_id))

    def resume_after_judgment(self, execution_id: str) -> PipelineExecution:
        """Act on a recorded judgment decision.  Idempotent."""
        return self._claimed(execution_id, lambda: self._resume(execution_id))

    def terminate(self, execution_id: str, actor: str) -> PipelineExecution:
        """Stop an execution.

        In-flight waits, verification jobs and canary analyses are
        cancelled.  Infrastructure is left unchanged unless a cutover was
        reached, in which case the execution is rolled back.
        """
        execution = self._store.get_execution(execution_id)
        if execution.is_terminal:
            raise InvalidTransitionError(
                f"{execution_id} is already {execution.status.value}"
            )
        self._machine.request_cancel(execution_id, actor)
        self.cancel_event(execution_id).set()
        logger.warning("Terminate requested for %s by %s", execution_id, actor)
        return self.finish_termination(execution_id, actor=actor)

    def finish_termination(self, execution_id: str, actor: str = "system") -> PipelineExecution:
        """Complete a requested terminate unless a driver is still running."""
        if not self._claim(execution_id):
            return self._store.get_execution(execution_id)
        try:
            execution = self._store.get_execution(execution_id)
            if execution.is_terminal or not execution.cancel_requested:
                return execution
            definition = self._store.get_execution_definition(execution_id)
            return self._terminate_now(execution_id, definition, actor)
        finally:
            self._release(execution_id)

    def recoverable(self) -> list[PipelineExecution]:
        """Executions a restarted worker must pick up again."""
        return self._store.list_executions(
            status=[
                ExecutionStatus.PENDING,
                ExecutionStatus.RUNNING,
                ExecutionStatus.AWAITING_JUDGMENT,
            ]
        )

    def recover_one(self, execution_id: str) -> PipelineExecution:
        execution = self._store.get_execution(execution_id)
        if execution.cancel_requested:
            return self.finish_termination(execution_id)
        if execution.status == ExecutionStatus.AWAITING_JUDGMENT:
            return self.resume_after_judgment(execution_id)
        logger.info("Recovering execution %s (%s)", execution_id, execution.status.value)
        return self.run(execution_id)

    def notify(
        self,
        execution: PipelineExecution,
        channel: str,
        *,
        event: str,
        severity: NotificationSeverity,
        message: str,
        urgent: bool = False,
    ) -> None:
        """Queue a notification outside any transition and deliver it."""
        with self._store.transaction() as tx:
            self._enqueue(
                tx, execution, channel or self._urgent_channel,
                event=event, severity=severity, message=message, urgent=urgent,
            )
        self.drain_outbox()

    def drain_outbox(self) -> int:
        """Deliver queued notifications; return how many were delivered."""
        if self._dispatcher is None:
            return 0
        delivered = 0
        with self._drain_lock:
            for outbox_id, channel, notification in self._store.pending_notifications():
                try:
                    accepted = self._dispatcher.send(notification, channel)
                except SinkDispatchError as exc:
                    self._store.record_notification_failure(outbox_id, str(exc))
                    continue
                if accepted:
                    self._store.mark_notification_delivered(outbox_id)
                    delivered += 1
                else:
                    self._store.record_notification_failure(outbox_id, "no sink accepted")
        return delivered

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def _start(self, execution: PipelineExecution) -> PipelineExecution:
        """PENDING -> RUNNING, capturing the baseline in effect right now.

        The rollback target and baseline weights are recorded in the same
        transaction as the status change, so an execution that finished
        between instantiation and start is never rolled back over.
        """
        execution_id = execution.execution_id
        active_id, weights = self._controller.snapshot(execution.service)
        with self._store.transaction() as tx:
            self._machine.update_execution(
                execution_id,
                context=lambda ctx: ctx.with_baseline(active_id, weights),
                conn=tx,
            )
            execution = self._machine.transition_execution(
                execution_id, ExecutionStatus.RUNNING, conn=tx
            )
        logger.info(
            "Execution %s started: %s %s (rollback target=%s)",
            execution_id, execution.service, execution.artifact.artifact_id, active_id,
        )
        return execution

    def _drive(self, execution_id: str) -> PipelineExecution:
        execution = self._store.get_execution(execution_id)
        if execution.is_terminal or execution.status == ExecutionStatus.AWAITING_JUDGMENT:
            return execution
        definition = self._store.get_execution_definition(execution_id)
        if execution.status == ExecutionStatus.PENDING and not execution.cancel_requested:
            execution = self._start(execution)

        while True:
            execution = self._store.get_execution(execution_id)
            if execution.cancel_requested:
                return self._terminate_now(execution_id, definition, "system")
            index = execution.current_index
            if index >= len(definition.stages):
                return self._finish(execution_id, definition, ExecutionStatus.SUCCEEDED)

            node = definition.stages[index]
            if isinstance(node, ParallelBranch):
                stage_id, result, fatal = self._run_branch(execution_id, node)
            else:
                result = self._run_stage(execution_id, node)
                stage_id = node.id
                fatal = self._is_fatal(result, node.on_failure)

            if result.outcome == StageOutcome.SUSPENDED:
                return self._suspend(execution_id, definition, stage_id, result)
            if self._store.get_execution(execution_id).cancel_requested:
                return self._terminate_now(execution_id, definition, "system")
            if result.error_kind == RollbackFailure.kind:
                return self._needs_intervention(
                    execution_id, definition, f"{stage_id}: {result.error}"
                )
            if fatal:
                return self._fail(execution_id, definition, stage_id, result)
            if not result.ok:
                logger.warning(
                    "Stage %s of %s failed (%s); continuing",
                    stage_id, execution_id, result.error_kind,
                )
            self._machine.update_execution(execution_id, current_index=index + 1)

    @staticmethod
    def _is_fatal(result: StageResult, policy: OnFailure) -> bool:
        if result.ok or result.outcome == StageOutcome.SUSPENDED:
            return False
        return result.always_escalates or policy == OnFailure.ABORT

    def _run_branch(
        self, execution_id: str, branch: ParallelBranch
    ) -> tuple[str, StageResult, bool]:
        """Run branch members concurrently and join them."""
        workers = max(1, min(len(branch.stages), self._max_parallel))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"deployforge-{branch.id}"
        ) as pool:
            futures = [
                (spec, pool.submit(self._run_stage, execution_id, spec))
                for spec in branch.stages
            ]
            results = [(spec, future.result()) for spec, future in futures]

        for spec, result in results:
            if result.error_kind == StageCancelled.kind:
                return spec.id, result, True
        for spec, result in results:
            if self._is_fatal(result, spec.on_failure):
                return spec.id, result, True
        return (
            branch.id,
            StageResult(
                outcome=StageOutcome.SUCCEEDED,
                result={spec.id: result.outcome.value for spec, result in results},
            ),
            False,
        )

    def _run_stage(self, execution_id: str, spec: Any) -> StageResult:
        stage = self._store.get_stage(execution_id, spec.id)
        if stage is None:
            raise InvalidTransitionError(f"{execution_id} has no stage {spec.id!r}")

        if stage.status in TERMINAL_STAGE_STATUSES:
            # Finished before a restart; replay its outcome.
            outcome = (
                StageOutcome.SUCCEEDED
                if stage.status in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)
                else StageOutcome(stage.status.value)
            )
            return StageResult(
                outcome=outcome,
                result=stage.result,
                error_kind=stage.error_kind,
                error=stage.error,
                always_escalates=stage.error_kind in _ESCALATING_KINDS,
            )

        execution = self._store.get_execution(execution_id)
        if stage.status == StageStatus.PENDING:
            self._machine.transition_stage(execution_id, spec.id, StageStatus.RUNNING)
        else:
            self._machine.record_event(
                execution,
                AuditEvent.STAGE_RESUMED,
                stage_id=spec.id,
                payload={"checkpoint": stage.checkpoint, "attempts": stage.attempts},
            )
            if spec.stage_type == StageType.CUTOVER:
                result = StageResult(
                    outcome=StageOutcome.FAILED,
                    error_kind=CutoverFailure.kind,
                    error="cutover interrupted by a restart; state is unverified",
                    always_escalates=True,
                )
                self._record_stage_result(execution_id, spec.id, result)
                return result

        run = StageRun(
            context=execution.context,
            stage_id=spec.id,
            timeout_seconds=spec.timeout_seconds,
            checkpoint=stage.checkpoint,
            clock=self._clock,
            cancel_event=self.cancel_event(execution_id),
            save_checkpoint=lambda cp: self._machine.save_checkpoint(execution_id, spec.id, cp),
            update_context=lambda change: self._machine.update_execution(
                execution_id, context=change
            ).context,
        )
        result = self._stages[spec.stage_type].run_stage(spec, run)
        if result.outcome != StageOutcome.SUSPENDED:
            self._record_stage_result(execution_id, spec.id, result)
        return result

    def _record_stage_result(self, execution_id: str, stage_id: str, result: StageResult) -> None:
        self._machine.transition_stage(
            execution_id,
            stage_id,
            result.status,
            result=result.result,
            error_kind=result.error_kind,
            error=result.error,
        )

    # ------------------------------------------------------------------
    # Suspension and resume
    # ------------------------------------------------------------------

    def _suspend(
        self,
        execution_id: str,
        definition: PipelineDefinition,
        stage_id: str,
        result: StageResult,
    ) -> PipelineExecution:
        request = result.judgment
        if request is None:
            raise InvalidTransitionError(
                f"stage {stage_id} of {execution_id} suspended without a judgment request"
            )

        def park(tx: sqlite3.Connection, execution: PipelineExecution) -> None:
            self._store.save_judgment(request, conn=tx)
            self._machine.record_event(
                execution,
                AuditEvent.JUDGMENT_REQUESTED,
                stage_id=stage_id,
                payload={
                    "gate": request.gate.value,
                    "prompt": request.prompt,
                    "authorized_actors": request.authorized_actors,
                    "expires_at": request.expires_at.isoformat() if request.expires_at else None,
                    "analysis": result.result,
                },
                conn=tx,
            )
            self._enqueue(
                tx,
                execution,
                definition.notify_channel,
                event="judgment_requested",
                severity=NotificationSeverity.WARNING,
                message=request.prompt,
            )

        execution = self._machine.transition_execution(
            execution_id,
            ExecutionStatus.AWAITING_JUDGMENT,
            reason=f"{stage_id}: awaiting {request.gate.value} judgment",
            hook=park,
        )
        logger.info("Execution %s awaiting judgment at %s", execution_id, stage_id)
        self.drain_outbox()
        return execution

    def _resume(self, execution_id: str) -> PipelineExecution:
        execution = self._store.get_execution(execution_id)
        request = self._store.latest_judgment(execution_id)
        if request is None or request.is_pending or request.resumed:
            return execution
        if execution.status != ExecutionStatus.AWAITING_JUDGMENT:
            self._store.mark_judgment_resumed(execution_id, request.stage_id)
            return execution

        definition = self._store.get_execution_definition(execution_id)
        decision = {
            "decision": request.decision.value,
            "decided_by": request.decided_by,
            "gate": request.gate.value,
        }

        if request.decision == JudgmentDecision.APPROVED:
            with self._store.transaction() as tx:
                self._machine.transition_stage(
                    execution_id, request.stage_id, StageStatus.SUCCEEDED,
                    actor=request.decided_by, result=decision, conn=tx,
                )
                self._store.mark_judgment_resumed(execution_id, request.stage_id, conn=tx)
                self._machine.transition_execution(
                    execution_id, ExecutionStatus.RUNNING,
                    actor=request.decided_by, conn=tx,
                )
                self._machine.update_execution(
                    execution_id, current_index=execution.current_index + 1, conn=tx
                )
            logger.info("Execution %s approved by %s", execution_id, request.decided_by)
            return self._drive(execution_id)

        error = JudgmentTimeout if request.decided_by == TIMEOUT_ACTOR else JudgmentRejected
        reason = f"{request.stage_id}: {error.kind} by {request.decided_by}"
        with self._store.transaction() as tx:
            self._machine.transition_stage(
                execution_id, request.stage_id, StageStatus.FAILED,
                actor=request.decided_by, result=decision,
                error_kind=error.kind, error=reason, conn=tx,
            )
            self._store.mark_judgment_resumed(execution_id, request.stage_id, conn=tx)
        logger.warning("Execution %s %s", execution_id, reason)
        self._skip_remaining(execution_id)
        if execution.context.cutover_reached:
            failure = self._rollback(execution.context, reason, request.decided_by)
            if failure:
                return self._needs_intervention(execution_id, definition, f"{reason}; {failure}")
        return self._finish(
            execution_id, definition, ExecutionStatus.TERMINATED,
            reason=reason, actor=request.decided_by,
        )

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------

    def _fail(
        self,
        execution_id: str,
        definition: PipelineDefinition,
        stage_id: str,
        result: StageResult,
    ) -> PipelineExecution:
        reason = f"{stage_id}: {result.error_kind}: {result.error}"
        execution = self._store.get_execution(execution_id)
        self._skip_remaining(execution_id)
        if execution.context.cutover_reached:
            failure = self._rollback(execution.context, reason, "system", stage_id)
            if failure:
                return self._needs_intervention(execution_id, definition, f"{reason}; {failure}")
        return self._finish(execution_id, definition, ExecutionStatus.FAILED, reason=reason)

    def _terminate_now(
        self, execution_id: str, definition: PipelineDefinition, actor: str
    ) -> PipelineExecution:
        execution = self._store.get_execution(execution_id)
        request = self._store.latest_judgment(execution_id)
        if request is not None and not request.resumed:
            self._store.mark_judgment_resumed(execution_id, request.stage_id)
        for stage in self._store.list_stages(execution_id):
            if stage.status == StageStatus.RUNNING:
                self._machine.transition_stage(
                    execution_id, stage.stage_id, StageStatus.FAILED,
                    actor=actor, error_kind=StageCancelled.kind,
                    error=f"terminated by {actor}",
                )
        self._skip_remaining(execution_id)
        reason = f"terminated by {actor}"
        if execution.context.cutover_reached:
            failure = self._rollback(execution.context, reason, actor)
            if failure:
                return self._needs_intervention(execution_id, definition, f"{reason}; {failure}")
        return self._finish(
            execution_id, definition, ExecutionStatus.TERMINATED, reason=reason, actor=actor
        )

    def _needs_intervention(
        self, execution_id: str, definition: PipelineDefinition, reason: str
    ) -> PipelineExecution:
        logger.critical("Execution %s needs manual intervention: %s", execution_id, reason)
        self._skip_remaining(execution_id)
        return self._finish(
            execution_id,
            definition,
            ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION,
            reason=reason,
        )

    def _rollback(
        self, ctx: ExecutionContext, reason: str, actor: str, stage_id: str = ""
    ) -> str:
        """Roll back; return an error description, or '' on success."""
        try:
            self._controller.rollback(ctx, actor=actor, reason=reason, stage_id=stage_id)
        except RollbackFailure as exc:
            return f"rollback failed: {exc}"
        return ""

    def _skip_remaining(self, execution_id: str) -> None:
        for stage in self._store.list_stages(execution_id):
            if stage.status == StageStatus.PENDING:
                self._machine.transition_stage(execution_id, stage.stage_id, StageStatus.SKIPPED)

    def _finish(
        self,
        execution_id: str,
        definition: PipelineDefinition,
        status: ExecutionStatus,
        *,
        reason: str = "",
        actor: str = "system",
    ) -> PipelineExecution:
        urgent = status == ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION

        def finalize(tx: sqlite3.Connection, execution: PipelineExecution) -> None:
            message = reason or f"execution {status.value}"
            if urgent:
                self._enqueue(
                    tx, execution, self._urgent_channel or definition.notify_channel,
                    event="rollback_failed", severity=NotificationSeverity.CRITICAL,
                    message=message, urgent=True,
                )
            for finalizer in definition.effective_finalizers:
                self._enqueue(
                    tx, execution, finalizer.channel,
                    event=f"execution_{status.value}", severity=_SEVERITY[status],
                    message=message,
                )

        try:
            execution = self._machine.transition_execution(
                execution_id, status, actor=actor, reason=reason, hook=finalize
            )
        except InvalidTransitionError:
            execution = self._store.get_execution(execution_id)
            if not execution.is_terminal:
                raise
            logger.info("Execution %s already %s", execution_id, execution.status.value)
            return execution

        with self._lock:
            self._cancel_events.pop(execution_id, None)
        logger.info("Execution %s finished: %s", execution_id, status.value)
        self.drain_outbox()
        return execution

    def _enqueue(
        self,
        tx: sqlite3.Connection,
        execution: PipelineExecution,
        channel: str,
        *,
        event: str,
        severity: NotificationSeverity,
        message: str,
        urgent: bool = False,
    ) -> None:
        self._store.enqueue_notification(
            Notification(
                event=event,
                severity=severity,
                execution_id=execution.execution_id,
                service=execution.service,
                artifact_id=execution.artifact.artifact_id,
                status=execution.status.value,
                message=message,
                audit_ref=self._ledger.audit_ref(execution.execution_id, conn=tx),
                urgent=urgent,
                timestamp_utc=self._clock.now(),
            ),
            channel,
            conn=tx,
        )


_ESCALATING_KINDS = frozenset(
    cls.kind
    for cls in (
        CanaryFail,
        CanaryInsufficientData,
        CutoverFailure,
        CutoverBusy,
        RollbackFailure,
        StageCancelled,
    )
)
