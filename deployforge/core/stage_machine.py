"""Execution and stage state machine.

Enforces:
- Valid transitions only (VALID_EXECUTION_TRANSITIONS, VALID_STAGE_TRANSITIONS)
- Every transition recorded in the Audit Ledger in the same SQLite
  transaction as the state-store update
- Current state is re-read inside the write transaction, so concurrent
  writers (the executor and an operator terminate) cannot clobber each
  other: the loser gets ``InvalidTransitionError``
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from deployforge.core.audit_ledger import AuditLedger
from deployforge.core.errors import InvalidTransitionError
from deployforge.core.state_store import ExecutionStore
from deployforge.models.execution import (
    VALID_EXECUTION_TRANSITIONS,
    VALID_STAGE_TRANSITIONS,
    ExecutionContext,
    ExecutionStatus,
    PipelineExecution,
    StageExecution,
    StageStatus,
)
from deployforge.models.ledger import AuditEvent, AuditRecord
from deployforge.models.pipeline import PipelineDefinition

# Called inside the transition's transaction with the updated execution.
TransitionHook = Callable[[sqlite3.Connection, PipelineExecution], None]


class StageMachine:
    """Writes every execution and stage state change.

    Parameters
    ----------
    store:
        The state store holding executions and stage executions.
    ledger:
        The Audit Ledger to record transitions into.  Must share the
        store's database file.
    """

    def __init__(self, store: ExecutionStore, ledger: AuditLedger) -> None:
        self._store = store
        self._ledger = ledger

    @property
    def store(self) -> ExecutionStore:
        return self._store

    @property
    def ledger(self) -> AuditLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def create_execution(
        self, execution: PipelineExecution, definition: PipelineDefinition
    ) -> PipelineExecution:
        """Persist a new PENDING execution and its stage rows.

        The ``execution_created`` record is appended first; it raises
        ``DuplicateExecutionError`` if the artifact already has an execution,
        which rolls the whole transaction back.
        """
        with self._store.transaction() as tx:
            self._ledger.append(
                AuditRecord(
                    execution_id=execution.execution_id,
                    event=AuditEvent.EXECUTION_CREATED,
                    actor=execution.actor,
                    payload={
                        "definition_version": definition.version,
                        "source_ref": execution.artifact.source_ref,
                        "rollback_target": execution.context.rollback_target,
                        "baseline_weights": execution.context.baseline_weights,
                    },
                    service=execution.service,
                    artifact_id=execution.artifact.artifact_id,
                ),
                conn=tx,
            )
            self._store.create_execution(execution, definition, conn=tx)
            for spec in definition.iter_stages():
                self._store.save_stage(
                    StageExecution(
                        execution_id=execution.execution_id,
                        stage_id=spec.id,
                        stage_type=spec.type,
                    ),
                    conn=tx,
                )
        return execution

    def transition_execution(
        self,
        execution_id: str,
        target: ExecutionStatus,
        *,
        actor: str = "system",
        reason: str = "",
        hook: TransitionHook | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> PipelineExecution:
        """Move an execution to *target*, recording it in the ledger.

        *hook* runs inside the same transaction (finalizers use it to
        enqueue notifications atomically with the terminal transition).
        """
        with self._store.transaction(conn) as tx:
            current = self._store.get_execution(execution_id, conn=tx)
            allowed = VALID_EXECUTION_TRANSITIONS.get(current.status, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {execution_id} from {current.status.value} "
                    f"to {target.value}. Allowed: {sorted(s.value for s in allowed)}"
                )
            updates: dict[str, Any] = {"status": target}
            if reason:
                updates["failure_reason"] = reason
            updated = current.model_copy(update=updates)
            if updated.is_terminal:
                updated = updated.model_copy(
                    update={"ended_at": datetime.now(timezone.utc)}
                )
            self._store.save_execution(updated, conn=tx)
            self._ledger.append(
                self._record(
                    updated,
                    AuditEvent.EXECUTION_STATUS,
                    actor=actor,
                    payload={
                        "from": current.status.value,
                        "to": target.value,
                        "reason": reason,
                    },
                ),
                conn=tx,
            )
            if hook is not None:
                hook(tx, updated)
        return updated

    def update_execution(
        self,
        execution_id: str,
        *,
        context: Callable[[ExecutionContext], ExecutionContext] | None = None,
        current_index: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> PipelineExecution:
        """Apply a non-status change to the freshest copy of an execution.

        *context* is a function of the current context, so concurrent
        parallel-branch updates compose instead of overwriting each other.
        """
        with self._store.transaction(conn) as tx:
            current = self._store.get_execution(execution_id, conn=tx)
            updates: dict[str, Any] = {}
            if context is not None:
                updates["context"] = context(current.context)
            if current_index is not None:
                updates["current_index"] = current_index
            updated = current.model_copy(update=updates)
            self._store.save_execution(updated, conn=tx)
        return updated

    def request_cancel(self, execution_id: str, actor: str) -> PipelineExecution:
        with self._store.transaction() as tx:
            current = self._store.get_execution(execution_id, conn=tx)
            updated = current.model_copy(update={"cancel_requested": True})
            self._store.save_execution(updated, conn=tx)
            self._ledger.append(
                self._record(updated, AuditEvent.CANCEL_REQUESTED, actor=actor),
                conn=tx,
            )
        return updated

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def transition_stage(
        self,
        execution_id: str,
        stage_id: str,
        target: StageStatus,
        *,
        actor: str = "system",
        result: dict[str, Any] | None = None,
        error_kind: str = "",
        error: str = "",
        conn: sqlite3.Connection | None = None,
    ) -> StageExecution:
        """Move a stage to *target*, recording it in the ledger."""
        with self._store.transaction(conn) as tx:
            current = self._store.get_stage(execution_id, stage_id, conn=tx)
            if current is None:
                raise InvalidTransitionError(f"{execution_id} has no stage {stage_id!r}")
            allowed = VALID_STAGE_TRANSITIONS.get(current.status, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {stage_id} from {current.status.value} "
                    f"to {target.value}. Allowed: {sorted(s.value for s in allowed)}"
                )
            now = datetime.now(timezone.utc)
            updates: dict[str, Any] = {"status": target}
            if target == StageStatus.RUNNING:
                updates["started_at"] = now
                updates["attempts"] = current.attempts + 1
            else:
                updates["finished_at"] = now
            if result is not None:
                updates["result"] = result
            if error_kind or error:
                updates["error_kind"] = error_kind
                updates["error"] = error
            updated = current.model_copy(update=updates)
            self._store.save_stage(updated, conn=tx)

            execution = self._store.get_execution(execution_id, conn=tx)
            self._ledger.append(
                self._record(
                    execution,
                    AuditEvent.STAGE_STATUS,
                    actor=actor,
                    stage_id=stage_id,
                    payload={
                        "stage_type": current.stage_type,
                        "from": current.status.value,
                        "to": target.value,
                        "error_kind": error_kind,
                        "error": error,
                        "result": result or {},
                    },
                ),
                conn=tx,
            )
        return updated

    def save_checkpoint(
        self, execution_id: str, stage_id: str, checkpoint: dict[str, Any]
    ) -> StageExecution:
        """Persist resumable progress of a RUNNING stage (not audited)."""
        with self._store.transaction() as tx:
            current = self._store.get_stage(execution_id, stage_id, conn=tx)
            if current is None:
                raise InvalidTransitionError(f"{execution_id} has no stage {stage_id!r}")
            updated = current.model_copy(update={"checkpoint": checkpoint})
            self._store.save_stage(updated, conn=tx)
        return updated

    def record_event(
        self,
        execution: PipelineExecution,
        event: AuditEvent,
        *,
        stage_id: str = "",
        actor: str = "system",
        payload: dict[str, Any] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> AuditRecord:
        return self._ledger.append(
            self._record(execution, event, actor=actor, stage_id=stage_id, payload=payload),
            conn=conn,
        )

    @staticmethod
    def _record(
        execution: PipelineExecution,
        event: AuditEvent,
        *,
        actor: str = "system",
        stage_id: str = "",
        payload: dict[str, Any] | None = None,
    ) -> AuditRecord:
        return AuditRecord(
            execution_id=execution.execution_id,
            stage_id=stage_id,
            event=event,
            actor=actor,
            payload=payload or {},
            service=execution.service,
            artifact_id=execution.artifact.artifact_id,
        )
