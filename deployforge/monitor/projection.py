"""ExecutionProjection — pure read-only view over the Audit Ledger.

The monitor is a PROJECTION of the Audit Ledger.  It does not compute
truth — it displays it.  Every call re-reads from the ledger.  The
ExecutionProjection class never maintains its own state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from deployforge.core.audit_ledger import AuditLedger, LedgerIntegrityError
from deployforge.models.execution import ExecutionStatus, StageStatus
from deployforge.models.ledger import AuditEvent, AuditRecord

logger = logging.getLogger(__name__)


class StageView(BaseModel):
    """Point-in-time status of a single stage.

    Derived entirely from ledger records — never stored independently.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    stage_type: str = ""
    status: StageStatus = StageStatus.PENDING
    entered_at: datetime | None = None
    error_kind: str = ""
    error: str = ""
    resumed: int = 0


class ExecutionSnapshot(BaseModel):
    """A frozen, point-in-time snapshot of one execution.

    Every field is derived by re-reading the ledger.  This model is never
    persisted — it is computed fresh on every ``snapshot()`` call.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str
    service: str = ""
    artifact_id: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    failure_reason: str = ""
    stages: list[StageView] = []
    weights: dict[str, int] = {}
    roles: dict[str, str] = {}
    canary_score: float | None = None
    canary_verdict: str = ""
    pending_judgment: str = ""
    rollbacks: list[str] = []
    record_count: int = 0
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        """Number of stages that finished successfully (or were skipped)."""
        return sum(
            1
            for s in self.stages
            if s.status in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)
        )

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def failed_stages(self) -> list[StageView]:
        return [
            s for s in self.stages
            if s.status in (StageStatus.FAILED, StageStatus.TIMED_OUT)
        ]

    @property
    def running_stages(self) -> list[StageView]:
        return [s for s in self.stages if s.status == StageStatus.RUNNING]


class ExecutionProjection:
    """Pure read-only projection over the AuditLedger.

    This class NEVER stores state.  Every method re-reads the ledger to
    compute a fresh view.

    Parameters
    ----------
    ledger:
        The AuditLedger to project from.
    """

    def __init__(self, ledger: AuditLedger) -> None:
        self._ledger = ledger

    def snapshot(
        self, execution_id: str, stage_order: list[str] | None = None
    ) -> ExecutionSnapshot:
        """Produce a point-in-time snapshot of an execution.

        Parameters
        ----------
        execution_id:
            The execution to snapshot.
        stage_order:
            Stage ids in pipeline order.  Stages missing from the ledger are
            shown as PENDING; without it, stages appear in the order the
            ledger first mentions them.

        Returns
        -------
        ExecutionSnapshot
            A frozen snapshot of the current execution state.
        """
        records = self._ledger.get_execution_records(execution_id)
        stage_states = self._compute_stage_states(records)
        order = list(stage_order or [])
        order += [sid for sid in stage_states if sid not in order]

        stages = [
            StageView(stage_id=sid, **stage_states.get(sid, {}))
            for sid in order
        ]

        status = ExecutionStatus.PENDING
        failure_reason = ""
        weights: dict[str, int] = {}
        roles: dict[str, str] = {}
        canary_score: float | None = None
        canary_verdict = ""
        pending_judgment = ""
        rollbacks: list[str] = []

        for record in records:
            payload = record.payload
            if record.event == AuditEvent.EXECUTION_STATUS:
                status = ExecutionStatus(payload["to"])
                failure_reason = payload.get("reason", "") or failure_reason
            elif record.event == AuditEvent.EXECUTION_CREATED:
                weights = dict(payload.get("baseline_weights") or {})
            elif record.event == AuditEvent.TRAFFIC_WEIGHTS and payload.get("observed") is not None:
                weights = dict(payload["observed"])
            elif record.event == AuditEvent.SERVER_GROUP_ROLES:
                roles = dict(payload.get("roles", {}))
            elif record.event == AuditEvent.CANARY_RESULT:
                canary_score = payload.get("aggregate_score")
                canary_verdict = payload.get("verdict", "")
            elif record.event == AuditEvent.JUDGMENT_REQUESTED:
                pending_judgment = payload.get("prompt", "") or record.stage_id
            elif record.event == AuditEvent.JUDGMENT_DECIDED:
                pending_judgment = ""
            elif record.event in (
                AuditEvent.ROLLBACK_COMPLETED,
                AuditEvent.ROLLBACK_FAILED,
            ):
                rollbacks.append(record.event.value)

        return ExecutionSnapshot(
            execution_id=execution_id,
            service=records[0].service if records else "",
            artifact_id=records[0].artifact_id if records else "",
            status=status,
            failure_reason=failure_reason,
            stages=stages,
            weights=weights,
            roles=roles,
            canary_score=canary_score,
            canary_verdict=canary_verdict,
            pending_judgment=pending_judgment,
            rollbacks=rollbacks,
            record_count=len(records),
            chain_valid=self._check_chain_valid(execution_id),
            last_updated=records[-1].timestamp_utc if records else datetime.now(timezone.utc),
        )

    def _compute_stage_states(
        self, records: list[AuditRecord]
    ) -> dict[str, dict[str, Any]]:
        """Replay stage records; returns stage_id -> StageView fields."""
        result: dict[str, dict[str, Any]] = {}
        for record in records:
            if not record.stage_id:
                continue
            if record.event == AuditEvent.STAGE_STATUS:
                info = result.setdefault(record.stage_id, {"resumed": 0})
                info["stage_type"] = record.payload.get("stage_type", "")
                info["status"] = StageStatus(record.payload["to"])
                info["entered_at"] = record.timestamp_utc
                info["error_kind"] = record.payload.get("error_kind", "")
                info["error"] = record.payload.get("error", "")
            elif record.event == AuditEvent.STAGE_RESUMED:
                info = result.setdefault(record.stage_id, {"resumed": 0})
                info["resumed"] += 1
        return result

    def _check_chain_valid(self, execution_id: str) -> bool:
        """Check hash chain integrity without raising."""
        try:
            return self._ledger.verify_chain(execution_id)
        except LedgerIntegrityError as exc:
            logger.error("Ledger chain for %s is broken: %s", execution_id, exc)
            return False
