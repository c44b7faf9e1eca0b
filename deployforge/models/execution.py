"""Execution state models — pipeline executions, stage executions, context."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from deployforge.models.artifacts import Artifact


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_JUDGMENT = "awaiting_judgment"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TERMINATED = "terminated"
    TERMINATED_NEEDS_MANUAL_INTERVENTION = "terminated_needs_manual_intervention"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


TERMINAL_EXECUTION_STATUSES: frozenset[ExecutionStatus] = frozenset(
    {
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.TERMINATED,
        ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION,
    }
)

TERMINAL_STAGE_STATUSES: frozenset[StageStatus] = frozenset(
    {
        StageStatus.SUCCEEDED,
        StageStatus.FAILED,
        StageStatus.SKIPPED,
        StageStatus.TIMED_OUT,
    }
)

# Valid execution transitions, enforced by the StageMachine.
# Terminal statuses have no outgoing transitions.
VALID_EXECUTION_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.TERMINATED},
    ExecutionStatus.RUNNING: {
        ExecutionStatus.AWAITING_JUDGMENT,
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.TERMINATED,
        ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION,
    },
    ExecutionStatus.AWAITING_JUDGMENT: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.TERMINATED,
        ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION,
    },
    ExecutionStatus.SUCCEEDED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.TERMINATED: set(),
    ExecutionStatus.TERMINATED_NEEDS_MANUAL_INTERVENTION: set(),
}

VALID_STAGE_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {
        StageStatus.SUCCEEDED,
        StageStatus.FAILED,
        StageStatus.TIMED_OUT,
    },
    StageStatus.SUCCEEDED: set(),
    StageStatus.FAILED: set(),
    StageStatus.SKIPPED: set(),
    StageStatus.TIMED_OUT: set(),
}


class ExecutionContext(BaseModel):
    """Immutable values threaded through every stage invocation.

    Stages never look anything up from ambient state; everything they need
    about the execution is here.  Updates produce a new copy.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str
    service: str
    artifact: Artifact
    actor: str = "system"
    environment: str = "production"
    definition_version: str = "1"
    rollback_target: str | None = None  # group ACTIVE when the execution started
    baseline_weights: dict[str, int] = {}  # traffic map when the execution started
    server_groups: dict[str, str] = {}  # deploy stage id -> group id
    cutover_reached: bool = False

    def with_group(self, stage_id: str, group_id: str) -> ExecutionContext:
        groups = dict(self.server_groups)
        groups[stage_id] = group_id
        return self.model_copy(update={"server_groups": groups})

    def with_cutover_reached(self) -> ExecutionContext:
        return self.model_copy(update={"cutover_reached": True})

    def with_baseline(
        self, rollback_target: str | None, weights: dict[str, int]
    ) -> ExecutionContext:
        return self.model_copy(
            update={"rollback_target": rollback_target, "baseline_weights": dict(weights)}
        )

    @property
    def created_groups(self) -> list[str]:
        """Groups deployed by this execution, in deploy order."""
        return list(dict.fromkeys(self.server_groups.values()))


class StageExecution(BaseModel):
    """Status and result of one stage within one execution."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    stage_id: str
    stage_type: str
    status: StageStatus = StageStatus.PENDING
    result: dict[str, Any] = {}
    checkpoint: dict[str, Any] = {}
    error_kind: str = ""
    error: str = ""
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None


def new_execution_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"dx-{ts}-{uuid.uuid4().hex[:6]}"


class PipelineExecution(BaseModel):
    """One instantiation of a pipeline definition against one artifact."""

    model_config = ConfigDict(frozen=True)

    execution_id: str = Field(default_factory=new_execution_id)
    service: str
    artifact: Artifact
    definition_version: str = "1"
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_index: int = 0
    context: ExecutionContext
    actor: str = "system"
    cancel_requested: bool = False
    failure_reason: str = ""
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES
