"""Deployforge data models — all Pydantic v2, all frozen (immutable)."""

from deployforge.models.artifacts import Artifact
from deployforge.models.canary import (
    CanaryConfig,
    CanaryMetricSpec,
    CanaryResult,
    CanaryVerdict,
    MetricDirection,
    MetricScore,
)
from deployforge.models.execution import (
    ExecutionContext,
    ExecutionStatus,
    PipelineExecution,
    StageExecution,
    StageStatus,
)
from deployforge.models.judgment import GateKind, JudgmentDecision, JudgmentRequest
from deployforge.models.ledger import AuditEvent, AuditRecord
from deployforge.models.notifications import Notification, NotificationSeverity
from deployforge.models.pipeline import (
    ACTIVE_REF,
    CutoverStrategy,
    OnFailure,
    ParallelBranch,
    PipelineDefinition,
    StageType,
    load_pipeline_definition,
)
from deployforge.models.server_groups import (
    DeploySpec,
    HealthReport,
    ServerGroup,
    ServerGroupHandle,
    ServerGroupRole,
)

__all__ = [
    # artifacts
    "Artifact",
    # canary
    "CanaryConfig",
    "CanaryMetricSpec",
    "CanaryResult",
    "CanaryVerdict",
    "MetricDirection",
    "MetricScore",
    # execution
    "ExecutionContext",
    "ExecutionStatus",
    "PipelineExecution",
    "StageExecution",
    "StageStatus",
    # judgment
    "GateKind",
    "JudgmentDecision",
    "JudgmentRequest",
    # ledger
    "AuditEvent",
    "AuditRecord",
    # notifications
    "Notification",
    "NotificationSeverity",
    # pipeline
    "ACTIVE_REF",
    "CutoverStrategy",
    "OnFailure",
    "ParallelBranch",
    "PipelineDefinition",
    "StageType",
    "load_pipeline_definition",
    # server groups
    "DeploySpec",
    "HealthReport",
    "ServerGroup",
    "ServerGroupHandle",
    "ServerGroupRole",
]
