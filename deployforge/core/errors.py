"""Error hierarchy for the deployment engine.

Stage-level errors carry a ``kind`` that ends up in
``StageExecution.error_kind`` and tells the executor whether the failure
may be downgraded by a CONTINUE policy.  ``CutoverFailure`` and
``CanaryFail`` always escalate: traffic must never be left split in an
undefined state.
"""

from __future__ import annotations

from typing import ClassVar


class DeployforgeError(RuntimeError):
    """Base class for every error raised by the engine."""

    kind: ClassVar[str] = "error"
    always_escalates: ClassVar[bool] = False


# ---------------------------------------------------------------------------
# Configuration / definition errors
# ---------------------------------------------------------------------------


class PipelineDefinitionError(DeployforgeError):
    """Raised when a pipeline definition fails schema validation."""

    kind = "invalid-definition"


class InvalidTransitionError(DeployforgeError):
    """Raised when a requested status transition is not allowed."""

    kind = "invalid-transition"


class RoleInvariantError(DeployforgeError):
    """Raised when a role assignment would leave two ACTIVE groups."""

    kind = "role-invariant"


class ExecutionNotFoundError(DeployforgeError, KeyError):
    """Raised when an execution id is unknown to the state store."""

    kind = "not-found"


# ---------------------------------------------------------------------------
# Collaborator errors
# ---------------------------------------------------------------------------


class TriggerError(DeployforgeError):
    """The artifact registry could not be reached.  Retried on next poll."""

    kind = "trigger"


class InfraError(DeployforgeError):
    """The infrastructure controller rejected or failed a request."""

    kind = "infra"


class DeployError(InfraError):
    """A deploy spec could not be applied (after retries)."""

    kind = "deploy"


class MetricsQueryError(DeployforgeError):
    """A metrics query failed; counted as a missing sample."""

    kind = "metrics-query"


# ---------------------------------------------------------------------------
# Stage outcome errors
# ---------------------------------------------------------------------------


class HealthTimeout(DeployforgeError):
    kind = "health-timeout"


class VerificationFailure(DeployforgeError):
    kind = "verification-failure"


class VerificationTimeout(VerificationFailure):
    kind = "verification-timeout"


class CanaryFail(DeployforgeError):
    kind = "canary-fail"
    always_escalates = True


class CanaryInsufficientData(CanaryFail):
    kind = "insufficient-data"


class CanaryMarginal(DeployforgeError):
    kind = "canary-marginal"


class CanaryTimeout(DeployforgeError):
    kind = "canary-timeout"


class JudgmentRejected(DeployforgeError):
    kind = "judgment-rejected"


class JudgmentTimeout(JudgmentRejected):
    kind = "judgment-timeout"


class CutoverFailure(DeployforgeError):
    """Partial or unverifiable traffic-weight application."""

    kind = "cutover-failure"
    always_escalates = True


class CutoverBusy(CutoverFailure):
    """Another cutover for the same service holds the lock (fail-fast policy)."""

    kind = "cutover-busy"


class RollbackFailure(DeployforgeError):
    """The rollback itself could not be applied.

    This is the one non-recoverable condition: the execution is frozen in
    ``TERMINATED_NEEDS_MANUAL_INTERVENTION`` and an urgent notification is
    raised.
    """

    kind = "rollback-failure"
    always_escalates = True


class StageCancelled(DeployforgeError):
    """The execution was terminated while the stage was suspended."""

    kind = "cancelled"
    always_escalates = True


# ---------------------------------------------------------------------------
# Judgment API errors
# ---------------------------------------------------------------------------


class JudgmentError(DeployforgeError):
    kind = "judgment"


class JudgmentUnauthorized(JudgmentError):
    kind = "unauthorized"


class JudgmentAlreadyDecided(JudgmentError):
    kind = "already-decided"


class JudgmentNotPending(JudgmentError):
    kind = "not-pending"
